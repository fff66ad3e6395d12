"""
Result compression: gzip + base64 for large execution results.

The encoded form is ASCII so it can be stored in a text column as-is.
"""

import base64
import gzip


def byte_size(data: str) -> int:
    """UTF-8 size of *data* in bytes."""
    return len(data.encode("utf-8"))


def should_compress(data: str, threshold_bytes: int) -> bool:
    """True only when the UTF-8 size is strictly greater than the threshold."""
    return byte_size(data) > threshold_bytes


def compress(data: str) -> str:
    return base64.b64encode(gzip.compress(data.encode("utf-8"))).decode("ascii")


def decompress(encoded: str) -> str:
    return gzip.decompress(base64.b64decode(encoded)).decode("utf-8")


def format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"
