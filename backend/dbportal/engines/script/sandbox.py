"""
Static pre-check for submitted Python scripts.

Scans the source against a deny-list of dangerous API patterns and reports
one message per matched pattern (all matches, not just the first). This is
defense-in-depth only: string tricks can evade a regex scan, the subprocess
restrictions in ``runner`` are the enforcement boundary.

Usage::

    validation = validate_script(source)
    # ScriptValidation(valid=False, errors=["subprocess module is not allowed", ...])
"""

import re

from dbportal.schemas_portal import ScriptValidation

# (pattern, message). Lookbehinds keep method calls like re.compile(...) or
# df.eval(...) from matching the builtin checks.
DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bsubprocess\b"), "subprocess module is not allowed"),
    (re.compile(r"\bmultiprocessing\b"), "multiprocessing module is not allowed"),
    (
        re.compile(r"\bos\s*\.\s*(?:system|popen|spawn\w*|exec\w*|fork\w*|posix_spawn\w*)\b"),
        "os process-spawning functions are not allowed",
    ),
    (re.compile(r"(?<![\w.])eval\s*\("), "eval() is not allowed"),
    (re.compile(r"(?<![\w.])exec\s*\("), "exec() is not allowed"),
    (re.compile(r"(?<![\w.])compile\s*\("), "compile() is not allowed"),
    (re.compile(r"\b__import__\b"), "__import__() is not allowed"),
    (re.compile(r"\bimportlib\b"), "importlib module is not allowed"),
    (re.compile(r"\bsys\s*\.\s*exit\b"), "sys.exit() is not allowed"),
    (
        re.compile(r"\bos\s*\.\s*(?:_exit|kill|killpg|abort)\b"),
        "os._exit()/os.kill() are not allowed",
    ),
    (
        re.compile(r"^\s*(?:import|from)\s+(?:shutil|pathlib)\b", re.MULTILINE),
        "Direct filesystem module usage (shutil, pathlib) is restricted",
    ),
    (re.compile(r"(?<![\w.])open\s*\("), "Direct file access via open() is restricted"),
    (re.compile(r"\bctypes\b"), "ctypes module is not allowed"),
]


def validate_script(script: str) -> ScriptValidation:
    """Return every deny-list violation in *script*."""
    errors = [message for pattern, message in DANGEROUS_PATTERNS if pattern.search(script)]
    return ScriptValidation(valid=not errors, errors=errors)
