import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from dbportal.core.config import settings

_logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Symmetric encryption for target database credentials
# ---------------------------------------------------------------------------

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    """Derive a Fernet key from SECRET_KEY (SHA-256 → 32 bytes → base64)."""
    global _fernet
    if _fernet is None:
        key_bytes = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
        _fernet = Fernet(base64.urlsafe_b64encode(key_bytes))
    return _fernet


def encrypt_value(plain: str) -> str:
    """Encrypt a string value. Returns a Fernet token (starts with 'gAAAAA')."""
    if not plain:
        return plain
    return _get_fernet().encrypt(plain.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    """Decrypt a Fernet-encrypted value.

    Raises ``InvalidToken`` if the value cannot be decrypted; instance
    passwords are always stored encrypted.
    """
    if not encrypted:
        return encrypted
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        _logger.error("Stored credential could not be decrypted (SECRET_KEY changed?)")
        raise
