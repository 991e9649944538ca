"""
At-rest encryption for Google Ads OAuth tokens.

The OAuth collaborator writes access tokens encrypted with Fernet (ENCRYPTION_KEY);
this service only ever decrypts them right before an API call.
Without a key (development) values are stored and read as plaintext.
"""

import logging
from functools import lru_cache
from cryptography.fernet import Fernet, InvalidToken
from ads_copilot.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def _get_fernet() -> Fernet | None:
    settings = get_settings()
    key = settings.encryption_key
    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        logger.warning("ENCRYPTION_KEY not set — OAuth tokens are read as plaintext (development only).")
        return None
    try:
        return Fernet(key.encode())
    except ValueError as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc


def encrypt_token(plaintext: str | None) -> str | None:
    """Encrypt a token for storage. Passthrough without a configured key."""
    if plaintext is None:
        return None
    fernet = _get_fernet()
    if fernet is None:
        return plaintext
    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_token(ciphertext: str | None) -> str | None:
    """Decrypt a stored token. Tokens saved before encryption was enabled come back as-is."""
    if not ciphertext:
        return None
    fernet = _get_fernet()
    if fernet is None:
        return ciphertext
    try:
        return fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.warning("Stored token is not Fernet ciphertext — using it as plaintext.")
        return ciphertext
