"""Fernet symmetric encryption for stored credentials.

SSH private keys, GitHub tokens and database passwords are encrypted before
they reach the database. Uses AES-128-CBC + HMAC-SHA256 via the cryptography
library's Fernet. Master key sourced from SHIPYARD_ENCRYPTION_KEY.
"""

from cryptography.fernet import Fernet, InvalidToken

from shipyard.logging_config import get_logger

logger = get_logger(__name__)

_fernet: Fernet | None = None

# Magic prefix to distinguish ciphertext from values stored while no key was
# configured (development only). Allows transparent reading of both.
_SECRET_MAGIC = "SYENC1:"


def init_encryption(key: str) -> None:
    """Initialize encryption from config. Call during API lifespan startup."""
    global _fernet  # noqa: PLW0603

    if not key:
        logger.warning(
            "No encryption key configured (SHIPYARD_ENCRYPTION_KEY). "
            "Credentials will be stored unencrypted."
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode())
    except ValueError as e:
        logger.error("Invalid encryption key", error=str(e))
        raise
    logger.info("Encryption initialized")


def encrypt_secret(plaintext: str | None) -> str | None:
    """Encrypt a credential for storage. None passes through."""
    if plaintext is None:
        return None
    if _fernet is None:
        return plaintext
    return _SECRET_MAGIC + _fernet.encrypt(plaintext.encode()).decode()


def decrypt_secret(stored: str | None) -> str | None:
    """Decrypt a stored credential. Handles values stored without a key."""
    if stored is None:
        return None
    if not stored.startswith(_SECRET_MAGIC):
        return stored
    if _fernet is None:
        raise RuntimeError(
            "Credential is encrypted but no encryption key is configured. "
            "Set SHIPYARD_ENCRYPTION_KEY to decrypt it."
        )
    try:
        return _fernet.decrypt(stored[len(_SECRET_MAGIC) :].encode()).decode()
    except InvalidToken:
        raise ValueError("Failed to decrypt credential: key mismatch or corrupted data") from None
