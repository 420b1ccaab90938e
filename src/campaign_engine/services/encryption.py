"""Encryption of credential tokens at rest.

Uses Fernet symmetric encryption with a master key from settings.
"""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from campaign_engine.config import settings
from campaign_engine.logging import get_logger

logger = get_logger(__name__)

# Generated development key, kept for the process lifetime
_generated_dev_key: str | None = None


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""

    pass


def _get_master_key() -> bytes:
    """Get the master encryption key.

    Production refuses to start without ``ENCRYPTION_MASTER_KEY``; development
    falls back to a random per-process key.
    """
    global _generated_dev_key

    key = settings.encryption_master_key

    if not key:
        if settings.environment.lower() in ("production", "prod"):
            raise EncryptionError(
                "ENCRYPTION_MASTER_KEY is required in production. "
                "Generate one with: campaign-engine credentials generate-key"
            )

        if _generated_dev_key is None:
            _generated_dev_key = Fernet.generate_key().decode()
            logger.warning(
                "encryption_using_generated_key",
                hint="Set ENCRYPTION_MASTER_KEY in .env to keep stored credentials readable",
            )
        key = _generated_dev_key

    return key.encode()


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    """Get a cached Fernet instance with the master key."""
    try:
        return Fernet(_get_master_key())
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError(f"Failed to initialize encryption: {e}") from e


def encrypt_token(token: str) -> str:
    """Encrypt a credential token for storage.

    Raises:
        EncryptionError: If the token is empty or encryption fails.
    """
    if not token:
        raise EncryptionError("Cannot encrypt empty token")

    try:
        return get_fernet().encrypt(token.encode()).decode()
    except Exception as e:
        raise EncryptionError(f"Failed to encrypt token: {e}") from e


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a stored credential token.

    Raises:
        EncryptionError: If decryption fails (wrong key or corrupted data).
    """
    if not encrypted_token:
        raise EncryptionError("Cannot decrypt empty token")

    try:
        return get_fernet().decrypt(encrypted_token.encode()).decode()
    except InvalidToken as e:
        raise EncryptionError(
            "Failed to decrypt token: invalid key or corrupted data. "
            "This happens when ENCRYPTION_MASTER_KEY changed."
        ) from e


def generate_master_key() -> str:
    """Generate a new Fernet-compatible master key."""
    return Fernet.generate_key().decode()
