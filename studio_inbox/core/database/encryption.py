"""
Database Field Encryption Module

Provides an SQLAlchemy TypeDecorator for encrypting account credential references.
Uses Fernet symmetric encryption (AES-128 in CBC mode with HMAC-SHA256).

KEY ROTATION SUPPORT:
- DB_ENCRYPTION_KEY: Primary key used for all NEW encryptions
- DB_ENCRYPTION_KEY_OLD: Comma-separated list of previous keys for decryption
  Example: DB_ENCRYPTION_KEY_OLD=oldkey1,oldkey2

Key rotation process:
1. Generate new key: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'
2. Move current DB_ENCRYPTION_KEY to DB_ENCRYPTION_KEY_OLD (prepend to list)
3. Set new key as DB_ENCRYPTION_KEY
4. Rewrite credentials (any account update re-encrypts with the primary key)

Encrypted fields:
- Account.credential_ref (password, app password or OAuth2 bearer token reference)

Everything else (subjects, addresses, bodies) stays unencrypted so the
search compositor can filter on it inside the database.
"""
import os
import logging
from typing import Optional, List
from sqlalchemy import TypeDecorator, Text
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

logger = logging.getLogger(__name__)

# Initialized lazily so the models module can be imported before .env is loaded
primary_cipher: Optional[Fernet] = None
multi_cipher: Optional[MultiFernet] = None
old_ciphers: List[Fernet] = []


def _initialize_ciphers() -> bool:
    """
    Initialize encryption ciphers with key rotation support.

    Uses MultiFernet to support decryption with old keys while
    encrypting only with the primary (newest) key.

    Returns:
        True if a primary key was found and loaded

    Raises:
        ValueError: If a configured key is not a valid Fernet key
    """
    global primary_cipher, multi_cipher, old_ciphers

    encryption_key = os.getenv('DB_ENCRYPTION_KEY')
    old_encryption_keys = os.getenv('DB_ENCRYPTION_KEY_OLD', '')

    if not encryption_key:
        logger.warning("DB_ENCRYPTION_KEY not set - account credentials cannot be stored")
        primary_cipher = None
        multi_cipher = None
        old_ciphers = []
        return False

    try:
        primary_cipher = Fernet(encryption_key.encode('utf-8'))
    except Exception as e:
        logger.critical(f"Invalid DB_ENCRYPTION_KEY: {e}")
        raise ValueError("DB_ENCRYPTION_KEY is not a valid Fernet key") from e

    all_ciphers = [primary_cipher]
    old_ciphers = []
    old_keys = [k.strip() for k in old_encryption_keys.split(',') if k.strip()]
    for i, old_key in enumerate(old_keys):
        try:
            old_cipher = Fernet(old_key.encode('utf-8'))
        except Exception as e:
            logger.error(f"Invalid old encryption key #{i+1}: {e}")
            raise ValueError(f"Invalid old encryption key at position {i+1}") from e
        old_ciphers.append(old_cipher)
        all_ciphers.append(old_cipher)

    # MultiFernet tries keys in order: encrypts with first, decrypts with any
    multi_cipher = MultiFernet(all_ciphers)

    key_count = len(all_ciphers)
    if key_count > 1:
        logger.info(f"Database encryption initialized with {key_count} keys (1 primary + {key_count-1} old)")
    else:
        logger.debug("Database encryption initialized")
    return True


def _ensure_ciphers():
    if primary_cipher is None and not _initialize_ciphers():
        raise RuntimeError(
            "Encryption cipher not initialized. Set DB_ENCRYPTION_KEY environment variable."
        )


class EncryptedText(TypeDecorator):
    """
    Encrypted text column type.

    Encrypts text data before storing in database.
    Decrypts when reading from database.

    Usage:
        class Account(Base):
            credential_ref = Column(EncryptedText)
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        """Encrypt with the PRIMARY key before storing."""
        if value is None:
            return None

        _ensure_ciphers()
        encrypted = primary_cipher.encrypt(value.encode('utf-8'))
        return encrypted.decode('utf-8')

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        """
        Decrypt value when reading from database.

        Uses MultiFernet to try all available keys (primary + old keys)
        for seamless key rotation support.
        """
        if value is None:
            return None

        _ensure_ciphers()
        try:
            return multi_cipher.decrypt(value.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            # None of the keys worked - credential encrypted with unknown key
            logger.critical("DECRYPTION FAILURE - credential encrypted with unknown key")
            return None


def is_encryption_enabled() -> bool:
    """Check if an encryption key is configured."""
    return primary_cipher is not None or bool(os.getenv('DB_ENCRYPTION_KEY'))


def reinitialize_cipher() -> bool:
    """
    Reinitialize the encryption cipher from environment variables.
    Useful when environment variables are loaded after module import.
    """
    try:
        return _initialize_ciphers()
    except ValueError as e:
        logger.error(f"Failed to reinitialize encryption cipher: {e}")
        return False


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key."""
    return Fernet.generate_key().decode('utf-8')
