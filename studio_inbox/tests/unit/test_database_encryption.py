"""
Tests for credential encryption at rest, including key rotation.
"""
import os

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import text

from studio_inbox.core.database import encryption
from studio_inbox.core.database.encryption import EncryptedText, generate_encryption_key, reinitialize_cipher
from studio_inbox.core.database.models import Account


@pytest.fixture
def restore_cipher():
    """Put the test keys back after a test that rotates them"""
    saved = {name: os.environ.get(name) for name in ("DB_ENCRYPTION_KEY", "DB_ENCRYPTION_KEY_OLD")}
    yield
    for name, value in saved.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value
    reinitialize_cipher()


class TestEncryptedText:
    def test_roundtrip_through_column(self, db, account):
        raw = db.execute(text("SELECT credential_ref FROM accounts")).scalar()
        assert raw is not None
        assert "app-password" not in raw

        db.expire_all()
        assert db.get(Account, account.id).credential_ref == "app-password"

    def test_none_passes_through(self):
        column = EncryptedText()
        assert column.process_bind_param(None, None) is None
        assert column.process_result_value(None, None) is None

    def test_old_key_still_decrypts(self, monkeypatch, restore_cipher):
        column = EncryptedText()
        old_key = generate_encryption_key()
        stored = Fernet(old_key.encode()).encrypt(b"secret").decode()

        monkeypatch.setenv("DB_ENCRYPTION_KEY", generate_encryption_key())
        monkeypatch.setenv("DB_ENCRYPTION_KEY_OLD", old_key)
        assert reinitialize_cipher() is True
        assert len(encryption.old_ciphers) == 1

        assert column.process_result_value(stored, None) == "secret"
        # New writes use the primary key only
        rewritten = column.process_bind_param("secret", None)
        assert encryption.primary_cipher.decrypt(rewritten.encode()) == b"secret"

    def test_unknown_key_yields_none(self, monkeypatch, restore_cipher):
        stored = Fernet(generate_encryption_key().encode()).encrypt(b"secret").decode()
        monkeypatch.setenv("DB_ENCRYPTION_KEY", generate_encryption_key())
        monkeypatch.delenv("DB_ENCRYPTION_KEY_OLD", raising=False)
        reinitialize_cipher()

        assert EncryptedText().process_result_value(stored, None) is None

    def test_invalid_key_rejected(self, monkeypatch, restore_cipher):
        monkeypatch.setenv("DB_ENCRYPTION_KEY", "not-a-fernet-key")
        assert reinitialize_cipher() is False
