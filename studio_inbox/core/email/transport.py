"""
Mail transport adapter interface.

The sync engine and the send path talk to remote mail servers only through
MailTransport. Adapters receive plain snapshots (ConnectionConfig,
FolderRef) rather than ORM objects so they can run in worker threads while
the session stays on the event loop.
"""
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from pydantic import BaseModel, SecretStr

from studio_inbox.core.database.models import Account, Folder
from .errors import InboxValidationError
from .models import ComposedMessage, ConnectionTestResult, RawMessage

logger = logging.getLogger(__name__)

# Server presets per provider (used when an account leaves them blank)
PROVIDER_DEFAULTS = {
    "gmail": {
        "incoming_server": "imap.gmail.com", "incoming_port": 993, "incoming_security": "ssl",
        "outgoing_server": "smtp.gmail.com", "outgoing_port": 587, "outgoing_security": "starttls",
    },
    "outlook": {
        "incoming_server": "outlook.office365.com", "incoming_port": 993, "incoming_security": "ssl",
        "outgoing_server": "smtp-mail.outlook.com", "outgoing_port": 587, "outgoing_security": "starttls",
    },
    "yahoo": {
        "incoming_server": "imap.mail.yahoo.com", "incoming_port": 993, "incoming_security": "ssl",
        "outgoing_server": "smtp.mail.yahoo.com", "outgoing_port": 587, "outgoing_security": "starttls",
    },
}

CREDENTIAL_ENV_PREFIX = "env:"


def resolve_credential(credential_ref: Optional[str]) -> Optional[str]:
    """
    Turn a stored credential reference into the secret.

    References of the form ``env:NAME`` are read from the environment;
    anything else is the (already decrypted) secret itself.
    """
    if not credential_ref:
        return None
    if credential_ref.startswith(CREDENTIAL_ENV_PREFIX):
        name = credential_ref[len(CREDENTIAL_ENV_PREFIX):]
        value = os.getenv(name)
        if not value:
            logger.warning(f"Credential environment variable {name} is not set")
        return value
    return credential_ref


class ConnectionConfig(BaseModel):
    """Connection settings for one account, both directions"""
    account_id: Optional[UUID] = None
    email_address: str = ""
    provider: str = "imap"
    incoming_server: Optional[str] = None
    incoming_port: Optional[int] = None
    incoming_security: str = "ssl"
    outgoing_server: Optional[str] = None
    outgoing_port: Optional[int] = None
    outgoing_security: str = "starttls"
    username: Optional[str] = None
    auth_type: str = "password"
    credential: Optional[SecretStr] = None

    def with_provider_defaults(self) -> "ConnectionConfig":
        defaults = PROVIDER_DEFAULTS.get(self.provider, {})
        updates = {k: v for k, v in defaults.items() if getattr(self, k) in (None, "")}
        return self.model_copy(update=updates) if updates else self

    @property
    def login(self) -> str:
        return self.username or self.email_address

    @property
    def secret(self) -> Optional[str]:
        return self.credential.get_secret_value() if self.credential else None

    @classmethod
    def from_account(cls, account: Account) -> "ConnectionConfig":
        secret = resolve_credential(account.credential_ref)
        return cls(
            account_id=account.id,
            email_address=account.email_address,
            provider=account.provider,
            incoming_server=account.incoming_server,
            incoming_port=account.incoming_port,
            incoming_security=account.incoming_security or "ssl",
            outgoing_server=account.outgoing_server,
            outgoing_port=account.outgoing_port,
            outgoing_security=account.outgoing_security or "starttls",
            username=account.username,
            auth_type=account.auth_type or "password",
            credential=SecretStr(secret) if secret else None,
        ).with_provider_defaults()


class FolderRef(BaseModel):
    """Snapshot of a folder for the transport"""
    id: UUID
    name: str
    remote_name: str
    folder_type: str = "custom"
    last_synced_at: Optional[datetime] = None
    last_remote_uid: Optional[str] = None

    @classmethod
    def from_folder(cls, folder: Folder) -> "FolderRef":
        return cls(
            id=folder.id,
            name=folder.name,
            remote_name=folder.remote_folder_id or folder.name,
            folder_type=folder.folder_type,
            last_synced_at=folder.last_synced_at,
            last_remote_uid=folder.last_remote_uid,
        )


def validate_connection_config(config: ConnectionConfig, check_outgoing: bool = True):
    """
    Reject incomplete settings before any network call.

    Raises:
        InboxValidationError: listing every missing setting
    """
    missing = []
    if not config.email_address:
        missing.append("email_address")
    if not config.incoming_server:
        missing.append("incoming_server")
    if not config.incoming_port:
        missing.append("incoming_port")
    if check_outgoing:
        if not config.outgoing_server:
            missing.append("outgoing_server")
        if not config.outgoing_port:
            missing.append("outgoing_port")
    if not config.secret:
        missing.append("credential")
    if config.auth_type not in ("password", "oauth2"):
        raise InboxValidationError(f"Unsupported auth_type: {config.auth_type}")
    if missing:
        raise InboxValidationError(
            f"Incomplete connection settings: {', '.join(missing)}",
            details={"missing": missing},
        )


class MailTransport(ABC):
    """Per-provider client used by the sync engine and the send path"""

    @abstractmethod
    async def test_connection(self, config: ConnectionConfig) -> ConnectionTestResult:
        """Log in to the incoming (and outgoing) server; never raises for server errors"""

    @abstractmethod
    async def fetch_messages(self, account: ConnectionConfig, folder: FolderRef,
                             since: Optional[str]) -> List[RawMessage]:
        """
        Messages newer than the watermark ``since`` plus flag changes for
        already-seen ones (marked flags_only), in server order.

        Raises:
            MailConnectionError: server unreachable, login rejected, folder missing
        """

    @abstractmethod
    async def send_message(self, account: ConnectionConfig, message: ComposedMessage) -> str:
        """
        Deliver a composed message.

        Returns:
            Remote identity of the sent message (its Message-ID)

        Raises:
            MailConnectionError
        """

    def next_watermark(self, previous: Optional[str], messages: Sequence[RawMessage]) -> Optional[str]:
        """Watermark after a successful fetch; defaults to the last new message's remote id"""
        for raw in reversed(messages):
            if not raw.flags_only:
                return raw.remote_id
        return previous
