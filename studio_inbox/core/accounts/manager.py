"""
Account Manager - Multi-Account Configuration Management

Loads account definitions from accounts.yaml and credentials from
environment variables, then seeds them into the database with their
default folders.

Only a credential *reference* is stored (``env:IMAP_PASSWORD_<NICK>``),
and the column holding it is encrypted at rest.
"""
from typing import Dict, Optional, List
import yaml
import os
from pathlib import Path
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session
import logging

from studio_inbox.core.paths import get_config_path
from studio_inbox.core.database.models import Account, Folder
from studio_inbox.core.database.repository import InboxRepository
from studio_inbox.core.email.errors import InboxValidationError
from studio_inbox.core.email.models import FolderType
from studio_inbox.core.email.transport import CREDENTIAL_ENV_PREFIX, PROVIDER_DEFAULTS

logger = logging.getLogger(__name__)

# Remote folder names per provider; "imap" is the fallback
DEFAULT_FOLDERS = {
    "gmail": {
        "inbox": "INBOX", "sent": "[Gmail]/Sent Mail", "drafts": "[Gmail]/Drafts",
        "trash": "[Gmail]/Trash", "spam": "[Gmail]/Spam", "archive": "[Gmail]/All Mail",
    },
    "outlook": {
        "inbox": "INBOX", "sent": "Sent Items", "drafts": "Drafts",
        "trash": "Deleted Items", "spam": "Junk Email", "archive": "Archive",
    },
    "imap": {
        "inbox": "INBOX", "sent": "Sent", "drafts": "Drafts",
        "trash": "Trash", "spam": "Junk", "archive": "Archive",
    },
}

FOLDER_DISPLAY_NAMES = {
    "inbox": "Inbox", "sent": "Sent", "drafts": "Drafts",
    "trash": "Trash", "spam": "Spam", "archive": "Archive",
}

# Folders synced by default; the rest exist locally but are not fetched
SYNCED_FOLDER_TYPES = ("inbox", "sent", "archive", "spam")


def env_nickname(nickname: str) -> str:
    """Uppercase, dashes/spaces -> underscores"""
    return nickname.upper().replace('-', '_').replace(' ', '_')


def default_folder_layout(provider: str, overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """folder_type -> remote folder name"""
    layout = dict(DEFAULT_FOLDERS.get(provider, DEFAULT_FOLDERS["imap"]))
    for folder_type, remote in (overrides or {}).items():
        if folder_type not in FOLDER_DISPLAY_NAMES:
            raise InboxValidationError(f"Unknown folder type '{folder_type}'")
        layout[folder_type] = remote
    return layout


def ensure_default_folders(repo: InboxRepository, account: Account,
                           overrides: Optional[Dict[str, str]] = None) -> List[Folder]:
    """Create the missing system folders of an account (one root per type)"""
    created = []
    for order, (folder_type, remote) in enumerate(default_folder_layout(account.provider, overrides).items()):
        if repo.get_folder_by_type(account.id, folder_type) is not None:
            continue
        folder = Folder(
            account_id=account.id,
            name=remote,
            display_name=FOLDER_DISPLAY_NAMES[folder_type],
            folder_type=folder_type,
            remote_folder_id=remote,
            sync_enabled=folder_type in SYNCED_FOLDER_TYPES,
            sort_order=order,
        )
        repo.put(folder)
        created.append(folder)
    if created:
        logger.info(f"Created {len(created)} default folders for {account.email_address}")
    return created


class ServerConfig(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    security: Optional[str] = None


class AccountConfig(BaseModel):
    """Single email account configuration"""
    nickname: str
    display_name: str
    email_address: str
    provider: str = "imap"
    imap: ServerConfig = Field(default_factory=ServerConfig)
    smtp: ServerConfig = Field(default_factory=ServerConfig)
    username: Optional[str] = None  # Falls back to IMAP_USERNAME_<NICK>, then email_address

    # Authentication type: "password" or "oauth2" (pre-issued bearer token)
    auth_type: str = "password"
    credential_env: Optional[str] = None  # Name of the env var holding the secret

    sync_enabled: bool = True
    sync_frequency_minutes: Optional[int] = None
    folders: Dict[str, str] = Field(default_factory=dict)
    signature_text: Optional[str] = None

    @property
    def credential_ref(self) -> Optional[str]:
        return f"{CREDENTIAL_ENV_PREFIX}{self.credential_env}" if self.credential_env else None

    def has_credential(self) -> bool:
        return bool(self.credential_env and os.getenv(self.credential_env))


class AccountManager:
    """
    Manages multiple email account configurations.

    Loads account metadata from config/accounts.yaml and credentials from environment variables.

    Usage:
        manager = AccountManager()
        manager.seed(db)
    """

    def __init__(self, config_path: str = None, strict: bool = True):
        """
        Initialize account manager.

        Args:
            config_path: Path to accounts.yaml configuration file.
                        If None, uses get_config_path() to resolve.
            strict: Raise when an account has no credential in the environment
        """
        if config_path is None:
            resolved = get_config_path("accounts.yaml")
            self.config_path = resolved if resolved else Path("config/accounts.yaml")
        else:
            self.config_path = Path(config_path)
        self.strict = strict
        self.accounts: Dict[str, AccountConfig] = {}
        self.default_account: Optional[str] = None
        self.settings: Dict = {}

        # Load configuration
        self._load_config()
        self._load_credentials()
        self._validate_accounts()

    def _load_config(self):
        """Load account configurations from YAML file"""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file {self.config_path} not found")

        with open(self.config_path, 'r') as f:
            config = yaml.safe_load(f) or {}

        for nickname, acc_config in (config.get('accounts') or {}).items():
            try:
                account = AccountConfig(
                    nickname=nickname,
                    display_name=acc_config.get('display_name', nickname),
                    email_address=acc_config['email'],
                    provider=acc_config.get('provider', 'imap'),
                    imap=acc_config.get('imap', {}),
                    smtp=acc_config.get('smtp', {}),
                    username=acc_config.get('username'),
                    auth_type=acc_config.get('auth_type', 'password'),
                    sync_enabled=acc_config.get('sync_enabled', True),
                    sync_frequency_minutes=acc_config.get('sync_frequency_minutes'),
                    folders=acc_config.get('folders', {}),
                    signature_text=acc_config.get('signature'),
                )
            except (KeyError, ValidationError) as e:
                logger.error(f"Failed to load account '{nickname}': {e}")
                if self.strict:
                    raise InboxValidationError(f"Invalid account '{nickname}' in {self.config_path}: {e}")
                continue
            self.accounts[nickname] = account
            auth_info = f"[{account.auth_type}]" if account.auth_type == "oauth2" else ""
            logger.info(f"Loaded account configuration: {nickname} ({account.display_name}) {auth_info}")

        # Load global settings
        self.settings = config.get('settings', {}) or {}
        self.default_account = self.settings.get('default_account')

        logger.info(f"Loaded {len(self.accounts)} account(s), default: {self.default_account}")

    def _load_credentials(self):
        """Point each account at the environment variable holding its secret"""
        for nickname, account in self.accounts.items():
            sanitized_nickname = env_nickname(nickname)

            if not account.username:
                account.username = os.getenv(f'IMAP_USERNAME_{sanitized_nickname}') or account.email_address

            if account.auth_type == "oauth2":
                account.credential_env = f'OAUTH2_TOKEN_{sanitized_nickname}'
            else:
                account.credential_env = f'IMAP_PASSWORD_{sanitized_nickname}'

            if not account.has_credential():
                logger.error(f"Missing credentials for account '{nickname}'")
                logger.error(f"  Expected: {account.credential_env}")

    def _validate_accounts(self):
        """Validate account configurations on startup"""
        if not self.accounts:
            raise InboxValidationError("No accounts configured! Check config/accounts.yaml.")

        invalid_accounts = [
            f"{nickname} ({account.auth_type})"
            for nickname, account in self.accounts.items()
            if not account.has_credential()
        ]
        if invalid_accounts and self.strict:
            raise InboxValidationError(
                f"Missing credentials for accounts: {', '.join(invalid_accounts)}",
                details={
                    "accounts": invalid_accounts,
                    "hint": "password auth: IMAP_PASSWORD_<ACCOUNT>; oauth2: OAUTH2_TOKEN_<ACCOUNT>",
                },
            )

        for nickname, account in self.accounts.items():
            if account.auth_type not in ("password", "oauth2"):
                raise InboxValidationError(f"Account '{nickname}': unsupported auth_type {account.auth_type}")
            default_folder_layout(account.provider, account.folders)

        # Check default account exists
        if self.default_account and self.default_account not in self.accounts:
            logger.warning(f"Default account '{self.default_account}' not found, using first available")
            self.default_account = None
        if self.default_account is None:
            self.default_account = list(self.accounts.keys())[0]

        logger.info(f"Account validation passed: {len(self.accounts)} account(s) ready")

    def get_account(self, nickname: Optional[str] = None) -> AccountConfig:
        """
        Get account configuration by nickname.

        Raises:
            InboxValidationError: If account not found
        """
        if nickname is None:
            nickname = self.default_account

        if nickname not in self.accounts:
            available = ', '.join(self.accounts.keys())
            raise InboxValidationError(f"Unknown account: '{nickname}' (available: {available})")

        return self.accounts[nickname]

    def list_accounts(self) -> List[str]:
        """Get list of all configured account nicknames"""
        return list(self.accounts.keys())

    def get_setting(self, key: str, default=None):
        """Get a global setting value"""
        return self.settings.get(key, default)

    def seed(self, db: Session, user_id: str = "default") -> Dict[str, int]:
        """
        Create or update Account rows (matched by email address) with their
        default folders; the configured default account becomes the user's
        default.

        Returns:
            {'created': N, 'updated': N}
        """
        repo = InboxRepository(db)
        stats = {'created': 0, 'updated': 0}
        existing = {a.email_address.lower(): a for a in repo.list_accounts(user_id)}

        for nickname, config in self.accounts.items():
            account = existing.get(config.email_address.lower())
            if account is None:
                account = Account(user_id=user_id, email_address=config.email_address)
                stats['created'] += 1
            else:
                stats['updated'] += 1

            defaults = PROVIDER_DEFAULTS.get(config.provider, {})
            account.name = config.display_name
            account.provider = config.provider
            account.incoming_server = config.imap.host or defaults.get('incoming_server')
            account.incoming_port = config.imap.port or defaults.get('incoming_port', 993)
            account.incoming_security = config.imap.security or defaults.get('incoming_security', 'ssl')
            account.outgoing_server = config.smtp.host or defaults.get('outgoing_server')
            account.outgoing_port = config.smtp.port or defaults.get('outgoing_port', 587)
            account.outgoing_security = config.smtp.security or defaults.get('outgoing_security', 'starttls')
            account.username = config.username
            account.auth_type = config.auth_type
            account.credential_ref = config.credential_ref
            account.sync_enabled = config.sync_enabled
            if config.sync_frequency_minutes:
                account.sync_frequency_minutes = config.sync_frequency_minutes
            if config.signature_text:
                account.signature_text = config.signature_text
            repo.put(account)

            ensure_default_folders(repo, account, config.folders)
            if nickname == self.default_account:
                repo.make_default(account)

        repo.commit()
        logger.info(f"Seeded accounts: {stats}")
        return stats
