"""
Shared test setup: in-memory SQLite store, a scripted mail transport and
factories for accounts, folders and messages.
"""
# Load .env BEFORE any other imports (encryption module needs DB_ENCRYPTION_KEY at import time)
import os
from pathlib import Path
from dotenv import load_dotenv

_repo_root = Path(__file__).parent.parent.parent
load_dotenv(_repo_root / ".env")

# Generate test encryption key if not set
if not os.getenv("DB_ENCRYPTION_KEY"):
    from cryptography.fernet import Fernet
    os.environ["DB_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

os.environ["API_KEY"] = "test-api-key"
os.environ["DATABASE_URL"] = "sqlite://"

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Union

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from studio_inbox.api.dependencies import get_sync_engine, get_transport
from studio_inbox.api.main import app
from studio_inbox.core.config import reload_settings
from studio_inbox.core.database import get_db
from studio_inbox.core.database.models import Base, Folder
from studio_inbox.core.database.repository import InboxRepository
from studio_inbox.core.email.models import (
    ComposedMessage,
    ConnectionTestResult,
    NormalizedMessage,
    RawMessage,
)
from studio_inbox.core.email.notifications import InMemoryNotificationSink
from studio_inbox.core.email.service import InboxService
from studio_inbox.core.email.sync_engine import SyncEngine
from studio_inbox.core.email.thread_grouper import ThreadGrouper
from studio_inbox.core.email.transport import MailTransport

reload_settings()

TEST_API_KEY = "test-api-key"


class FakeTransport(MailTransport):
    """
    Scripted MailTransport.

    results maps a remote folder name to the messages it returns, or to an
    exception it raises; delays holds per-folder sleep times.
    """

    def __init__(self):
        self.results: Dict[str, Union[List[RawMessage], Exception]] = {}
        self.delays: Dict[str, float] = {}
        self.fetch_calls: List[tuple] = []
        self.cancelled: List[str] = []
        self.sent: List[ComposedMessage] = []
        self.send_errors: List[Exception] = []
        self.test_result = ConnectionTestResult(success=True, message="Connection successful")
        self.tested = []

    async def test_connection(self, config):
        self.tested.append(config)
        return self.test_result

    async def fetch_messages(self, account, folder, since):
        self.fetch_calls.append((folder.remote_name, since))
        delay = self.delays.get(folder.remote_name)
        if delay:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(folder.remote_name)
                raise
        result = self.results.get(folder.remote_name, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def send_message(self, account, message):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(message)
        return message.message_id

    def calls_for(self, remote_name: str) -> List[tuple]:
        return [c for c in self.fetch_calls if c[0] == remote_name]


def build_raw(uid, message_id: Optional[str] = None, subject: str = "Hello",
              sender: str = "Client <client@example.org>", to: str = "studio@example.com",
              date: Optional[datetime] = None, in_reply_to: Optional[str] = None,
              references: Optional[str] = None, flags=(), body: str = "Body text",
              flags_only: bool = False, flags_changed_at: Optional[datetime] = None,
              cc: Optional[str] = None) -> RawMessage:
    """RawMessage with pre-parsed headers (what a JSON-speaking adapter hands over)"""
    date = date or datetime(2024, 3, 1, 10, 0)
    headers = {
        "Message-ID": message_id or f"<msg-{uid}@example.org>",
        "Subject": subject,
        "From": sender,
        "To": to,
        "Date": date.strftime("%a, %d %b %Y %H:%M:%S +0000"),
    }
    if cc:
        headers["Cc"] = cc
    if in_reply_to:
        headers["In-Reply-To"] = in_reply_to
    if references:
        headers["References"] = references
    return RawMessage(
        remote_id=str(uid),
        headers=headers,
        body_text=None if flags_only else body,
        flags=list(flags),
        internal_date=date,
        flags_only=flags_only,
        flags_changed_at=flags_changed_at,
    )


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def repo(db):
    return InboxRepository(db)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def make_raw():
    return build_raw


@pytest.fixture
def service(db, transport):
    return InboxService(db, transport=transport)


@pytest.fixture
def make_account(service):
    """Create an account (with default folders) through the service"""
    counter = {"n": 0}

    def _make(email: Optional[str] = None, **overrides):
        counter["n"] += 1
        data = {
            "name": f"Studio {counter['n']}",
            "email_address": email or f"studio{counter['n']}@example.com",
            "provider": "imap",
            "incoming_server": "imap.example.com",
            "incoming_port": 993,
            "outgoing_server": "smtp.example.com",
            "outgoing_port": 587,
            "credential": "app-password",
        }
        data.update(overrides)
        return service.create_account(data)

    return _make


@pytest.fixture
def account(make_account):
    return make_account("studio@example.com")


@pytest.fixture
def folder_of(repo):
    """Folder of an account by type"""
    def _folder(account, folder_type: str) -> Folder:
        return repo.get_folder_by_type(account.id, folder_type)
    return _folder


@pytest.fixture
def store_message(db, repo):
    """
    Store a message the way the sync engine does (thread resolution plus
    upsert) and commit it.
    """
    def _store(account, folder, message_id: str, subject: str = "Hello",
               from_email: str = "client@example.org", to_emails=None, cc_emails=None,
               date: Optional[datetime] = None, in_reply_to: Optional[str] = None,
               references=None, flags: Optional[Dict[str, bool]] = None, body: str = "Body text"):
        normalized = NormalizedMessage(
            message_id=message_id,
            remote_message_id=message_id.strip("<>"),
            in_reply_to=in_reply_to,
            references=list(references or []),
            from_email=from_email,
            to_emails=list(to_emails if to_emails is not None else [account.email_address]),
            cc_emails=list(cc_emails or []),
            subject=subject,
            body_text=body,
            date_received=date or datetime(2024, 3, 1, 10, 0),
            remote_flags=flags or {"is_read": False, "is_flagged": False, "is_draft": False, "is_deleted": False},
        )
        thread_id = ThreadGrouper(repo).resolve(account, normalized)
        message, _ = repo.upsert_message(account, folder, normalized, thread_id)
        if folder is not None:
            repo.recompute_folder_counts([folder.id])
        repo.commit()
        return message

    return _store


@pytest.fixture
def api_app(db, session_factory, transport):
    """FastAPI app wired to the test database and the scripted transport"""
    sync_engine = SyncEngine(session_factory, transport, folder_timeout=2.0, account_deadline=5.0)

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_transport] = lambda: transport
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api_client(api_app):
    """Authenticated test client"""
    return TestClient(api_app, headers={"X-API-Key": TEST_API_KEY})
