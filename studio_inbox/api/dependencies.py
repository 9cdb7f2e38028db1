"""
Shared FastAPI dependencies: the mail transport, the sync engine and the
per-request InboxService.
"""
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from studio_inbox.core.database import get_db, get_session_factory
from studio_inbox.core.email.imap_transport import ImapTransport
from studio_inbox.core.email.service import InboxService
from studio_inbox.core.email.sync_engine import SyncEngine
from studio_inbox.core.email.transport import MailTransport


def get_transport(request: Request) -> MailTransport:
    transport = getattr(request.app.state, "transport", None)
    if transport is None:
        transport = ImapTransport()
        request.app.state.transport = transport
    return transport


def get_sync_engine(request: Request, transport: MailTransport = Depends(get_transport)) -> Optional[SyncEngine]:
    """Process-wide engine so concurrent sync requests coalesce"""
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        engine = SyncEngine(get_session_factory(), transport)
        request.app.state.sync_engine = engine
    return engine


def get_inbox_service(
    db: Session = Depends(get_db),
    transport: MailTransport = Depends(get_transport),
    sync_engine: Optional[SyncEngine] = Depends(get_sync_engine),
) -> InboxService:
    return InboxService(db, transport=transport, sync_engine=sync_engine)
