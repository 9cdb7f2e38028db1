"""
Sync cadence.

Accounts sync every sync_frequency_minutes. After failures the interval
doubles per consecutive failure, capped at SYNC_MAX_BACKOFF_MINUTES.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy.orm import sessionmaker

from studio_inbox.core.config import get_settings
from studio_inbox.core.database.models import Account, utcnow
from studio_inbox.core.database.repository import InboxRepository
from .models import SyncResult
from .retry_manager import backoff_delay

if TYPE_CHECKING:
    from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


def sync_interval_minutes(account: Account) -> float:
    settings = get_settings()
    frequency = account.sync_frequency_minutes or settings.sync_default_frequency_minutes
    failures = account.consecutive_failures or 0
    if failures <= 0:
        return float(frequency)
    max_backoff = max(settings.sync_max_backoff_minutes, frequency)
    return backoff_delay(failures - 1, frequency, max_delay=max_backoff)


def next_sync_time(account: Account, now: Optional[datetime] = None) -> datetime:
    """When the account is due again, given its current failure streak"""
    now = now or utcnow()
    return now + timedelta(minutes=sync_interval_minutes(account))


class SyncScheduler:
    """Polls for due accounts and hands them to the sync engine"""

    def __init__(self, engine: "SyncEngine", session_factory: sessionmaker, poll_interval: float = 30.0):
        self.engine = engine
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self._stop = asyncio.Event()

    def due_account_ids(self, now: Optional[datetime] = None) -> List[str]:
        db = self.session_factory()
        try:
            return [str(a.id) for a in InboxRepository(db).accounts_due_for_sync(now)]
        finally:
            db.close()

    async def run_once(self, now: Optional[datetime] = None) -> List[SyncResult]:
        """Sync every due account that is not already syncing"""
        due = [a for a in self.due_account_ids(now) if not self.engine.is_syncing(a)]
        if not due:
            return []
        logger.info(f"{len(due)} accounts due for sync")
        return await self.engine.sync_accounts(due)

    async def run_forever(self):
        logger.info(f"Sync scheduler started (poll every {self.poll_interval:g}s)")
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Sync scheduler stopped")

    def stop(self):
        self._stop.set()
