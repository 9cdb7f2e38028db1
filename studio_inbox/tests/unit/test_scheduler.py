"""
Tests for sync cadence: backoff after failures and due-account polling.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from studio_inbox.core.database.models import Account, utcnow
from studio_inbox.core.email.scheduler import SyncScheduler, next_sync_time, sync_interval_minutes
from studio_inbox.core.email.sync_engine import SyncEngine


@pytest.mark.parametrize("failures,expected", [
    (0, 15),
    (1, 15),
    (2, 30),
    (3, 60),
    (4, 120),
    (5, 240),
    (9, 240),
])
def test_backoff_interval(failures, expected):
    account = Account(sync_frequency_minutes=15, consecutive_failures=failures)
    assert sync_interval_minutes(account) == expected


def test_slow_account_never_capped_below_its_frequency():
    account = Account(sync_frequency_minutes=600, consecutive_failures=3)
    assert sync_interval_minutes(account) == 600


def test_next_sync_time():
    now = datetime(2024, 3, 1, 12, 0)
    account = Account(sync_frequency_minutes=10, consecutive_failures=0)
    assert next_sync_time(account, now) == datetime(2024, 3, 1, 12, 10)


class TestSyncScheduler:
    @pytest.fixture
    def scheduler(self, session_factory, transport):
        engine = SyncEngine(session_factory, transport, folder_timeout=2.0, account_deadline=5.0)
        return SyncScheduler(engine, session_factory, poll_interval=0.01)

    def test_due_accounts(self, db, scheduler, make_account):
        never_synced = make_account("a@example.com")
        later = make_account("b@example.com")
        paused = make_account("c@example.com", sync_enabled=False)
        later.next_sync_at = utcnow() + timedelta(hours=1)
        db.commit()

        due = scheduler.due_account_ids()

        assert due == [str(never_synced.id)]
        assert str(paused.id) not in due
        assert str(later.id) in scheduler.due_account_ids(utcnow() + timedelta(hours=2))

    @pytest.mark.asyncio
    async def test_run_once_syncs_due_accounts(self, db, scheduler, account):
        results = await scheduler.run_once()

        assert [r.account_id for r in results] == [str(account.id)]
        db.refresh(account)
        assert account.last_sync_at is not None
        assert account.next_sync_at > utcnow()

        # Not due again until next_sync_at
        assert await scheduler.run_once() == []

    @pytest.mark.asyncio
    async def test_run_forever_stops(self, scheduler):
        task = asyncio.create_task(scheduler.run_forever())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1.0)
        assert task.done()
