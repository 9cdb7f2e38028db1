"""
Sync Engine

Per-account state machine: Idle -> Syncing -> Idle (success) | Error.

One pass fetches every sync-enabled folder of an account through the
MailTransport, concurrently up to SYNC_FOLDER_CONCURRENCY. Each folder's
messages go Normalizer -> ThreadGrouper -> InboxRepository.upsert_message
and are committed as one transaction per folder, so a failing folder never
leaves partial state and never stops its siblings. New messages then run
through the RuleEngine.

All database work happens on the event loop thread without awaiting in
between; only the transport calls yield. A cancelled pass (account
deleted mid-sync) therefore abandons a folder before its commit or not at
all.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from studio_inbox.core.config import get_settings
from studio_inbox.core.database.models import Account, Folder, utcnow
from studio_inbox.core.database.repository import InboxRepository, as_uuid
from .errors import InboxError, NotFoundError
from .models import AccountStatus, FolderSyncOutcome, RawMessage, SyncResult
from .normalizer import MessageNormalizer
from .notifications import NotificationSink
from .rule_engine import RuleEngine
from .scheduler import next_sync_time
from .thread_grouper import ThreadGrouper
from .transport import ConnectionConfig, FolderRef, MailTransport, validate_connection_config

logger = logging.getLogger(__name__)


class SyncEngine:
    """Drives account sync passes; one in-flight pass per account"""

    def __init__(self,
                 session_factory: sessionmaker,
                 transport: MailTransport,
                 sink: Optional[NotificationSink] = None,
                 normalizer: Optional[MessageNormalizer] = None,
                 folder_timeout: Optional[float] = None,
                 account_deadline: Optional[float] = None,
                 folder_concurrency: Optional[int] = None,
                 run_rules: bool = True):
        """
        Initialize sync engine.

        Args:
            session_factory: Creates the session used by one account pass
            transport: Mail transport adapter
            sink: Receiver for rule notify actions
            normalizer: Raw -> normalized message mapper
            folder_timeout: Seconds per folder fetch (default: SYNC_FOLDER_TIMEOUT_SECONDS)
            account_deadline: Seconds per account pass (default: SYNC_ACCOUNT_DEADLINE_SECONDS)
            folder_concurrency: Parallel folder fetches (default: SYNC_FOLDER_CONCURRENCY)
            run_rules: Evaluate rules on newly stored messages
        """
        settings = get_settings()
        self.session_factory = session_factory
        self.transport = transport
        self.sink = sink
        self.normalizer = normalizer or MessageNormalizer()
        self.folder_timeout = folder_timeout if folder_timeout is not None else settings.sync_folder_timeout_seconds
        self.account_deadline = account_deadline if account_deadline is not None else settings.sync_account_deadline_seconds
        self.folder_concurrency = folder_concurrency or settings.sync_folder_concurrency
        self.run_rules = run_rules

        self._in_flight: Dict[str, asyncio.Task] = {}

    def is_syncing(self, account_id: Any) -> bool:
        return str(account_id) in self._in_flight

    async def sync_account(self, account_id: Any) -> SyncResult:
        """
        Run a sync pass, or join the pass already running for this account.

        Raises:
            NotFoundError: account missing or deleted
        """
        key = str(as_uuid(account_id))
        task = self._in_flight.get(key)
        if task is None:
            # No await between the lookup and the insert: concurrent callers coalesce
            task = asyncio.get_running_loop().create_task(self._run(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.info(f"Sync for account {key} already running; joining it")
        # A caller giving up must not cancel the pass other callers share
        return await asyncio.shield(task)

    async def sync_accounts(self, account_ids: List[Any]) -> List[SyncResult]:
        """Sync several accounts concurrently; one account's failure never affects another"""
        results = await asyncio.gather(*(self.sync_account(a) for a in account_ids), return_exceptions=True)
        passes = []
        for account_id, result in zip(account_ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Sync for account {account_id} failed: {result}")
                continue
            passes.append(result)
        return passes

    def cancel(self, account_id: Any) -> bool:
        """Cancel the running pass for an account (e.g. it was deleted)"""
        task = self._in_flight.get(str(account_id))
        if task is None or task.done():
            return False
        logger.info(f"Cancelling sync for account {account_id}")
        task.cancel()
        return True

    def _forget(self, key: str, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def _run(self, account_id: str) -> SyncResult:
        db = self.session_factory()
        repo = InboxRepository(db)
        started = utcnow()
        tasks: Dict[asyncio.Task, FolderRef] = {}
        previous_status = None
        try:
            account = repo.get(Account, account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found")

            previous_status = account.status
            config = ConnectionConfig.from_account(account)
            try:
                validate_connection_config(config, check_outgoing=False)
            except InboxError as e:
                return self._finish(repo, account, started, [], [], account_error=e.message)

            refs = [FolderRef.from_folder(f) for f in repo.list_folders(account.id) if f.sync_enabled]
            account.status = AccountStatus.SYNCING.value
            repo.commit()
            logger.info(f"Syncing account {account.email_address} ({len(refs)} folders)")

            semaphore = asyncio.Semaphore(self.folder_concurrency)
            new_ids: List[str] = []
            loop = asyncio.get_running_loop()
            for ref in refs:
                task = loop.create_task(self._sync_folder(db, account, config, ref, semaphore, new_ids))
                tasks[task] = ref

            done = set()
            if tasks:
                done, pending = await asyncio.wait(tasks, timeout=self.account_deadline)
                if pending:
                    logger.warning(
                        f"Sync deadline ({self.account_deadline}s) reached for {account.email_address}; "
                        f"skipping {len(pending)} folders"
                    )
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)

            outcomes = []
            for task, ref in tasks.items():
                if task in done and not task.cancelled():
                    outcomes.append(task.result())
                else:
                    outcomes.append(FolderSyncOutcome(
                        folder_id=str(ref.id), folder_name=ref.name,
                        status="skipped", error="Account sync deadline exceeded",
                    ))
            return self._finish(repo, account, started, outcomes, new_ids)

        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            # Folder tasks share this session; they must unwind before the rollback
            await asyncio.gather(*tasks, return_exceptions=True)
            repo.rollback()
            self._restore_after_cancel(repo, account_id, previous_status)
            logger.info(f"Sync for account {account_id} cancelled")
            return SyncResult(account_id=account_id, status="cancelled", started_at=started, finished_at=utcnow())
        finally:
            db.close()

    async def _sync_folder(self, db: Session, account: Account, config: ConnectionConfig,
                           ref: FolderRef, semaphore: asyncio.Semaphore,
                           new_ids: List[str]) -> FolderSyncOutcome:
        outcome = FolderSyncOutcome(folder_id=str(ref.id), folder_name=ref.name, status="ok")
        async with semaphore:
            try:
                raws = await asyncio.wait_for(
                    self.transport.fetch_messages(config, ref, ref.last_remote_uid),
                    timeout=self.folder_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Fetching {ref.name} for {config.email_address} timed out")
                outcome.status = "timeout"
                outcome.error = f"Fetch timed out after {self.folder_timeout:g}s"
                return outcome
            except InboxError as e:
                logger.warning(f"Fetching {ref.name} for {config.email_address} failed: {e.message}")
                outcome.status = "error"
                outcome.error = e.message
                return outcome
            except Exception as e:
                logger.error(f"Unexpected error fetching {ref.name}: {e}", exc_info=True)
                outcome.status = "error"
                outcome.error = str(e) or type(e).__name__
                return outcome

        # From here on nothing awaits: the folder commits entirely or not at all
        return self._reconcile_folder(db, account, ref, raws, outcome, new_ids)

    def _reconcile_folder(self, db: Session, account: Account, ref: FolderRef, raws: List[RawMessage],
                          outcome: FolderSyncOutcome, new_ids: List[str]) -> FolderSyncOutcome:
        repo = InboxRepository(db)
        grouper = ThreadGrouper(repo)
        folder_new: List[str] = []
        try:
            db.refresh(account)
            if account.is_deleted:
                outcome.status = "skipped"
                outcome.error = "Account deleted"
                return outcome

            folder = repo.get(Folder, ref.id)
            if folder is None:
                outcome.status = "skipped"
                outcome.error = "Folder deleted"
                return outcome

            previous_sync_at = folder.last_synced_at
            touched = {folder.id}
            outcome.fetched = len(raws)

            for raw in raws:
                normalized = self.normalizer.normalize(raw)
                existing = repo.get_message_by_message_id(account.id, normalized.message_id)
                if existing is None and raw.flags_only:
                    continue
                if existing is not None:
                    if existing.folder_id is not None:
                        touched.add(existing.folder_id)
                    thread_id = existing.thread_id
                else:
                    thread_id = grouper.resolve(account, normalized)

                message, is_new = repo.upsert_message(account, folder, normalized, thread_id, previous_sync_at)
                if is_new:
                    repo.record_contacts(account, message)
                    folder_new.append(str(message.id))
                    outcome.inserted += 1
                else:
                    outcome.updated += 1

            repo.recompute_folder_counts(touched)
            folder.last_remote_uid = self.transport.next_watermark(ref.last_remote_uid, raws)
            folder.last_synced_at = utcnow()
            repo.commit()
        except (InboxError, SQLAlchemyError) as e:
            repo.rollback()
            logger.error(f"Reconciling {ref.name} for {account.email_address} failed: {e}")
            outcome.status = "error"
            outcome.error = e.message if isinstance(e, InboxError) else "Database error"
            return outcome

        new_ids.extend(folder_new)
        logger.info(
            f"{account.email_address}/{ref.name}: {outcome.fetched} fetched, "
            f"{outcome.inserted} new, {outcome.updated} updated"
        )
        if self.run_rules and folder_new:
            RuleEngine(db, self.sink).process_new_messages(account, folder_new)
        return outcome

    def _finish(self, repo: InboxRepository, account: Account, started, outcomes: List[FolderSyncOutcome],
                new_ids: List[str], account_error: Optional[str] = None) -> SyncResult:
        """Settle account status from the folder outcomes (first error in folder order wins)"""
        result = SyncResult(
            account_id=str(account.id),
            status="success",
            started_at=started,
            folders=outcomes,
            new_message_ids=new_ids,
        )
        ok = [o for o in outcomes if o.status == "ok"]
        first_error = account_error or result.first_error
        now = utcnow()

        if first_error:
            result.status = "partial" if ok else "error"
            account.status = AccountStatus.ERROR.value
            account.last_error = first_error
            account.consecutive_failures = (account.consecutive_failures or 0) + 1
            logger.warning(f"Sync of {account.email_address} failed: {first_error}")
        else:
            if len(ok) < len(outcomes):
                result.status = "partial"
            account.status = AccountStatus.ACTIVE.value
            account.last_error = None
            account.consecutive_failures = 0
            account.last_sync_at = now
        account.next_sync_at = next_sync_time(account, now)
        repo.commit()

        result.finished_at = utcnow()
        return result

    def _restore_after_cancel(self, repo: InboxRepository, account_id: str, previous_status: Optional[str]):
        account = repo.get(Account, account_id, include_deleted=True)
        if account is None or account.status != AccountStatus.SYNCING.value:
            return
        account.status = previous_status or AccountStatus.ACTIVE.value
        repo.commit()
