"""
Bulk mutation engine.

Applies one Mutation to many messages. Every message is its own
transaction: a failure is recorded in BulkResult.failed and never rolls
back the messages before or after it. The rule engine and the
single-message API actions go through the same code path.
"""
import logging
from typing import Any, Dict, Optional, Sequence, Set, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from studio_inbox.core.database.models import Folder, Message, utcnow
from studio_inbox.core.database.repository import InboxRepository, as_uuid
from .errors import InboxError, InvalidOperation, NotFoundError
from .models import BulkFailure, BulkResult, FolderType, Mutation, REMOTE_FLAGS, normalize_set

logger = logging.getLogger(__name__)

# Flags that follow the type of the folder a message lives in
FOLDER_TYPE_FLAGS = {
    FolderType.ARCHIVE.value: "is_archived",
    FolderType.SPAM.value: "is_spam",
}


def dedupe_ids(message_ids: Sequence[Any]) -> list:
    """Drop repeated ids, keeping first-seen order"""
    seen = set()
    ordered = []
    for message_id in message_ids:
        key = str(message_id).strip()
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered


class BulkMutationEngine:
    """Per-message atomic state changes with partial-failure reporting"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def apply(self, message_ids: Sequence[Any], mutation: Union[Mutation, Dict[str, Any]],
              account_id: Optional[Any] = None) -> BulkResult:
        """
        Apply mutation to every message id.

        Args:
            message_ids: Message primary keys (duplicates ignored)
            mutation: Mutation or its dict form
            account_id: Restrict to one account (other messages fail as not found)

        Raises:
            InboxValidationError: malformed mutation (nothing is changed)
        """
        if not isinstance(mutation, Mutation):
            mutation = Mutation.from_dict(mutation)

        result = BulkResult()
        for message_id in dedupe_ids(message_ids):
            try:
                self._mutate(message_id, mutation, account_id)
                self.repo.commit()
                result.succeeded.append(message_id)
            except InboxError as e:
                self.repo.rollback()
                logger.debug(f"Bulk mutation skipped {message_id}: {e.message}")
                result.failed.append(BulkFailure(id=message_id, reason=e.message, kind=e.kind))
            except SQLAlchemyError as e:
                self.repo.rollback()
                logger.error(f"Bulk mutation failed for {message_id}: {e}")
                result.failed.append(BulkFailure(id=message_id, reason="Database error", kind="InboxError"))

        if result.failed:
            logger.info(f"Bulk mutation: {len(result.succeeded)} succeeded, {len(result.failed)} failed")
        return result

    def apply_one(self, message_id: Any, mutation: Union[Mutation, Dict[str, Any]],
                  account_id: Optional[Any] = None) -> Message:
        """Single-message mutation; raises instead of reporting"""
        if not isinstance(mutation, Mutation):
            mutation = Mutation.from_dict(mutation)
        try:
            message = self._mutate(str(message_id), mutation, account_id)
            self.repo.commit()
        except Exception:
            self.repo.rollback()
            raise
        return message

    def _mutate(self, message_id: str, mutation: Mutation, account_id: Optional[Any]) -> Message:
        scope = as_uuid(account_id) if account_id is not None else None
        touched_folders: Set[UUID] = set()

        def patch(message: Message):
            if scope is not None and message.account_id != scope:
                raise NotFoundError(f"Message {message_id} not found")

            now = utcnow()
            counts_dirty = False

            if mutation.move_to_folder_id is not None and mutation.move_to_folder_id != message.folder_id:
                target = self.repo.get(Folder, mutation.move_to_folder_id)
                if target is None:
                    raise NotFoundError(f"Folder {mutation.move_to_folder_id} not found")
                if target.account_id != message.account_id:
                    raise InvalidOperation("Cannot move a message to another account's folder")
                old_folder = self.repo.get(Folder, message.folder_id, include_deleted=True) if message.folder_id else None
                if old_folder is not None:
                    touched_folders.add(old_folder.id)
                    old_flag = FOLDER_TYPE_FLAGS.get(old_folder.folder_type)
                    if old_flag:
                        setattr(message, old_flag, False)
                new_flag = FOLDER_TYPE_FLAGS.get(target.folder_type)
                if new_flag:
                    setattr(message, new_flag, True)
                message.folder_id = target.id
                touched_folders.add(target.id)

            for flag, value in mutation.set_flags.items():
                if getattr(message, flag) == value:
                    continue
                setattr(message, flag, value)
                if flag in REMOTE_FLAGS:
                    message.local_modified_at = now
                if flag in ("is_read", "is_deleted"):
                    counts_dirty = True

            if mutation.add_labels or mutation.remove_labels:
                labels = (set(message.labels or []) | set(mutation.add_labels)) - set(mutation.remove_labels)
                message.labels = normalize_set(list(labels))
            if mutation.add_categories or mutation.remove_categories:
                categories = (set(message.categories or []) | set(mutation.add_categories)) - set(mutation.remove_categories)
                message.categories = normalize_set(list(categories))

            if mutation.assigned_to:
                if message.assigned_to != mutation.assigned_to:
                    message.assigned_to = mutation.assigned_to
                    message.assigned_at = now
            elif mutation.unassign:
                message.assigned_to = None
                message.assigned_at = None

            if counts_dirty and message.folder_id is not None:
                touched_folders.add(message.folder_id)

        # Restoring is the only change allowed on a soft-deleted message
        restoring = mutation.set_flags.get("is_deleted") is False
        message = self.repo.atomic_update(Message, message_id, patch, include_deleted=restoring)
        self.repo.recompute_folder_counts(touched_folders)
        return message
