"""
Database Repository - the inbox data store.

Generic get/put/query/atomic_update over the ORM models plus the
inbox-specific operations the sync engine, thread grouper, bulk engine and
API need: message upsert with flag reconciliation, folder count
recomputation, thread rewrites, conversation aggregation and contact
counters.

The repository never commits on its own except through commit(); callers
own the transaction boundary (one folder pass, one bulk message, one API
request).
"""
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type
from datetime import datetime
from uuid import UUID
from sqlalchemy.orm import Session
from sqlalchemy import and_, case, func, or_, select, update
import logging

from .models import Account, Contact, Folder, Message, Rule, Template, utcnow
from studio_inbox.core.email.errors import ConflictError, InvalidOperation, NotFoundError
from studio_inbox.core.email.models import (
    ConversationSummary,
    FolderType,
    NormalizedMessage,
    REMOTE_FLAGS,
)

logger = logging.getLogger(__name__)

SOFT_DELETABLE = (Account, Folder, Message)


def sanitize_for_postgres(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and surrogates (PostgreSQL text cannot hold them)
    and enforce column length limits.
    """
    if text is None:
        return None

    if '\x00' in text:
        logger.debug(f"Sanitized {text.count(chr(0))} NUL byte(s) from {field_name}")
    sanitized = text.replace('\x00', '')

    try:
        sanitized.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        sanitized = sanitized.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
        logger.debug(f"Removed surrogate characters from {field_name}")

    if max_length and len(sanitized) > max_length:
        logger.debug(f"Truncated {field_name} from {len(sanitized)} to {max_length} characters")
        sanitized = sanitized[:max_length]

    return sanitized


def escape_like(value: str) -> str:
    """Escape LIKE wildcards; use with escape='\\\\'"""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def as_uuid(value: Any) -> UUID:
    """Coerce an id to UUID, raising NotFoundError for malformed ids"""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"Invalid id: {value}")


class InboxRepository:
    """
    Repository pattern for inbox database operations.
    Shared by the sync engine, the bulk engine, the rule engine and the API.
    """

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Generic data store contract
    # ------------------------------------------------------------------

    def get(self, model: Type, entity_id: Any, include_deleted: bool = False):
        """Fetch by primary key; soft-deleted rows are hidden unless asked for"""
        try:
            entity = self.db.get(model, as_uuid(entity_id))
        except NotFoundError:
            return None
        if entity is None:
            return None
        if not include_deleted and model in SOFT_DELETABLE and entity.is_deleted:
            return None
        return entity

    def require(self, model: Type, entity_id: Any, include_deleted: bool = False):
        entity = self.get(model, entity_id, include_deleted=include_deleted)
        if entity is None:
            raise NotFoundError(f"{model.__name__} {entity_id} not found")
        return entity

    def put(self, entity):
        """Insert or attach an entity and flush (id is available afterwards)"""
        self.db.add(entity)
        self.db.flush()
        return entity

    def query(self, model: Type, filters: Optional[Dict[str, Any]] = None,
              order_by: Optional[List] = None, limit: Optional[int] = None,
              offset: int = 0, include_deleted: bool = False) -> List:
        """
        Equality-filtered, ordered query.

        Args:
            model: ORM class
            filters: column name -> value (None values are ignored)
            order_by: SQLAlchemy order clauses
        """
        q = self.db.query(model)
        for column, value in (filters or {}).items():
            if value is not None:
                q = q.filter(getattr(model, column) == value)
        if not include_deleted and model in SOFT_DELETABLE:
            q = q.filter(model.is_deleted.is_(False))
        if order_by:
            q = q.order_by(*order_by)
        if offset:
            q = q.offset(offset)
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def atomic_update(self, model: Type, entity_id: Any, patch: Callable[[Any], None],
                      include_deleted: bool = False):
        """
        Read-modify-write under a row lock (SELECT ... FOR UPDATE where the
        backend supports it). Raises NotFoundError if the row is gone.
        """
        entity = (
            self.db.query(model)
            .filter(model.id == as_uuid(entity_id))
            .with_for_update()
            .first()
        )
        if entity is None or (not include_deleted and model in SOFT_DELETABLE and entity.is_deleted):
            raise NotFoundError(f"{model.__name__} {entity_id} not found")
        patch(entity)
        self.db.flush()
        return entity

    def commit(self):
        """Commit transaction with error handling"""
        try:
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to commit transaction: {e}")
            self.db.rollback()
            raise

    def rollback(self):
        """Rollback transaction"""
        try:
            self.db.rollback()
        except Exception as e:
            logger.error(f"Failed to rollback transaction: {e}")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_accounts(self, user_id: Optional[str] = None, include_deleted: bool = False) -> List[Account]:
        """Default account first, then by name"""
        return self.query(
            Account,
            filters={'user_id': user_id},
            order_by=[Account.is_default.desc(), Account.name.asc()],
            include_deleted=include_deleted,
        )

    def get_default_account(self, user_id: str) -> Optional[Account]:
        return (
            self.db.query(Account)
            .filter(Account.user_id == user_id, Account.is_default.is_(True), Account.is_deleted.is_(False))
            .first()
        )

    def make_default(self, account: Account):
        """Clear every other default of the same user, then mark this one (same transaction)"""
        self.db.execute(
            update(Account)
            .where(Account.user_id == account.user_id, Account.id != account.id, Account.is_default.is_(True))
            .values(is_default=False)
        )
        account.is_default = True
        self.db.flush()

    def soft_delete_account(self, account: Account):
        """Soft-delete the account with its folders and messages"""
        now = utcnow()
        account.is_deleted = True
        account.is_default = False
        account.sync_enabled = False
        account.deleted_at = now
        self.db.execute(
            update(Folder).where(Folder.account_id == account.id).values(is_deleted=True, updated_at=now)
        )
        self.db.execute(
            update(Message).where(Message.account_id == account.id).values(is_deleted=True, updated_at=now)
        )
        self.db.flush()

    def accounts_due_for_sync(self, now: Optional[datetime] = None) -> List[Account]:
        now = now or utcnow()
        return (
            self.db.query(Account)
            .filter(
                Account.is_deleted.is_(False),
                Account.sync_enabled.is_(True),
                or_(Account.next_sync_at.is_(None), Account.next_sync_at <= now),
            )
            .order_by(Account.next_sync_at.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def list_folders(self, account_id: Any, include_deleted: bool = False) -> List[Folder]:
        """Ordered by sort_order, then name"""
        return self.query(
            Folder,
            filters={'account_id': as_uuid(account_id)},
            order_by=[Folder.sort_order.asc(), Folder.name.asc()],
            include_deleted=include_deleted,
        )

    def get_folder_by_type(self, account_id: Any, folder_type: str) -> Optional[Folder]:
        return (
            self.db.query(Folder)
            .filter(
                Folder.account_id == as_uuid(account_id),
                Folder.folder_type == folder_type,
                Folder.is_deleted.is_(False),
            )
            .order_by(Folder.parent_folder_id.isnot(None), Folder.sort_order)
            .first()
        )

    def get_folder_by_remote(self, account_id: Any, remote_folder_id: str) -> Optional[Folder]:
        return (
            self.db.query(Folder)
            .filter(
                Folder.account_id == as_uuid(account_id),
                Folder.remote_folder_id == remote_folder_id,
                Folder.is_deleted.is_(False),
            )
            .first()
        )

    def validate_folder_placement(self, folder: Folder, parent_folder_id: Optional[Any]):
        """
        Check a folder's tree position before writing it.

        Raises:
            NotFoundError: parent does not exist
            InvalidOperation: parent belongs to another account
            ConflictError: cycle, or a second root of a non-custom type
        """
        if parent_folder_id is not None:
            parent = self.require(Folder, parent_folder_id)
            if parent.account_id != folder.account_id:
                raise InvalidOperation("Parent folder belongs to another account")

            # Walk up from the new parent; meeting the folder itself means a cycle
            seen = set()
            node = parent
            while node is not None:
                if folder.id is not None and node.id == folder.id:
                    raise ConflictError("Folder parent would create a cycle")
                if node.id in seen:
                    raise ConflictError("Folder tree already contains a cycle")
                seen.add(node.id)
                node = self.get(Folder, node.parent_folder_id) if node.parent_folder_id else None
        elif folder.folder_type != FolderType.CUSTOM.value:
            q = self.db.query(Folder).filter(
                Folder.account_id == folder.account_id,
                Folder.folder_type == folder.folder_type,
                Folder.parent_folder_id.is_(None),
                Folder.is_deleted.is_(False),
            )
            if folder.id is not None:
                q = q.filter(Folder.id != folder.id)
            if q.first() is not None:
                raise ConflictError(f"Account already has a root {folder.folder_type} folder")

    def recompute_folder_counts(self, folder_ids: Iterable[Any]):
        """Recount unread/total from the messages table (soft-deleted messages excluded)"""
        ids = {as_uuid(fid) for fid in folder_ids if fid is not None}
        if not ids:
            return
        rows = (
            self.db.query(
                Message.folder_id,
                func.count(Message.id),
                func.sum(case((Message.is_read.is_(False), 1), else_=0)),
            )
            .filter(Message.folder_id.in_(ids), Message.is_deleted.is_(False))
            .group_by(Message.folder_id)
            .all()
        )
        counts = {folder_id: (int(total or 0), int(unread or 0)) for folder_id, total, unread in rows}
        for folder in self.db.query(Folder).filter(Folder.id.in_(ids)).all():
            folder.total_count, folder.unread_count = counts.get(folder.id, (0, 0))
        self.db.flush()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_message_by_message_id(self, account_id: Any, message_id: str) -> Optional[Message]:
        return (
            self.db.query(Message)
            .filter(Message.account_id == as_uuid(account_id), Message.message_id == message_id)
            .first()
        )

    def upsert_message(self, account: Account, folder: Optional[Folder], normalized: NormalizedMessage,
                       thread_id: str, previous_sync_at: Optional[datetime] = None) -> Tuple[Message, bool]:
        """
        Insert a normalized message or reconcile the stored copy.

        Keyed by (account_id, message_id). An existing row keeps all local-only
        state (labels, categories, is_starred, assignment, is_archived,
        is_spam); remote flags are reconciled by merge_remote_flags.

        Returns:
            (Message, is_new)
        """
        message = self.get_message_by_message_id(account.id, normalized.message_id)
        now = utcnow()

        if message is not None:
            remote_won = self.merge_remote_flags(message, normalized, previous_sync_at)
            if folder is not None and message.folder_id != folder.id and remote_won and not message.is_deleted:
                logger.debug(f"Message {message.message_id} moved remotely to {folder.name}")
                message.folder_id = folder.id
            if not message.remote_message_id or (folder is not None and message.folder_id == folder.id):
                message.remote_message_id = normalized.remote_message_id
            message.remote_synced_at = now
            return message, False

        message = Message(
            account_id=account.id,
            folder_id=folder.id if folder is not None else None,
            message_id=sanitize_for_postgres(normalized.message_id, 'message_id', 500),
            thread_id=sanitize_for_postgres(thread_id, 'thread_id', 500),
            in_reply_to=sanitize_for_postgres(normalized.in_reply_to, 'in_reply_to', 500),
            references=" ".join(normalized.references) or None,
            remote_message_id=normalized.remote_message_id,
            from_email=sanitize_for_postgres(normalized.from_email, 'from_email', 320) or "",
            from_name=sanitize_for_postgres(normalized.from_name, 'from_name', 500),
            to_emails=normalized.to_emails,
            to_names=normalized.to_names,
            cc_emails=normalized.cc_emails,
            bcc_emails=normalized.bcc_emails,
            reply_to=normalized.reply_to,
            subject=sanitize_for_postgres(normalized.subject, 'subject') or "",
            body_text=sanitize_for_postgres(normalized.body_text, 'body_text'),
            body_html=sanitize_for_postgres(normalized.body_html, 'body_html'),
            preview_text=sanitize_for_postgres(normalized.preview_text, 'preview_text', 300),
            date_sent=normalized.date_sent,
            date_received=normalized.date_received,
            size_bytes=normalized.size_bytes,
            importance=normalized.importance.value,
            priority={"low": 1, "normal": 2, "high": 3}[normalized.importance.value],
            has_attachments=normalized.has_attachments,
            attachment_count=normalized.attachment_count,
            attachments=[a.model_dump() for a in normalized.attachments],
            labels=[],
            categories=[],
            remote_flags=dict(normalized.remote_flags),
            remote_synced_at=now,
        )
        for field in REMOTE_FLAGS:
            setattr(message, field, bool(normalized.remote_flags.get(field, False)))

        folder_type = folder.folder_type if folder is not None else None
        message.is_sent = folder_type == FolderType.SENT.value
        message.is_spam = folder_type == FolderType.SPAM.value
        message.is_archived = folder_type == FolderType.ARCHIVE.value
        if folder_type == FolderType.DRAFTS.value:
            message.is_draft = True
        message.is_starred = False

        self.db.add(message)
        self.db.flush()
        logger.debug(f"Stored message {message.message_id} in thread {message.thread_id}")
        return message, True

    @staticmethod
    def merge_remote_flags(message: Message, normalized: NormalizedMessage,
                           previous_sync_at: Optional[datetime]) -> bool:
        """
        Timestamp last-writer-wins for remote-owned flags.

        A remote flag only counts as changed when it differs from the last
        value seen from the server (remote_flags snapshot). A changed remote
        value is applied unless the message was modified locally after the
        remote change; when the server does not report a change time, the
        previous sync of the folder stands in for it.

        Returns:
            True if the remote side won (or there was no local edit to protect)
        """
        snapshot = message.remote_flags or {}
        remote_changed_at = normalized.flags_changed_at or previous_sync_at
        local_wins = bool(
            message.local_modified_at
            and (remote_changed_at is None or message.local_modified_at > remote_changed_at)
        )

        for field in REMOTE_FLAGS:
            if field not in normalized.remote_flags:
                continue
            remote_value = bool(normalized.remote_flags[field])
            if field in snapshot and bool(snapshot[field]) == remote_value:
                continue  # unchanged on the server
            if local_wins:
                logger.debug(f"Keeping local {field} on {message.message_id} (modified {message.local_modified_at})")
                continue
            setattr(message, field, remote_value)

        message.remote_flags = {**snapshot, **{k: bool(v) for k, v in normalized.remote_flags.items()}}
        return not local_wins

    def find_by_message_ids(self, account_id: Any, message_ids: Iterable[str]) -> List[Message]:
        ids = [m for m in message_ids if m]
        if not ids:
            return []
        return (
            self.db.query(Message)
            .filter(Message.account_id == as_uuid(account_id), Message.message_id.in_(ids))
            .all()
        )

    def find_referencing(self, account_id: Any, message_id: str) -> List[Message]:
        """Stored messages whose In-Reply-To or References point at message_id"""
        pattern = f"%{escape_like(message_id)}%"
        return (
            self.db.query(Message)
            .filter(
                Message.account_id == as_uuid(account_id),
                or_(
                    Message.in_reply_to == message_id,
                    Message.references.like(pattern, escape='\\'),
                ),
            )
            .all()
        )

    def find_subject_candidates(self, account_id: Any, subject_core: str,
                                start: datetime, end: datetime, limit: int = 200) -> List[Message]:
        """Messages in a date window whose subject contains subject_core (case-insensitive)"""
        return (
            self.db.query(Message)
            .filter(
                Message.account_id == as_uuid(account_id),
                Message.date_received >= start,
                Message.date_received <= end,
                Message.subject.ilike(f"%{escape_like(subject_core)}%", escape='\\'),
            )
            .order_by(Message.date_received.desc())
            .limit(limit)
            .all()
        )

    def thread_stats(self, account_id: Any, thread_ids: Iterable[str]) -> Dict[str, Tuple[int, datetime]]:
        """thread_id -> (message count, earliest date_received)"""
        ids = list({t for t in thread_ids if t})
        if not ids:
            return {}
        rows = (
            self.db.query(Message.thread_id, func.count(Message.id), func.min(Message.date_received))
            .filter(Message.account_id == as_uuid(account_id), Message.thread_id.in_(ids))
            .group_by(Message.thread_id)
            .all()
        )
        return {thread_id: (int(count), earliest) for thread_id, count, earliest in rows}

    def rewrite_thread_ids(self, account_id: Any, from_thread_ids: Iterable[str], to_thread_id: str) -> int:
        """Move every message of the given threads onto to_thread_id (one bulk UPDATE)"""
        ids = [t for t in set(from_thread_ids) if t and t != to_thread_id]
        if not ids:
            return 0
        result = self.db.execute(
            update(Message)
            .where(Message.account_id == as_uuid(account_id), Message.thread_id.in_(ids))
            .values(thread_id=to_thread_id)
            .execution_options(synchronize_session="fetch")
        )
        self.db.flush()
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def list_conversations(self, account_id: Any, include_archived: bool = False,
                           search: Optional[str] = None, limit: int = 50,
                           offset: int = 0) -> List[ConversationSummary]:
        """
        Aggregate messages into conversations, most recent activity first.

        Archived conversations (every message archived) are hidden unless
        include_archived; search matches subjects case-insensitively.
        """
        account_uuid = as_uuid(account_id)
        base = [Message.account_id == account_uuid, Message.is_deleted.is_(False)]

        archived = func.min(case((Message.is_archived.is_(True), 1), else_=0))
        last_date = func.max(Message.date_received)
        q = (
            self.db.query(Message.thread_id, last_date.label('last_date'))
            .filter(*base)
            .group_by(Message.thread_id)
        )
        if not include_archived:
            q = q.having(archived == 0)
        if search:
            matching = select(Message.thread_id).where(
                *base, Message.subject.ilike(f"%{escape_like(search)}%", escape='\\')
            )
            q = q.filter(Message.thread_id.in_(matching))
        rows = q.order_by(last_date.desc(), Message.thread_id.asc()).offset(offset).limit(limit).all()

        return [self._summarize(account_uuid, thread_id) for thread_id, _ in rows]

    def get_conversation(self, account_id: Any, thread_id: str) -> Optional[ConversationSummary]:
        return self._summarize(as_uuid(account_id), thread_id)

    def get_conversation_messages(self, account_id: Any, thread_id: str) -> List[Message]:
        """Messages of one thread, oldest first"""
        return (
            self.db.query(Message)
            .filter(
                Message.account_id == as_uuid(account_id),
                Message.thread_id == thread_id,
                Message.is_deleted.is_(False),
            )
            .order_by(Message.date_received.asc(), Message.id.asc())
            .all()
        )

    def _summarize(self, account_id: UUID, thread_id: str) -> Optional[ConversationSummary]:
        messages = self.get_conversation_messages(account_id, thread_id)
        if not messages:
            return None

        participants = []
        labels = set()
        for m in messages:
            for address in [m.from_email] + list(m.to_emails or []) + list(m.cc_emails or []):
                address = (address or "").lower()
                if address and address not in participants:
                    participants.append(address)
            labels.update(m.labels or [])

        return ConversationSummary(
            thread_id=thread_id,
            account_id=str(account_id),
            subject=messages[0].subject,
            participants=participants,
            message_count=len(messages),
            unread_count=sum(1 for m in messages if not m.is_read),
            last_message_date=max(m.date_received for m in messages),
            labels=sorted(labels),
            is_starred=any(m.is_starred for m in messages),
            is_archived=all(m.is_archived for m in messages),
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def rules_for_account(self, account: Account) -> List[Rule]:
        """Enabled rules in evaluation order: account rules, then global; priority desc, name"""
        rules = (
            self.db.query(Rule)
            .filter(
                Rule.is_enabled.is_(True),
                Rule.user_id == account.user_id,
                or_(Rule.account_id == account.id, Rule.account_id.is_(None)),
            )
            .all()
        )
        return sorted(rules, key=lambda r: (r.account_id is None, -r.priority, r.name))

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def record_contacts(self, account: Account, message: Message):
        """
        Bump traffic counters for the correspondents of a newly stored message:
        recipients for outgoing mail, the sender otherwise. The account's own
        address is never a contact.
        """
        own = (account.email_address or "").lower()
        if message.is_sent:
            to_names = list(message.to_names or [])
            pairs = [
                (addr, to_names[i] if i < len(to_names) else None)
                for i, addr in enumerate(message.to_emails or [])
            ]
            pairs += [(addr, None) for addr in message.cc_emails or []]
        else:
            pairs = [(message.from_email, message.from_name)]

        contact_date = message.date_sent or message.date_received or utcnow()
        seen = set()
        for address, name in pairs:
            address = (address or "").strip().lower()
            if not address or address == own or address in seen:
                continue
            seen.add(address)
            contact = (
                self.db.query(Contact)
                .filter(Contact.user_id == account.user_id, Contact.email_address == address)
                .first()
            )
            if contact is None:
                contact = Contact(
                    user_id=account.user_id,
                    email_address=address,
                    name=name or None,
                    tags=[],
                    contact_frequency=0,
                )
                self.db.add(contact)
            elif name and not contact.name:
                contact.name = name
            contact.contact_frequency = (contact.contact_frequency or 0) + 1
            if contact.last_contact_date is None or contact_date > contact.last_contact_date:
                contact.last_contact_date = contact_date
        self.db.flush()

    def list_contacts(self, user_id: str, search: Optional[str] = None, favorites_only: bool = False,
                      limit: int = 50, offset: int = 0) -> List[Contact]:
        """Most frequent first, then most recent"""
        q = self.db.query(Contact).filter(Contact.user_id == user_id)
        if favorites_only:
            q = q.filter(Contact.is_favorite.is_(True))
        if search:
            pattern = f"%{escape_like(search)}%"
            q = q.filter(or_(
                Contact.email_address.ilike(pattern, escape='\\'),
                Contact.name.ilike(pattern, escape='\\'),
                Contact.company.ilike(pattern, escape='\\'),
            ))
        return (
            q.order_by(
                Contact.contact_frequency.desc(),
                Contact.last_contact_date.is_(None),
                Contact.last_contact_date.desc(),
                Contact.email_address.asc(),
            )
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_contact_by_email(self, user_id: str, email_address: str) -> Optional[Contact]:
        return (
            self.db.query(Contact)
            .filter(and_(Contact.user_id == user_id, Contact.email_address == email_address.strip().lower()))
            .first()
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def list_templates(self, user_id: str, category: Optional[str] = None) -> List[Template]:
        """Most used first, then by name"""
        return self.query(
            Template,
            filters={'user_id': user_id, 'category': category},
            order_by=[Template.usage_count.desc(), Template.name.asc()],
        )

    def make_default_template(self, template: Template):
        """Clear the other defaults of the same user and category, then mark this one"""
        self.db.execute(
            update(Template)
            .where(
                Template.user_id == template.user_id,
                Template.category.is_(None) if template.category is None
                else Template.category == template.category,
                Template.id != template.id,
                Template.is_default.is_(True),
            )
            .values(is_default=False)
        )
        template.is_default = True
        self.db.flush()
