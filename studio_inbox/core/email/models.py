"""
Inbox domain models.

Pydantic types exchanged between the transport adapter, the normalizer,
the sync engine and the API: raw and normalized messages, filters,
mutations and the result objects returned by write operations.
"""
from pydantic import BaseModel, Field, ConfigDict, SecretStr, ValidationError, field_validator, model_validator
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Literal
from uuid import UUID

from studio_inbox.core.database.models import utcnow
from .errors import InboxValidationError


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    SYNCING = "syncing"


class FolderType(str, Enum):
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"


class Provider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    YAHOO = "yahoo"
    IMAP = "imap"
    EXCHANGE = "exchange"


class ConnectionSecurity(str, Enum):
    NONE = "none"
    SSL = "ssl"
    TLS = "tls"
    STARTTLS = "starttls"


class Importance(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


# Boolean message flags that callers may set
MESSAGE_FLAGS = (
    "is_read", "is_starred", "is_flagged", "is_draft",
    "is_sent", "is_archived", "is_deleted", "is_spam",
)

# Flags owned by the remote server; everything else is local-only
REMOTE_FLAGS = ("is_read", "is_flagged", "is_draft", "is_deleted")

# IMAP system flag -> message flag
IMAP_FLAG_MAP = {
    "\\Seen": "is_read",
    "\\Flagged": "is_flagged",
    "\\Draft": "is_draft",
    "\\Deleted": "is_deleted",
}

IMPORTANCE_PRIORITY = {"low": 1, "normal": 2, "high": 3}


def normalize_set(values: Optional[List[str]]) -> List[str]:
    """Labels/categories are sets: trimmed, deduplicated, sorted."""
    if not values:
        return []
    return sorted({v.strip() for v in values if v and v.strip()})


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; convert aware datetimes on the way in."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AttachmentInfo(BaseModel):
    """Attachment metadata (content is never stored)"""
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: Optional[str] = None


class RawMessage(BaseModel):
    """
    Message as returned by a transport adapter.

    Adapters either hand over the RFC822 source in ``raw`` or pre-parsed
    ``headers`` plus bodies. ``flags`` uses IMAP flag names.
    """
    remote_id: str
    raw: Optional[bytes] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    flags: List[str] = Field(default_factory=list)
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentInfo] = Field(default_factory=list)
    size: Optional[int] = None
    internal_date: Optional[datetime] = None
    flags_changed_at: Optional[datetime] = None
    # Headers + flags only: reconciles a stored message, never inserts one
    flags_only: bool = False


class NormalizedMessage(BaseModel):
    """Canonical message produced by the normalizer, ready for threading and upsert"""
    message_id: str
    remote_message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    from_email: str = ""
    from_name: Optional[str] = None
    to_emails: List[str] = Field(default_factory=list)
    to_names: List[str] = Field(default_factory=list)
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    reply_to: Optional[str] = None
    subject: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    preview_text: Optional[str] = None
    date_sent: Optional[datetime] = None
    date_received: datetime
    size_bytes: Optional[int] = None
    importance: Importance = Importance.NORMAL
    remote_flags: Dict[str, bool] = Field(default_factory=dict)
    has_attachments: bool = False
    attachment_count: int = 0
    attachments: List[AttachmentInfo] = Field(default_factory=list)
    flags_changed_at: Optional[datetime] = None

    @property
    def participants(self) -> set:
        """Lower-cased addresses of everyone on the message"""
        addresses = [self.from_email] + self.to_emails + self.cc_emails
        return {a.lower() for a in addresses if a}

    @property
    def correlation_ids(self) -> List[str]:
        """Ids this message points at (In-Reply-To first, then References)"""
        ids = []
        if self.in_reply_to:
            ids.append(self.in_reply_to)
        for ref in self.references:
            if ref not in ids:
                ids.append(ref)
        return ids


class ComposedMessage(BaseModel):
    """Outgoing message handed to MailTransport.send_message"""
    message_id: str
    from_email: str
    from_name: Optional[str] = None
    to_emails: List[str]
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    subject: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    importance: Importance = Importance.NORMAL


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None


def _raise_validation(exc: ValidationError, what: str):
    errors = [
        {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
        for err in exc.errors()
    ]
    raise InboxValidationError(f"Invalid {what}", details={"errors": errors}) from exc


class MessageFilter(BaseModel):
    """
    Declarative message filter. All provided predicates are ANDed;
    omitted (None) fields impose no constraint.
    """
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[UUID] = None
    folder_id: Optional[UUID] = None
    thread_id: Optional[str] = None

    is_read: Optional[bool] = None
    unread_only: bool = False
    is_starred: Optional[bool] = None
    is_flagged: Optional[bool] = None
    is_archived: Optional[bool] = None
    is_draft: Optional[bool] = None
    is_sent: Optional[bool] = None
    is_spam: Optional[bool] = None
    include_deleted: bool = False
    has_attachments: Optional[bool] = None

    labels: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    query: Optional[str] = None
    from_email: Optional[str] = None
    to_email: Optional[str] = None
    assigned_to: Optional[str] = None

    order_by: Literal["date_received", "date_sent", "subject", "priority"] = "date_received"
    descending: bool = True
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @field_validator("labels", "categories")
    @classmethod
    def _dedupe(cls, v):
        return normalize_set(v) if v is not None else None

    @field_validator("date_from", "date_to")
    @classmethod
    def _naive_utc(cls, v):
        return to_naive_utc(v)

    @field_validator("query")
    @classmethod
    def _strip_query(cls, v):
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        if self.unread_only and self.is_read is True:
            raise ValueError("unread_only contradicts is_read=true")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageFilter":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            _raise_validation(e, "filter")


class Mutation(BaseModel):
    """
    State change applied by the bulk mutation engine.
    At least one field must be set.
    """
    model_config = ConfigDict(extra="forbid")

    set_flags: Dict[str, bool] = Field(default_factory=dict)
    add_labels: List[str] = Field(default_factory=list)
    remove_labels: List[str] = Field(default_factory=list)
    add_categories: List[str] = Field(default_factory=list)
    remove_categories: List[str] = Field(default_factory=list)
    move_to_folder_id: Optional[UUID] = None
    assigned_to: Optional[str] = None
    unassign: bool = False

    @field_validator("set_flags")
    @classmethod
    def _known_flags(cls, v):
        unknown = [k for k in v if k not in MESSAGE_FLAGS]
        if unknown:
            raise ValueError(f"Unknown flags: {', '.join(sorted(unknown))}")
        return v

    @field_validator("add_labels", "remove_labels", "add_categories", "remove_categories")
    @classmethod
    def _dedupe(cls, v):
        return normalize_set(v)

    @model_validator(mode="after")
    def _not_empty(self):
        if not any([
            self.set_flags, self.add_labels, self.remove_labels,
            self.add_categories, self.remove_categories,
            self.move_to_folder_id, self.assigned_to, self.unassign,
        ]):
            raise ValueError("Mutation is empty")
        if self.assigned_to and self.unassign:
            raise ValueError("assigned_to and unassign are mutually exclusive")
        if set(self.add_labels) & set(self.remove_labels):
            raise ValueError("A label cannot be both added and removed")
        if set(self.add_categories) & set(self.remove_categories):
            raise ValueError("A category cannot be both added and removed")
        return self

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mutation":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            _raise_validation(e, "mutation")


class BulkFailure(BaseModel):
    id: str
    reason: str
    kind: str = "InboxError"


class BulkResult(BaseModel):
    """Per-message outcome of a bulk mutation"""
    succeeded: List[str] = Field(default_factory=list)
    failed: List[BulkFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


class FolderSyncOutcome(BaseModel):
    folder_id: str
    folder_name: str
    status: Literal["ok", "error", "timeout", "skipped"]
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    error: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome of one account sync pass"""
    account_id: str
    status: Literal["success", "partial", "error", "cancelled"]
    started_at: datetime
    finished_at: Optional[datetime] = None
    folders: List[FolderSyncOutcome] = Field(default_factory=list)
    new_message_ids: List[str] = Field(default_factory=list)

    @property
    def first_error(self) -> Optional[str]:
        for outcome in self.folders:
            if outcome.status in ("error", "timeout"):
                return f"{outcome.folder_name}: {outcome.error}"
        return None


class NotificationEvent(BaseModel):
    """Emitted by rule actions for external delivery"""
    type: str
    account_id: str
    message_id: str
    rule_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ConversationSummary(BaseModel):
    """Aggregate over messages sharing a thread_id"""
    thread_id: str
    account_id: str
    subject: str
    participants: List[str]
    message_count: int
    unread_count: int
    last_message_date: datetime
    labels: List[str]
    is_starred: bool
    is_archived: bool


# ----------------------------------------------------------------------
# Write payloads (API bodies and service inputs)
# ----------------------------------------------------------------------

def _check_address(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if "@" not in value or value.startswith("@") or value.endswith("@") or " " in value:
        raise ValueError(f"Invalid email address: {value}")
    return value.lower()


def _reject_nulls(payload: BaseModel, fields) -> BaseModel:
    """Partial updates may omit a field but not send null for a required column"""
    nulls = sorted(f for f in fields if f in payload.model_fields_set and getattr(payload, f) is None)
    if nulls:
        raise ValueError(f"Fields cannot be null: {', '.join(nulls)}")
    return payload


class AccountInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    email_address: str
    provider: Provider = Provider.IMAP
    incoming_server: Optional[str] = None
    incoming_port: Optional[int] = Field(None, ge=1, le=65535)
    incoming_security: ConnectionSecurity = ConnectionSecurity.SSL
    outgoing_server: Optional[str] = None
    outgoing_port: Optional[int] = Field(None, ge=1, le=65535)
    outgoing_security: ConnectionSecurity = ConnectionSecurity.STARTTLS
    username: Optional[str] = None
    auth_type: Literal["password", "oauth2"] = "password"
    credential: Optional[SecretStr] = None
    sync_enabled: bool = True
    sync_frequency_minutes: int = Field(15, ge=1, le=1440)
    is_default: bool = False
    signature_text: Optional[str] = None
    signature_html: Optional[str] = None
    auto_signature: bool = False

    @field_validator("email_address")
    @classmethod
    def _address(cls, v):
        return _check_address(v)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    incoming_server: Optional[str] = None
    incoming_port: Optional[int] = Field(None, ge=1, le=65535)
    incoming_security: Optional[ConnectionSecurity] = None
    outgoing_server: Optional[str] = None
    outgoing_port: Optional[int] = Field(None, ge=1, le=65535)
    outgoing_security: Optional[ConnectionSecurity] = None
    username: Optional[str] = None
    auth_type: Optional[Literal["password", "oauth2"]] = None
    credential: Optional[SecretStr] = None
    sync_enabled: Optional[bool] = None
    sync_frequency_minutes: Optional[int] = Field(None, ge=1, le=1440)
    is_default: Optional[bool] = None
    signature_text: Optional[str] = None
    signature_html: Optional[str] = None
    auto_signature: Optional[bool] = None

    @model_validator(mode="after")
    def _not_null(self):
        return _reject_nulls(self, (
            "name", "auth_type", "sync_enabled", "sync_frequency_minutes", "is_default", "auto_signature",
        ))


class FolderInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    display_name: Optional[str] = None
    folder_type: FolderType = FolderType.CUSTOM
    parent_folder_id: Optional[UUID] = None
    remote_folder_id: Optional[str] = None
    sync_enabled: bool = True
    sort_order: int = 0
    color: Optional[str] = None


class FolderUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    display_name: Optional[str] = None
    parent_folder_id: Optional[UUID] = None
    clear_parent: bool = False
    remote_folder_id: Optional[str] = None
    sync_enabled: Optional[bool] = None
    sort_order: Optional[int] = None
    color: Optional[str] = None

    @model_validator(mode="after")
    def _not_null(self):
        return _reject_nulls(self, ("name", "sync_enabled", "sort_order"))


class ComposeInput(BaseModel):
    """Draft, scheduled or outgoing message body"""
    model_config = ConfigDict(extra="forbid")

    to_emails: List[str] = Field(default_factory=list)
    cc_emails: List[str] = Field(default_factory=list)
    bcc_emails: List[str] = Field(default_factory=list)
    subject: str = ""
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    importance: Importance = Importance.NORMAL
    # Empty subject/bodies are filled from the template after substitution
    template_id: Optional[UUID] = None
    template_values: Dict[str, str] = Field(default_factory=dict)

    @field_validator("to_emails", "cc_emails", "bcc_emails")
    @classmethod
    def _addresses(cls, v):
        return [_check_address(a) for a in v]

    @property
    def recipients(self) -> List[str]:
        return self.to_emails + self.cc_emails + self.bcc_emails


class ContactInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email_address: str
    name: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_favorite: bool = False

    @field_validator("email_address")
    @classmethod
    def _address(cls, v):
        return _check_address(v)

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return normalize_set(v)


class ContactUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    is_favorite: Optional[bool] = None

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return normalize_set(v) if v is not None else None

    @model_validator(mode="after")
    def _not_null(self):
        return _reject_nulls(self, ("tags", "is_favorite"))


def validate_payload(model, data: Any, what: str):
    """Validate a dict into a payload model, raising InboxValidationError"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        _raise_validation(e, what)
