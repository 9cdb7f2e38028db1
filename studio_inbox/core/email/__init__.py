"""Multi-account inbox: domain types and errors (engines live in their own modules)"""
from .errors import (
    InboxError,
    MailConnectionError,
    InboxValidationError,
    NotFoundError,
    ConflictError,
    InvalidOperation,
)
from .models import (
    AccountStatus,
    FolderType,
    Provider,
    ConnectionSecurity,
    Importance,
    RawMessage,
    NormalizedMessage,
    ComposedMessage,
    MessageFilter,
    Mutation,
    BulkResult,
    SyncResult,
    NotificationEvent,
    ConversationSummary,
)

__all__ = [
    "InboxError",
    "MailConnectionError",
    "InboxValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidOperation",
    "AccountStatus",
    "FolderType",
    "Provider",
    "ConnectionSecurity",
    "Importance",
    "RawMessage",
    "NormalizedMessage",
    "ComposedMessage",
    "MessageFilter",
    "Mutation",
    "BulkResult",
    "SyncResult",
    "NotificationEvent",
    "ConversationSummary",
]
