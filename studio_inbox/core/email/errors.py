"""
Inbox error kinds.

Every error carries a stable ``kind`` (what API callers switch on) and the
HTTP status the API layer maps it to. Partial bulk failures are not errors:
they are reported through BulkResult.failed.
"""
from typing import Any, Dict, Optional


class InboxError(Exception):
    """Base class for all inbox errors"""
    kind = "InboxError"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error = {"kind": self.kind, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class MailConnectionError(InboxError):
    """Transport unreachable or authentication failed"""
    kind = "ConnectionError"
    status_code = 502


class InboxValidationError(InboxError):
    """Malformed filter, rule or mutation input; nothing was changed"""
    kind = "ValidationError"
    status_code = 422


class NotFoundError(InboxError):
    """Referenced account, folder, message or rule does not exist"""
    kind = "NotFoundError"
    status_code = 404


class ConflictError(InboxError):
    """Operation conflicts with current state"""
    kind = "ConflictError"
    status_code = 409


class InvalidOperation(ConflictError):
    """Operation is never allowed, e.g. moving a message to another account's folder"""
    kind = "InvalidOperation"
