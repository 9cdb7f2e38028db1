"""
Email Filter

Composes a declarative MessageFilter into a single store query: flag
predicates, label/category overlap, date range, free text, paging.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from sqlalchemy import Text, cast, or_
from sqlalchemy.orm import Query, Session

from studio_inbox.core.database.models import Message
from studio_inbox.core.database.repository import escape_like
from .models import MessageFilter

logger = logging.getLogger(__name__)

FLAG_FIELDS = ("is_starred", "is_flagged", "is_archived", "is_draft", "is_sent", "is_spam", "has_attachments")

ORDER_COLUMNS = {
    "date_received": Message.date_received,
    "date_sent": Message.date_sent,
    "subject": Message.subject,
    "priority": Message.priority,
}


@dataclass
class MessagePage:
    """One page of filter results"""
    items: List[Message] = field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


def json_list_contains(column, value: str):
    """
    Portable "JSON array contains string" predicate.

    Matches the JSON-encoded element inside the serialized array, which
    works the same on PostgreSQL json and SQLite text storage.
    """
    needle = escape_like(json.dumps(value))
    return cast(column, Text).like(f"%{needle}%", escape='\\')


class EmailFilter:
    """Turns MessageFilter into SQLAlchemy queries."""

    def __init__(self, db: Session):
        """
        Initialize email filter.

        Args:
            db: Database session for filter queries
        """
        self.db = db

    def build_query(self, spec: Union[MessageFilter, Dict[str, Any]]) -> Query:
        """
        Unpaged, unordered query for every predicate in the filter.

        Raises:
            InboxValidationError: malformed filter (dicts are validated here)
        """
        if not isinstance(spec, MessageFilter):
            spec = MessageFilter.from_dict(spec)

        q = self.db.query(Message)

        if spec.account_id is not None:
            q = q.filter(Message.account_id == spec.account_id)
        if spec.folder_id is not None:
            q = q.filter(Message.folder_id == spec.folder_id)
        if spec.thread_id is not None:
            q = q.filter(Message.thread_id == spec.thread_id)

        if spec.unread_only:
            q = q.filter(Message.is_read.is_(False))
        elif spec.is_read is not None:
            q = q.filter(Message.is_read.is_(spec.is_read))

        for name in FLAG_FIELDS:
            value = getattr(spec, name)
            if value is not None:
                q = q.filter(getattr(Message, name).is_(value))

        if not spec.include_deleted:
            q = q.filter(Message.is_deleted.is_(False))

        # Overlap: any of the requested labels/categories
        if spec.labels:
            q = q.filter(or_(*[json_list_contains(Message.labels, label) for label in spec.labels]))
        if spec.categories:
            q = q.filter(or_(*[json_list_contains(Message.categories, c) for c in spec.categories]))

        if spec.date_from is not None:
            q = q.filter(Message.date_received >= spec.date_from)
        if spec.date_to is not None:
            q = q.filter(Message.date_received <= spec.date_to)

        if spec.from_email:
            q = q.filter(Message.from_email.ilike(f"%{escape_like(spec.from_email)}%", escape='\\'))
        if spec.to_email:
            pattern = f"%{escape_like(spec.to_email.lower())}%"
            q = q.filter(or_(
                cast(Message.to_emails, Text).ilike(pattern, escape='\\'),
                cast(Message.cc_emails, Text).ilike(pattern, escape='\\'),
            ))
        if spec.assigned_to:
            q = q.filter(Message.assigned_to == spec.assigned_to)

        if spec.query:
            pattern = f"%{escape_like(spec.query)}%"
            q = q.filter(or_(
                Message.subject.ilike(pattern, escape='\\'),
                Message.body_text.ilike(pattern, escape='\\'),
                Message.from_email.ilike(pattern, escape='\\'),
                Message.from_name.ilike(pattern, escape='\\'),
                cast(Message.to_emails, Text).ilike(pattern, escape='\\'),
                cast(Message.cc_emails, Text).ilike(pattern, escape='\\'),
            ))

        return q

    def search(self, spec: Union[MessageFilter, Dict[str, Any]]) -> MessagePage:
        """
        Run a filter: ordered page plus total count.
        An offset past the end yields an empty page, not an error.
        """
        if not isinstance(spec, MessageFilter):
            spec = MessageFilter.from_dict(spec)

        q = self.build_query(spec)
        total = q.order_by(None).count()

        column = ORDER_COLUMNS[spec.order_by]
        primary = column.desc() if spec.descending else column.asc()
        # Stable paging: tie-break on date then id
        q = q.order_by(primary, Message.date_received.desc(), Message.id.asc())

        items = [] if spec.offset >= total else q.offset(spec.offset).limit(spec.limit).all()
        logger.debug(f"Filter matched {total} messages, returning {len(items)} from offset {spec.offset}")
        return MessagePage(items=items, total=total, limit=spec.limit, offset=spec.offset)
