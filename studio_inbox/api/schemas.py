"""
Pydantic schemas for FastAPI endpoints

Request payloads for writes live with the domain (studio_inbox.core.email.models
and rule_engine); this module holds response shapes and request envelopes.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, computed_field
from uuid import UUID

from studio_inbox.core.email.models import (
    AccountInput,
    BulkFailure,
    ComposeInput,
    ConversationSummary,
    Mutation,
)


class ErrorBody(BaseModel):
    kind: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Shape of every error response"""
    success: bool = False
    error: ErrorBody


class AccountResponse(BaseModel):
    """Account settings and sync status (the credential is never returned)"""
    id: UUID
    name: str
    email_address: str
    provider: str
    incoming_server: Optional[str] = None
    incoming_port: Optional[int] = None
    incoming_security: Optional[str] = None
    outgoing_server: Optional[str] = None
    outgoing_port: Optional[int] = None
    outgoing_security: Optional[str] = None
    username: Optional[str] = None
    auth_type: str
    sync_enabled: bool
    sync_frequency_minutes: int
    status: str
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    next_sync_at: Optional[datetime] = None
    is_default: bool
    signature_text: Optional[str] = None
    auto_signature: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


class FolderResponse(BaseModel):
    id: UUID
    account_id: UUID
    name: str
    display_name: Optional[str] = None
    folder_type: str
    parent_folder_id: Optional[UUID] = None
    remote_folder_id: Optional[str] = None
    unread_count: int
    total_count: int
    sync_enabled: bool
    sort_order: int
    color: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    """Message list item (no bodies)"""
    id: UUID
    account_id: UUID
    folder_id: Optional[UUID] = None
    message_id: str
    thread_id: str
    from_email: str
    from_name: Optional[str] = None
    to_emails: List[str]
    cc_emails: Optional[List[str]] = None
    subject: str
    preview_text: Optional[str] = None
    date_sent: Optional[datetime] = None
    date_received: datetime
    importance: str
    is_read: bool
    is_starred: bool
    is_flagged: bool
    is_draft: bool
    is_sent: bool
    is_archived: bool
    is_deleted: bool
    is_spam: bool
    is_scheduled: bool
    scheduled_for: Optional[datetime] = None
    has_attachments: bool
    attachment_count: int
    labels: List[str]
    categories: List[str]
    assigned_to: Optional[str] = None

    class Config:
        from_attributes = True


class MessageDetailResponse(MessageResponse):
    bcc_emails: Optional[List[str]] = None
    reply_to: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    size_bytes: Optional[int] = None
    assigned_at: Optional[datetime] = None


class MessageListResponse(BaseModel):
    """One page of messages"""
    items: List[MessageResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class BulkRequest(BaseModel):
    message_ids: List[str] = Field(min_length=1, max_length=1000)
    mutation: Mutation
    account_id: Optional[UUID] = None


class BulkResponse(BaseModel):
    succeeded: List[str]
    failed: List[BulkFailure]

    @computed_field
    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


class MessageActionRequest(BaseModel):
    action: str


class DraftRequest(BaseModel):
    account_id: UUID
    message: ComposeInput


class ScheduleRequest(BaseModel):
    account_id: UUID
    message: ComposeInput
    scheduled_for: datetime


class SendRequest(BaseModel):
    """New message, or draft_id of a stored draft/scheduled message"""
    account_id: UUID
    message: Optional[ComposeInput] = None
    draft_id: Optional[UUID] = None


class TestConnectionRequest(BaseModel):
    """Either a full configuration or the id of a stored account"""
    account: Optional[AccountInput] = None
    account_id: Optional[UUID] = None


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    details: Optional[Dict[str, Any]] = None


class ConversationDetailResponse(BaseModel):
    conversation: ConversationSummary
    messages: List[MessageResponse]


class ContactResponse(BaseModel):
    id: UUID
    email_address: str
    name: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str]
    is_favorite: bool
    contact_frequency: int
    last_contact_date: Optional[datetime] = None

    class Config:
        from_attributes = True


class RuleResponse(BaseModel):
    id: UUID
    account_id: Optional[UUID] = None
    name: str
    description: Optional[str] = None
    priority: int
    is_enabled: bool
    stop_on_match: bool
    conditions: List[Dict[str, Any]]
    actions: List[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True


class TemplateResponse(BaseModel):
    id: UUID
    name: str
    subject: Optional[str] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    variables: List[str]
    category: Optional[str] = None
    is_default: bool
    usage_count: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeletedResponse(BaseModel):
    success: bool = True
    id: str
