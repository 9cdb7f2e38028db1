"""
SQLAlchemy Database Models for the multi-account inbox

Stores:
- Accounts (connection settings, sync status, encrypted credential reference)
- Folders (tree per account, cached counts, sync watermark)
- Messages (headers, content, flags, labels, thread key)
- Rules (ordered condition/action automation)
- Contacts (derived traffic counters per user)
- Templates (reusable subject/body text with placeholders)

Conversations are not stored: they are aggregated from messages sharing a
thread_id (see repository.list_conversations).

Encryption:
- Only Account.credential_ref is encrypted at rest (Fernet)
- See studio_inbox/core/database/encryption.py
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import uuid

from studio_inbox.core.database.encryption import EncryptedText

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Account(Base):
    """
    One configured mailbox: provider, connection settings per direction,
    credential reference and sync status.
    """
    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, default="default", index=True)
    name = Column(String(200), nullable=False)
    email_address = Column(String(320), nullable=False)
    provider = Column(String(20), nullable=False, default="imap")  # gmail/outlook/yahoo/imap/exchange

    # Connection settings
    incoming_server = Column(String(255))
    incoming_port = Column(Integer, default=993)
    incoming_security = Column(String(10), default="ssl")  # none/ssl/tls/starttls
    outgoing_server = Column(String(255))
    outgoing_port = Column(Integer, default=587)
    outgoing_security = Column(String(10), default="starttls")

    # Authentication (ENCRYPTED - never plaintext at rest)
    username = Column(String(320))
    auth_type = Column(String(20), nullable=False, default="password")  # password/oauth2
    credential_ref = Column(EncryptedText)

    # Sync settings and state
    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency_minutes = Column(Integer, nullable=False, default=15)
    status = Column(String(20), nullable=False, default="active")  # active/inactive/error/syncing
    last_sync_at = Column(DateTime)
    last_error = Column(Text)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    next_sync_at = Column(DateTime)

    # Signatures
    signature_text = Column(Text)
    signature_html = Column(Text)
    auto_signature = Column(Boolean, nullable=False, default=False)

    is_default = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    folders = relationship("Folder", back_populates="account", order_by="Folder.sort_order")

    __table_args__ = (
        Index('ix_accounts_user_default', 'user_id', 'is_default'),
    )


class Folder(Base):
    """
    Named container of messages within an account, mapped to a remote folder.
    unread_count/total_count are caches recomputed after every write that
    changes them; the messages table is the source of truth.
    """
    __tablename__ = "folders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey('accounts.id'), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    display_name = Column(String(200))
    folder_type = Column(String(20), nullable=False, default="custom")
    parent_folder_id = Column(UUID(as_uuid=True), ForeignKey('folders.id'))
    remote_folder_id = Column(String(500))

    # Derived counts
    unread_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    color = Column(String(20))
    sort_order = Column(Integer, nullable=False, default=0)

    # Sync watermark
    last_synced_at = Column(DateTime)
    last_remote_uid = Column(String(200))

    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("Account", back_populates="folders")

    __table_args__ = (
        Index('ix_folders_account_type', 'account_id', 'folder_type'),
    )


class Message(Base):
    """
    Canonical message record. message_id is unique per account and stable
    across re-sync; remote_message_id links to the transport identity.
    """
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey('accounts.id'), nullable=False, index=True)
    folder_id = Column(UUID(as_uuid=True), ForeignKey('folders.id'), index=True)  # None for drafts/scheduled

    # Identifiers
    message_id = Column(String(500), nullable=False)
    thread_id = Column(String(500), nullable=False)
    in_reply_to = Column(String(500))
    references = Column(Text)  # Full References header (space separated ids)
    remote_message_id = Column(String(200))

    # Headers
    from_email = Column(String(320), nullable=False, default="", index=True)
    from_name = Column(String(500))
    to_emails = Column(JSON, nullable=False, default=list)
    to_names = Column(JSON, default=list)
    cc_emails = Column(JSON, default=list)
    bcc_emails = Column(JSON, default=list)
    reply_to = Column(String(320))
    subject = Column(Text, nullable=False, default="")

    # Content
    body_text = Column(Text)
    body_html = Column(Text)
    preview_text = Column(String(300))

    # Metadata
    date_sent = Column(DateTime)
    date_received = Column(DateTime, nullable=False, default=utcnow)
    size_bytes = Column(Integer)
    importance = Column(String(10), nullable=False, default="normal")  # low/normal/high
    priority = Column(Integer, nullable=False, default=2)

    # Flags
    is_read = Column(Boolean, nullable=False, default=False)
    is_starred = Column(Boolean, nullable=False, default=False)
    is_flagged = Column(Boolean, nullable=False, default=False)
    is_draft = Column(Boolean, nullable=False, default=False)
    is_sent = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    is_spam = Column(Boolean, nullable=False, default=False)

    # Scheduling
    is_scheduled = Column(Boolean, nullable=False, default=False)
    scheduled_for = Column(DateTime)

    # Attachments (metadata only)
    has_attachments = Column(Boolean, nullable=False, default=False)
    attachment_count = Column(Integer, nullable=False, default=0)
    attachments = Column(JSON, default=list)

    # Sets (stored as sorted, deduplicated lists)
    labels = Column(JSON, nullable=False, default=list)
    categories = Column(JSON, nullable=False, default=list)

    # Collaboration (local-only, never overwritten by sync)
    assigned_to = Column(String(320))
    assigned_at = Column(DateTime)

    # Flag reconciliation: last remote flag values seen and when
    remote_flags = Column(JSON)
    local_modified_at = Column(DateTime)
    remote_synced_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_messages_account_message_id', 'account_id', 'message_id', unique=True),
        Index('ix_messages_account_thread', 'account_id', 'thread_id'),
        Index('ix_messages_folder_date', 'folder_id', 'date_received'),
        Index('ix_messages_is_read_date', 'is_read', 'date_received'),
    )


class Rule(Base):
    """
    Condition/action automation. account_id NULL means global.
    conditions/actions hold tagged JSON objects validated by the rule engine.
    """
    __tablename__ = "rules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, default="default", index=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey('accounts.id'), index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    priority = Column(Integer, nullable=False, default=0)  # Higher runs first
    is_enabled = Column(Boolean, nullable=False, default=True)
    stop_on_match = Column(Boolean, nullable=False, default=False)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Contact(Base):
    """
    Address book entry keyed by lower-cased email per user.
    contact_frequency/last_contact_date are maintained from message traffic.
    """
    __tablename__ = "contacts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, default="default")
    email_address = Column(String(320), nullable=False)
    name = Column(String(500))
    company = Column(String(200))
    notes = Column(Text)
    tags = Column(JSON, nullable=False, default=list)
    is_favorite = Column(Boolean, nullable=False, default=False)

    # Derived from traffic
    contact_frequency = Column(Integer, nullable=False, default=0)
    last_contact_date = Column(DateTime)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'email_address', name='uq_contacts_user_email'),
    )


class Template(Base):
    """
    Reusable message text. subject and bodies may hold $name placeholders
    listed in variables; usage_count grows each time a message is composed
    from the template. At most one default per user and category.
    """
    __tablename__ = "email_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, default="default", index=True)
    name = Column(String(200), nullable=False)
    subject = Column(Text)
    body_text = Column(Text)
    body_html = Column(Text)
    variables = Column(JSON, nullable=False, default=list)
    category = Column(String(100))
    is_default = Column(Boolean, nullable=False, default=False)
    usage_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
