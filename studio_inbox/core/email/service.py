"""
Inbox service.

Operations behind the HTTP API and the CLI: account and folder
configuration, message reads and state changes, drafts, scheduling and
sending, conversations, contacts, rules and templates. State changes on
messages always go through the BulkMutationEngine; sync goes through the
SyncEngine.

Every method either completes or raises an InboxError with nothing
written.
"""
import logging
import secrets
import time
from datetime import datetime
from email.utils import make_msgid
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy.orm import Session

from studio_inbox.core.config import get_settings
from studio_inbox.core.accounts.manager import ensure_default_folders
from studio_inbox.core.database.models import Account, Contact, Folder, Message, Rule, Template, utcnow
from studio_inbox.core.database.repository import InboxRepository, as_uuid, sanitize_for_postgres
from .bulk_mutations import BulkMutationEngine
from .email_filter import EmailFilter, MessagePage
from .errors import ConflictError, InboxValidationError, InvalidOperation, NotFoundError
from .models import (
    AccountInput,
    AccountUpdate,
    BulkResult,
    ComposeInput,
    ComposedMessage,
    ConnectionTestResult,
    ContactInput,
    ContactUpdate,
    ConversationSummary,
    FolderInput,
    FolderType,
    FolderUpdate,
    IMPORTANCE_PRIORITY,
    MessageFilter,
    Mutation,
    NormalizedMessage,
    SyncResult,
    to_naive_utc,
    validate_payload,
)
from .retry_manager import RetryManager
from .rule_engine import RuleInput, RuleUpdate, parse_actions, parse_conditions
from .templates import TemplateInput, TemplateUpdate, render_template, template_variables
from .thread_grouper import ThreadGrouper
from .transport import ConnectionConfig, MailTransport, validate_connection_config

logger = logging.getLogger(__name__)

# Single-message convenience actions
MESSAGE_ACTIONS = {
    "mark_read": Mutation(set_flags={"is_read": True}),
    "mark_unread": Mutation(set_flags={"is_read": False}),
    "star": Mutation(set_flags={"is_starred": True}),
    "unstar": Mutation(set_flags={"is_starred": False}),
    "flag": Mutation(set_flags={"is_flagged": True}),
    "unflag": Mutation(set_flags={"is_flagged": False}),
    "archive": Mutation(set_flags={"is_archived": True}),
    "unarchive": Mutation(set_flags={"is_archived": False}),
    "mark_spam": Mutation(set_flags={"is_spam": True}),
    "not_spam": Mutation(set_flags={"is_spam": False}),
    "delete": Mutation(set_flags={"is_deleted": True}),
    "restore": Mutation(set_flags={"is_deleted": False}),
}


def generate_draft_id() -> str:
    """draft_<unix ms>_<random hex>"""
    return f"draft_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _bump_usage(template: Template):
    template.usage_count = (template.usage_count or 0) + 1


class InboxService:
    """Facade over the repository and the engines for one database session"""

    def __init__(self, db: Session, transport: Optional[MailTransport] = None,
                 sync_engine=None, user_id: str = "default"):
        """
        Args:
            db: Database session (one per request)
            transport: Mail transport for test_connection and send
            sync_engine: SyncEngine for explicit sync and cancellation
            user_id: Owner of accounts, rules and contacts
        """
        self.db = db
        self.repo = InboxRepository(db)
        self.bulk = BulkMutationEngine(db)
        self.transport = transport
        self.sync_engine = sync_engine
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def list_accounts(self) -> List[Account]:
        return self.repo.list_accounts(self.user_id)

    def get_account(self, account_id: Any) -> Account:
        account = self.repo.require(Account, account_id)
        if account.user_id != self.user_id:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def create_account(self, data: Union[AccountInput, Dict[str, Any]]) -> Account:
        """
        Create an account with its default folders. The first account of a
        user, or one created with is_default, becomes the default.
        """
        data = validate_payload(AccountInput, data, "account")
        duplicate = [a for a in self.list_accounts() if a.email_address == data.email_address]
        if duplicate:
            raise ConflictError(f"Account {data.email_address} already exists")

        fields = data.model_dump(exclude={"credential", "is_default"})
        fields["provider"] = data.provider.value
        fields["incoming_security"] = data.incoming_security.value
        fields["outgoing_security"] = data.outgoing_security.value
        account = Account(user_id=self.user_id, **fields)
        if data.credential is not None:
            account.credential_ref = data.credential.get_secret_value()
        self.repo.put(account)

        ensure_default_folders(self.repo, account)
        if data.is_default or self.repo.get_default_account(self.user_id) is None:
            self.repo.make_default(account)
        self.repo.commit()
        logger.info(f"Created account {account.email_address} ({account.provider})")
        return account

    def update_account(self, account_id: Any, data: Union[AccountUpdate, Dict[str, Any]]) -> Account:
        data = validate_payload(AccountUpdate, data, "account update")
        account = self.get_account(account_id)

        changes = data.model_dump(exclude_unset=True, exclude={"credential", "is_default"})
        for field, value in changes.items():
            if hasattr(value, "value"):
                value = value.value
            setattr(account, field, value)
        if data.credential is not None:
            account.credential_ref = data.credential.get_secret_value()
        if data.is_default:
            self.repo.make_default(account)
        elif data.is_default is False and account.is_default:
            raise InboxValidationError("Make another account the default instead of unsetting it")
        self.repo.commit()
        return account

    def set_default_account(self, account_id: Any) -> Account:
        account = self.get_account(account_id)
        self.repo.make_default(account)
        self.repo.commit()
        logger.info(f"Default account is now {account.email_address}")
        return account

    def delete_account(self, account_id: Any):
        """Soft-delete an account with its folders and messages; a running sync is cancelled"""
        account = self.get_account(account_id)
        was_default = account.is_default
        self.repo.soft_delete_account(account)

        if was_default:
            remaining = self.list_accounts()
            if remaining:
                self.repo.make_default(remaining[0])
        self.repo.commit()

        if self.sync_engine is not None:
            self.sync_engine.cancel(account.id)
        logger.info(f"Deleted account {account.email_address}")

    async def test_connection(self, data: Union[AccountInput, Dict[str, Any], None] = None,
                              account_id: Optional[Any] = None) -> ConnectionTestResult:
        """
        Check a configuration (or a stored account) against its servers.

        Incomplete settings raise InboxValidationError before any network call.
        """
        if account_id is not None:
            config = ConnectionConfig.from_account(self.get_account(account_id))
        else:
            data = validate_payload(AccountInput, data, "account")
            config = ConnectionConfig(
                email_address=data.email_address,
                provider=data.provider.value,
                incoming_server=data.incoming_server,
                incoming_port=data.incoming_port,
                incoming_security=data.incoming_security.value,
                outgoing_server=data.outgoing_server,
                outgoing_port=data.outgoing_port,
                outgoing_security=data.outgoing_security.value,
                username=data.username,
                auth_type=data.auth_type,
                credential=data.credential,
            ).with_provider_defaults()

        validate_connection_config(config)
        return await self._require_transport().test_connection(config)

    async def sync_account(self, account_id: Any) -> SyncResult:
        account = self.get_account(account_id)
        if self.sync_engine is None:
            raise InvalidOperation("Sync is not available in this process")
        result = await self.sync_engine.sync_account(account.id)
        # The pass wrote through its own session
        self.db.expire_all()
        return result

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    def list_folders(self, account_id: Any) -> List[Folder]:
        return self.repo.list_folders(self.get_account(account_id).id)

    def get_folder(self, folder_id: Any) -> Folder:
        folder = self.repo.require(Folder, folder_id)
        self.get_account(folder.account_id)
        return folder

    def create_folder(self, account_id: Any, data: Union[FolderInput, Dict[str, Any]]) -> Folder:
        data = validate_payload(FolderInput, data, "folder")
        account = self.get_account(account_id)

        folder = Folder(
            account_id=account.id,
            name=data.name,
            display_name=data.display_name or data.name,
            folder_type=data.folder_type.value,
            remote_folder_id=data.remote_folder_id or data.name,
            sync_enabled=data.sync_enabled,
            sort_order=data.sort_order,
            color=data.color,
        )
        self.repo.validate_folder_placement(folder, data.parent_folder_id)
        folder.parent_folder_id = data.parent_folder_id
        self.repo.put(folder)
        self.repo.commit()
        return folder

    def update_folder(self, folder_id: Any, data: Union[FolderUpdate, Dict[str, Any]]) -> Folder:
        data = validate_payload(FolderUpdate, data, "folder update")
        folder = self.get_folder(folder_id)

        if data.clear_parent or data.parent_folder_id is not None:
            parent_id = None if data.clear_parent else data.parent_folder_id
            self.repo.validate_folder_placement(folder, parent_id)
            folder.parent_folder_id = parent_id

        changes = data.model_dump(exclude_unset=True, exclude={"parent_folder_id", "clear_parent"})
        for field, value in changes.items():
            setattr(folder, field, value)
        self.repo.commit()
        return folder

    def delete_folder(self, folder_id: Any):
        """
        Soft-delete a custom folder. Its messages move to the account's
        Trash folder; folders with live subfolders cannot be deleted.
        """
        folder = self.get_folder(folder_id)
        if folder.folder_type != FolderType.CUSTOM.value:
            raise InvalidOperation(f"System folder '{folder.name}' cannot be deleted")
        children = self.repo.query(Folder, filters={"parent_folder_id": folder.id})
        if children:
            raise ConflictError(f"Folder '{folder.name}' still has {len(children)} subfolders")

        trash = self.repo.get_folder_by_type(folder.account_id, FolderType.TRASH.value)
        messages = self.repo.query(Message, filters={"folder_id": folder.id}, include_deleted=True)
        for message in messages:
            message.folder_id = trash.id if trash is not None else None
        folder.is_deleted = True
        if trash is not None:
            self.repo.recompute_folder_counts([trash.id])
        self.repo.commit()
        logger.info(f"Deleted folder {folder.name} ({len(messages)} messages moved to trash)")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def get_message(self, message_id: Any, include_deleted: bool = False) -> Message:
        message = self.repo.require(Message, message_id, include_deleted=include_deleted)
        self.get_account(message.account_id)
        return message

    def search(self, spec: Union[MessageFilter, Dict[str, Any]]) -> MessagePage:
        if not isinstance(spec, MessageFilter):
            spec = MessageFilter.from_dict(spec)
        if spec.account_id is not None:
            self.get_account(spec.account_id)
        return EmailFilter(self.db).search(spec)

    def update_message(self, message_id: Any, mutation: Union[Mutation, Dict[str, Any]]) -> Message:
        message = self.get_message(message_id, include_deleted=True)
        return self.bulk.apply_one(message.id, mutation)

    def message_action(self, message_id: Any, action: str) -> Message:
        """mark_read, star, archive, delete, restore ... (see MESSAGE_ACTIONS)"""
        if action not in MESSAGE_ACTIONS:
            raise InboxValidationError(f"Unknown action '{action}'", details={"allowed": sorted(MESSAGE_ACTIONS)})
        return self.update_message(message_id, MESSAGE_ACTIONS[action])

    def bulk_update(self, message_ids: Sequence[Any], mutation: Union[Mutation, Dict[str, Any]],
                    account_id: Optional[Any] = None) -> BulkResult:
        if not message_ids:
            raise InboxValidationError("message_ids must not be empty")
        if account_id is not None:
            account_id = self.get_account(account_id).id
        return self.bulk.apply(message_ids, mutation, account_id=account_id)

    # ------------------------------------------------------------------
    # Drafts, scheduling, sending
    # ------------------------------------------------------------------

    def save_draft(self, account_id: Any, data: Union[ComposeInput, Dict[str, Any]],
                   draft_id: Optional[Any] = None) -> Message:
        """Create or overwrite a draft (not filed in any folder, never synced)"""
        data = validate_payload(ComposeInput, data, "draft")
        data = self._render_template(data)
        account = self.get_account(account_id)

        if draft_id is not None:
            message = self.get_message(draft_id)
            if not message.is_draft or message.account_id != account.id:
                raise InvalidOperation("Only drafts of this account can be edited")
        else:
            generated = generate_draft_id()
            message = Message(
                account_id=account.id,
                folder_id=None,
                message_id=generated,
                thread_id=generated,
                is_draft=True,
                is_read=True,
                labels=[],
                categories=[],
            )

        self._fill_composed(account, message, data)
        if draft_id is None:
            message.thread_id = self._thread_for(account, message)
        self.repo.put(message)
        self._count_template_use(data)
        self.repo.commit()
        return message

    def schedule_message(self, account_id: Any, data: Union[ComposeInput, Dict[str, Any]],
                         scheduled_for: datetime) -> Message:
        """Store a message to be sent at scheduled_for (must be in the future)"""
        data = validate_payload(ComposeInput, data, "message")
        if not data.recipients:
            raise InboxValidationError("A scheduled message needs at least one recipient")
        scheduled_for = to_naive_utc(scheduled_for)
        if scheduled_for <= utcnow():
            raise InboxValidationError("scheduled_for must be in the future")

        message = self.save_draft(account_id, data)
        message.is_draft = False
        message.is_scheduled = True
        message.scheduled_for = scheduled_for
        self.repo.commit()
        logger.info(f"Scheduled message {message.message_id} for {scheduled_for.isoformat()}")
        return message

    async def send_message(self, account_id: Any, data: Union[ComposeInput, Dict[str, Any], None] = None,
                           draft_id: Optional[Any] = None) -> Message:
        """
        Send through the transport (retrying transient failures) and file the
        message in the account's Sent folder.

        Either data (new message) or draft_id (send a stored draft or
        scheduled message) is required.
        """
        account = self.get_account(account_id)
        stored = None
        if draft_id is not None:
            stored = self.get_message(draft_id)
            if stored.account_id != account.id or not (stored.is_draft or stored.is_scheduled):
                raise InvalidOperation("Only drafts or scheduled messages of this account can be sent")
            data = ComposeInput(
                to_emails=list(stored.to_emails or []),
                cc_emails=list(stored.cc_emails or []),
                bcc_emails=list(stored.bcc_emails or []),
                subject=stored.subject or "",
                body_text=stored.body_text,
                body_html=stored.body_html,
                in_reply_to=stored.in_reply_to,
                references=(stored.references or "").split(),
                importance=stored.importance,
            )
        else:
            data = validate_payload(ComposeInput, data, "message")
        if not data.recipients:
            raise InboxValidationError("A message needs at least one recipient")

        config = ConnectionConfig.from_account(account)
        validate_connection_config(config)
        data = self._render_template(data)

        domain = account.email_address.rsplit("@", 1)[-1]
        composed = ComposedMessage(
            message_id=make_msgid(domain=domain),
            from_email=account.email_address,
            from_name=account.name,
            to_emails=data.to_emails,
            cc_emails=data.cc_emails,
            bcc_emails=data.bcc_emails,
            subject=data.subject,
            body_text=self._with_signature(account, data.body_text),
            body_html=data.body_html,
            in_reply_to=data.in_reply_to,
            references=" ".join(data.references) or None,
            importance=data.importance,
        )

        settings = get_settings()
        retry = RetryManager(max_retries=settings.send_max_retries)
        transport = self._require_transport()
        remote_id = await retry.execute_with_retry(
            transport.send_message, "send_message", config, composed
        )
        self._count_template_use(data)
        return self._store_sent(account, composed, remote_id, data, stored)

    async def dispatch_scheduled(self, now: Optional[datetime] = None) -> Tuple[List[str], List[str]]:
        """
        Send every scheduled message that is due.

        Returns:
            (sent message ids, failed message ids)
        """
        now = now or utcnow()
        account_ids = [a.id for a in self.list_accounts()]
        if not account_ids:
            return [], []
        due = (
            self.db.query(Message)
            .filter(
                Message.account_id.in_(account_ids),
                Message.is_scheduled.is_(True),
                Message.is_deleted.is_(False),
                Message.scheduled_for <= now,
            )
            .order_by(Message.scheduled_for.asc())
            .all()
        )
        sent, failed = [], []
        for message in due:
            try:
                await self.send_message(message.account_id, draft_id=message.id)
                sent.append(str(message.id))
            except Exception as e:
                self.repo.rollback()
                logger.error(f"Scheduled message {message.id} failed: {e}")
                failed.append(str(message.id))
        return sent, failed

    def _store_sent(self, account: Account, composed: ComposedMessage, remote_id: str,
                    data: ComposeInput, stored: Optional[Message]) -> Message:
        sent_folder = self.repo.get_folder_by_type(account.id, FolderType.SENT.value)
        now = utcnow()
        message = stored or Message(account_id=account.id, labels=[], categories=[])
        old_message_id = message.message_id

        message.message_id = composed.message_id
        message.remote_message_id = None
        message.folder_id = sent_folder.id if sent_folder is not None else None
        self._fill_composed(account, message, data)
        message.body_text = composed.body_text
        message.date_sent = now
        message.date_received = now
        message.is_sent = True
        message.is_read = True
        message.is_draft = False
        message.is_scheduled = False
        message.scheduled_for = None
        # Sync of the Sent folder must not undo is_read on the stored copy
        message.remote_flags = {"is_read": True, "is_flagged": False, "is_draft": False, "is_deleted": False}

        if stored is None or message.thread_id == old_message_id:
            message.thread_id = self._thread_for(account, message)
        self.repo.put(message)
        self.repo.record_contacts(account, message)
        if sent_folder is not None:
            self.repo.recompute_folder_counts([sent_folder.id])
        self.repo.commit()
        logger.info(f"Sent {message.message_id} from {account.email_address} (remote {remote_id})")
        return message

    def _fill_composed(self, account: Account, message: Message, data: ComposeInput):
        message.from_email = account.email_address
        message.from_name = account.name
        message.to_emails = data.to_emails
        message.cc_emails = data.cc_emails
        message.bcc_emails = data.bcc_emails
        message.subject = sanitize_for_postgres(data.subject, 'subject') or ""
        message.body_text = sanitize_for_postgres(data.body_text, 'body_text')
        message.body_html = sanitize_for_postgres(data.body_html, 'body_html')
        message.preview_text = (data.body_text or "")[:200] or None
        message.in_reply_to = data.in_reply_to
        message.references = " ".join(data.references) or None
        message.importance = data.importance.value
        message.priority = IMPORTANCE_PRIORITY[data.importance.value]
        if message.date_received is None:
            message.date_received = utcnow()

    def _render_template(self, data: ComposeInput) -> ComposeInput:
        """Fill an empty subject or body from data.template_id"""
        if data.template_id is None:
            return data
        rendered = render_template(self.get_template(data.template_id), data.template_values)
        return data.model_copy(update={
            "subject": data.subject or rendered.subject or "",
            "body_text": data.body_text if data.body_text is not None else rendered.body_text,
            "body_html": data.body_html if data.body_html is not None else rendered.body_html,
        })

    def _count_template_use(self, data: ComposeInput):
        if data.template_id is not None:
            self.repo.atomic_update(Template, data.template_id, _bump_usage)

    def _thread_for(self, account: Account, message: Message) -> str:
        normalized = NormalizedMessage(
            message_id=message.message_id,
            in_reply_to=message.in_reply_to,
            references=(message.references or "").split(),
            from_email=message.from_email,
            to_emails=list(message.to_emails or []),
            cc_emails=list(message.cc_emails or []),
            subject=message.subject or "",
            date_received=message.date_received or utcnow(),
        )
        return ThreadGrouper(self.repo).resolve(account, normalized)

    @staticmethod
    def _with_signature(account: Account, body_text: Optional[str]) -> Optional[str]:
        if not account.auto_signature or not account.signature_text:
            return body_text
        return f"{body_text or ''}\n\n-- \n{account.signature_text}"

    def _require_transport(self) -> MailTransport:
        if self.transport is None:
            raise InvalidOperation("No mail transport configured")
        return self.transport

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def list_conversations(self, account_id: Any, include_archived: bool = False,
                           search: Optional[str] = None, limit: int = 50,
                           offset: int = 0) -> List[ConversationSummary]:
        account = self.get_account(account_id)
        return self.repo.list_conversations(account.id, include_archived, search, limit, offset)

    def get_conversation(self, account_id: Any, thread_id: str) -> Tuple[ConversationSummary, List[Message]]:
        account = self.get_account(account_id)
        summary = self.repo.get_conversation(account.id, thread_id)
        if summary is None:
            raise NotFoundError(f"Conversation {thread_id} not found")
        return summary, self.repo.get_conversation_messages(account.id, thread_id)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def list_contacts(self, search: Optional[str] = None, favorites_only: bool = False,
                      limit: int = 50, offset: int = 0) -> List[Contact]:
        return self.repo.list_contacts(self.user_id, search, favorites_only, limit, offset)

    def get_contact(self, contact_id: Any) -> Contact:
        contact = self.repo.require(Contact, contact_id)
        if contact.user_id != self.user_id:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    def create_contact(self, data: Union[ContactInput, Dict[str, Any]]) -> Contact:
        data = validate_payload(ContactInput, data, "contact")
        if self.repo.get_contact_by_email(self.user_id, data.email_address) is not None:
            raise ConflictError(f"Contact {data.email_address} already exists")
        contact = Contact(user_id=self.user_id, contact_frequency=0, **data.model_dump())
        self.repo.put(contact)
        self.repo.commit()
        return contact

    def update_contact(self, contact_id: Any, data: Union[ContactUpdate, Dict[str, Any]]) -> Contact:
        data = validate_payload(ContactUpdate, data, "contact update")
        contact = self.get_contact(contact_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(contact, field, value)
        self.repo.commit()
        return contact

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def list_rules(self, account_id: Optional[Any] = None) -> List[Rule]:
        q = self.db.query(Rule).filter(Rule.user_id == self.user_id)
        if account_id is not None:
            q = q.filter(Rule.account_id == self.get_account(account_id).id)
        return q.order_by(Rule.priority.desc(), Rule.name.asc()).all()

    def get_rule(self, rule_id: Any) -> Rule:
        rule = self.repo.require(Rule, rule_id)
        if rule.user_id != self.user_id:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    def create_rule(self, data: Union[RuleInput, Dict[str, Any]]) -> Rule:
        data = validate_payload(RuleInput, data, "rule")
        account_id = self.get_account(data.account_id).id if data.account_id else None
        rule = Rule(
            user_id=self.user_id,
            account_id=account_id,
            name=data.name,
            description=data.description,
            priority=data.priority,
            is_enabled=data.enabled,
            stop_on_match=data.stop_on_match,
            conditions=[c.model_dump(mode="json") for c in data.conditions],
            actions=[a.model_dump(mode="json") for a in data.actions],
        )
        self.repo.put(rule)
        self.repo.commit()
        logger.info(f"Created rule '{rule.name}'")
        return rule

    def update_rule(self, rule_id: Any, data: Union[RuleUpdate, Dict[str, Any]]) -> Rule:
        data = validate_payload(RuleUpdate, data, "rule update")
        rule = self.get_rule(rule_id)
        changes = data.model_dump(exclude_unset=True, mode="json")
        if "enabled" in changes:
            rule.is_enabled = changes.pop("enabled")
        if "conditions" in changes:
            rule.conditions = [c.model_dump(mode="json") for c in parse_conditions(changes.pop("conditions"))]
        if "actions" in changes:
            rule.actions = [a.model_dump(mode="json") for a in parse_actions(changes.pop("actions"))]
        for field, value in changes.items():
            setattr(rule, field, value)
        self.repo.commit()
        return rule

    def delete_rule(self, rule_id: Any):
        rule = self.get_rule(rule_id)
        self.db.delete(rule)
        self.repo.commit()
        logger.info(f"Deleted rule '{rule.name}'")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def list_templates(self, category: Optional[str] = None) -> List[Template]:
        return self.repo.list_templates(self.user_id, category)

    def get_template(self, template_id: Any) -> Template:
        template = self.repo.require(Template, template_id)
        if template.user_id != self.user_id:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def create_template(self, data: Union[TemplateInput, Dict[str, Any]]) -> Template:
        data = validate_payload(TemplateInput, data, "template")
        template = Template(user_id=self.user_id, usage_count=0, **data.model_dump(exclude={"is_default"}))
        self.repo.put(template)
        if data.is_default:
            self.repo.make_default_template(template)
        self.repo.commit()
        logger.info(f"Created template '{template.name}'")
        return template

    def update_template(self, template_id: Any, data: Union[TemplateUpdate, Dict[str, Any]]) -> Template:
        data = validate_payload(TemplateUpdate, data, "template update")
        template = self.get_template(template_id)
        changes = data.model_dump(exclude_unset=True, exclude={"is_default"})

        content = {f: changes.get(f, getattr(template, f)) for f in ("subject", "body_text", "body_html")}
        if not any(content.values()):
            raise InboxValidationError("A template needs a subject or a body")
        if "variables" not in changes and any(f in changes for f in content):
            changes["variables"] = template_variables(*content.values())

        for field, value in changes.items():
            setattr(template, field, value)
        if data.is_default:
            self.repo.make_default_template(template)
        elif data.is_default is False:
            template.is_default = False
        self.repo.commit()
        return template

    def delete_template(self, template_id: Any):
        template = self.get_template(template_id)
        self.db.delete(template)
        self.repo.commit()
        logger.info(f"Deleted template '{template.name}'")
