"""
Rule engine for automated triage.

Rules are ordered condition/action pairs evaluated on every newly stored
message. All conditions of a rule must hold (AND); each supports
``negate``. Matching rules apply their actions cumulatively unless
stop-on-first-match is configured engine-wide or on the rule.

Conditions and actions are closed, tagged variants (pydantic
discriminated unions keyed by ``type``) so a malformed rule is rejected
when it is stored, not when it first fires.

Actions go through the BulkMutationEngine one message at a time; notify
actions are emitted to a NotificationSink.
"""
import logging
import re
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator
from sqlalchemy.orm import Session

from studio_inbox.core.config import get_settings
from studio_inbox.core.database.models import Account, Folder, Message, Rule
from studio_inbox.core.database.repository import InboxRepository
from .bulk_mutations import BulkMutationEngine
from .errors import InboxError, InboxValidationError
from .models import MESSAGE_FLAGS, Mutation, NotificationEvent, _raise_validation, _reject_nulls, to_naive_utc
from .notifications import LoggingNotificationSink, NotificationSink

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("subject", "from_email", "from_name", "reply_to", "body_text", "preview_text",
               "to_emails", "cc_emails", "importance", "assigned_to")
MatchType = Literal["equals", "contains", "regex", "domain"]


def _field_text(message: Message, field: str) -> str:
    value = getattr(message, field, None)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _match_address(addresses: List[str], value: str, match_type: str) -> bool:
    # Regex patterns keep their case (\S is not \s)
    pattern = value
    value = value.lower()
    for address in addresses:
        address = (address or "").lower()
        if not address:
            continue
        if match_type == "equals" and address == value:
            return True
        if match_type == "contains" and value in address:
            return True
        if match_type == "domain" and address.rsplit("@", 1)[-1] == value.lstrip("@"):
            return True
        if match_type == "regex" and re.search(pattern, address, re.IGNORECASE):
            return True
    return False


class _ConditionBase(BaseModel):
    negate: bool = False

    def evaluate(self, message: Message) -> bool:
        result = self._test(message)
        return not result if self.negate else result

    def _test(self, message: Message) -> bool:
        raise NotImplementedError


class FieldEquals(_ConditionBase):
    type: Literal["field_equals"] = "field_equals"
    field: Literal[TEXT_FIELDS]
    value: str
    case_sensitive: bool = False

    def _test(self, message):
        actual = _field_text(message, self.field)
        if self.case_sensitive:
            return actual == self.value
        return actual.lower() == self.value.lower()


class FieldContains(_ConditionBase):
    type: Literal["field_contains"] = "field_contains"
    field: Literal[TEXT_FIELDS]
    value: str
    case_sensitive: bool = False

    def _test(self, message):
        actual = _field_text(message, self.field)
        if self.case_sensitive:
            return self.value in actual
        return self.value.lower() in actual.lower()


class _AddressCondition(_ConditionBase):
    value: str
    match_type: MatchType = "contains"

    @model_validator(mode="after")
    def _check_regex(self):
        if self.match_type == "regex":
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"Invalid regex '{self.value}': {e}")
        return self


class SenderMatches(_AddressCondition):
    type: Literal["sender_matches"] = "sender_matches"

    def _test(self, message):
        return _match_address([message.from_email], self.value, self.match_type)


class RecipientMatches(_AddressCondition):
    type: Literal["recipient_matches"] = "recipient_matches"
    include_cc: bool = True

    def _test(self, message):
        addresses = list(message.to_emails or [])
        if self.include_cc:
            addresses += list(message.cc_emails or [])
        return _match_address(addresses, self.value, self.match_type)


class FlagIs(_ConditionBase):
    type: Literal["flag_is"] = "flag_is"
    flag: Literal[MESSAGE_FLAGS + ("has_attachments", "is_scheduled")]
    value: bool = True

    def _test(self, message):
        return bool(getattr(message, self.flag)) == self.value


class LabelOverlap(_ConditionBase):
    type: Literal["label_overlap"] = "label_overlap"
    labels: List[str] = Field(min_length=1)
    include_categories: bool = False

    def _test(self, message):
        present = set(message.labels or [])
        if self.include_categories:
            present |= set(message.categories or [])
        return bool(present & set(self.labels))


class KeywordMatch(_ConditionBase):
    type: Literal["keyword_match"] = "keyword_match"
    keywords: List[str] = Field(min_length=1)
    fields: List[Literal["subject", "body_text"]] = Field(default_factory=lambda: ["subject", "body_text"])
    match_all: bool = False
    whole_word: bool = False

    def _test(self, message):
        text = "\n".join(_field_text(message, f) for f in self.fields).lower()
        hits = [self._found(keyword.lower(), text) for keyword in self.keywords]
        return all(hits) if self.match_all else any(hits)

    def _found(self, keyword: str, text: str) -> bool:
        if self.whole_word:
            return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
        return keyword in text


class DateRange(_ConditionBase):
    type: Literal["date_range"] = "date_range"
    field: Literal["date_received", "date_sent"] = "date_received"
    after: Optional[datetime] = None
    before: Optional[datetime] = None

    @model_validator(mode="after")
    def _bounds(self):
        if self.after is None and self.before is None:
            raise ValueError("date_range needs after and/or before")
        if self.after and self.before and self.after > self.before:
            raise ValueError("after must not be later than before")
        return self

    def _test(self, message):
        value = getattr(message, self.field)
        if value is None:
            return False
        after, before = to_naive_utc(self.after), to_naive_utc(self.before)
        if after is not None and value < after:
            return False
        if before is not None and value > before:
            return False
        return True


Condition = Annotated[
    Union[FieldEquals, FieldContains, SenderMatches, RecipientMatches,
          FlagIs, LabelOverlap, KeywordMatch, DateRange],
    Field(discriminator="type"),
]


class AddLabelsAction(BaseModel):
    type: Literal["add_labels"] = "add_labels"
    labels: List[str] = Field(min_length=1)

    def to_mutation(self) -> Mutation:
        return Mutation(add_labels=self.labels)


class RemoveLabelsAction(BaseModel):
    type: Literal["remove_labels"] = "remove_labels"
    labels: List[str] = Field(min_length=1)

    def to_mutation(self) -> Mutation:
        return Mutation(remove_labels=self.labels)


class SetFlagsAction(BaseModel):
    type: Literal["set_flags"] = "set_flags"
    flags: Dict[str, bool] = Field(min_length=1)

    @field_validator("flags")
    @classmethod
    def _known(cls, v):
        unknown = [k for k in v if k not in MESSAGE_FLAGS]
        if unknown:
            raise ValueError(f"Unknown flags: {', '.join(sorted(unknown))}")
        return v

    def to_mutation(self) -> Mutation:
        return Mutation(set_flags=self.flags)


class MoveToFolderAction(BaseModel):
    type: Literal["move_to_folder"] = "move_to_folder"
    folder_id: Optional[UUID] = None
    folder_name: Optional[str] = None

    @model_validator(mode="after")
    def _target(self):
        if self.folder_id is None and not self.folder_name:
            raise ValueError("move_to_folder needs folder_id or folder_name")
        return self


class AssignAction(BaseModel):
    type: Literal["assign"] = "assign"
    assignee: str = Field(min_length=1)

    def to_mutation(self) -> Mutation:
        return Mutation(assigned_to=self.assignee)


class NotifyAction(BaseModel):
    type: Literal["notify"] = "notify"
    event: str = "rule_matched"


Action = Annotated[
    Union[AddLabelsAction, RemoveLabelsAction, SetFlagsAction,
          MoveToFolderAction, AssignAction, NotifyAction],
    Field(discriminator="type"),
]

_conditions_adapter = TypeAdapter(List[Condition])
_actions_adapter = TypeAdapter(List[Action])


def parse_conditions(data: Any) -> List[Condition]:
    try:
        return _conditions_adapter.validate_python(data or [])
    except ValidationError as e:
        _raise_validation(e, "rule conditions")


def parse_actions(data: Any) -> List[Action]:
    try:
        actions = _actions_adapter.validate_python(data or [])
    except ValidationError as e:
        _raise_validation(e, "rule actions")
    if not actions:
        raise InboxValidationError("A rule needs at least one action")
    return actions


class RuleDefinition(BaseModel):
    """Rule as written in YAML or posted to the API"""
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    account: Optional[str] = None  # account email in YAML; None = global
    priority: int = 0
    enabled: bool = True
    stop_on_match: bool = False
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(min_length=1)


class RuleInput(BaseModel):
    """Rule create payload (API)"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    account_id: Optional[UUID] = None
    priority: int = 0
    enabled: bool = True
    stop_on_match: bool = False
    conditions: List[Condition] = Field(default_factory=list)
    actions: List[Action] = Field(min_length=1)


class RuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    stop_on_match: Optional[bool] = None
    conditions: Optional[List[Condition]] = None
    actions: Optional[List[Action]] = Field(None, min_length=1)

    @model_validator(mode="after")
    def _not_null(self):
        return _reject_nulls(self, ("name", "priority", "enabled", "stop_on_match", "conditions", "actions"))


def load_rules_from_yaml(yaml_path) -> List[RuleDefinition]:
    """
    Load rule definitions from a YAML file with a top-level ``rules`` list.

    Raises:
        InboxValidationError: a rule does not validate
    """
    with open(yaml_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    rules = []
    for index, rule_config in enumerate(config.get('rules', [])):
        try:
            rules.append(RuleDefinition.model_validate(rule_config))
        except ValidationError as e:
            name = rule_config.get('name', f'#{index}') if isinstance(rule_config, dict) else f'#{index}'
            _raise_validation(e, f"rule {name}")
    logger.info(f"Loaded {len(rules)} rules from {yaml_path}")
    return rules


class CompiledRule:
    """A stored Rule with its conditions and actions validated"""

    def __init__(self, rule: Rule):
        self.rule = rule
        self.conditions = parse_conditions(rule.conditions)
        self.actions = parse_actions(rule.actions)

    def matches(self, message: Message) -> bool:
        # All conditions must match (AND); a rule without conditions matches everything
        return all(condition.evaluate(message) for condition in self.conditions)


class RuleEvaluation(BaseModel):
    message_id: str
    matched_rules: List[str] = Field(default_factory=list)
    skipped_rules: List[str] = Field(default_factory=list)
    notifications: int = 0


class RuleEngine:
    """Evaluates an account's rules against newly stored messages"""

    def __init__(self, db: Session, sink: Optional[NotificationSink] = None,
                 stop_on_first_match: Optional[bool] = None):
        """
        Args:
            db: Database session
            sink: Receiver for notify actions (default: logging sink)
            stop_on_first_match: Engine-wide stop (default: RULES_STOP_ON_FIRST_MATCH)
        """
        self.db = db
        self.repo = InboxRepository(db)
        self.bulk = BulkMutationEngine(db)
        self.sink = sink or LoggingNotificationSink()
        if stop_on_first_match is None:
            stop_on_first_match = get_settings().rules_stop_on_first_match
        self.stop_on_first_match = stop_on_first_match

    def ordered_rules(self, account: Account) -> List[Rule]:
        """Account rules before global rules; each group by priority desc, then name"""
        return self.repo.rules_for_account(account)

    def process_new_messages(self, account: Account, message_ids: List[Any]) -> List[RuleEvaluation]:
        """Evaluate rules for each new message; one message's failure never stops the rest"""
        rules = self._compile(self.ordered_rules(account))
        results = []
        for message_id in message_ids:
            try:
                message = self.repo.get(Message, message_id)
                if message is None:
                    continue
                results.append(self._evaluate(account, message, rules))
            except Exception as e:
                self.repo.rollback()
                logger.error(f"Rule evaluation failed for message {message_id}: {e}", exc_info=True)
        return results

    def evaluate(self, account: Account, message: Message) -> RuleEvaluation:
        return self._evaluate(account, message, self._compile(self.ordered_rules(account)))

    def _compile(self, rules: List[Rule]) -> List[CompiledRule]:
        compiled = []
        for rule in rules:
            try:
                compiled.append(CompiledRule(rule))
            except InboxValidationError as e:
                logger.error(f"Rule '{rule.name}' is invalid and will be skipped: {e.message}")
        return compiled

    def _evaluate(self, account: Account, message: Message, rules: List[CompiledRule]) -> RuleEvaluation:
        evaluation = RuleEvaluation(message_id=str(message.id))
        for compiled in rules:
            rule = compiled.rule
            try:
                if not compiled.matches(message):
                    continue

                targets = self._resolve_move_targets(account, message, compiled)
                if targets is None:
                    evaluation.skipped_rules.append(str(rule.id))
                    continue

                logger.info(f"Message {message.message_id} matched rule: {rule.name}")
                evaluation.notifications += self._run_actions(account, message, compiled, targets)
                evaluation.matched_rules.append(str(rule.id))
            except InboxError as e:
                self.repo.rollback()
                logger.warning(f"Rule '{rule.name}' failed on message {message.id}: {e.message}")
                evaluation.skipped_rules.append(str(rule.id))
                continue

            if self.stop_on_first_match or rule.stop_on_match:
                break
        return evaluation

    def _resolve_move_targets(self, account: Account, message: Message,
                              compiled: CompiledRule) -> Optional[Dict[int, Folder]]:
        """
        Folder for every move action, keyed by action index.
        None makes the rule inert for this message.
        """
        targets = {}
        for index, action in enumerate(compiled.actions):
            if not isinstance(action, MoveToFolderAction):
                continue
            folder = None
            if action.folder_id is not None:
                folder = self.repo.get(Folder, action.folder_id)
            elif action.folder_name:
                folder = self._folder_by_name(message.account_id, action.folder_name)
            if folder is None or folder.account_id != message.account_id:
                logger.warning(
                    f"Rule '{compiled.rule.name}' targets a missing folder "
                    f"({action.folder_id or action.folder_name}) for account {account.email_address}; skipped"
                )
                return None
            targets[index] = folder
        return targets

    def _folder_by_name(self, account_id, name: str) -> Optional[Folder]:
        for folder in self.repo.list_folders(account_id):
            if name in (folder.name, folder.remote_folder_id, folder.display_name):
                return folder
        return None

    def _run_actions(self, account: Account, message: Message, compiled: CompiledRule,
                     targets: Dict[int, Folder]) -> int:
        notifications = 0
        for index, action in enumerate(compiled.actions):
            if isinstance(action, NotifyAction):
                self.sink.emit(NotificationEvent(
                    type=action.event,
                    account_id=str(account.id),
                    message_id=str(message.id),
                    rule_id=str(compiled.rule.id),
                ))
                notifications += 1
                continue
            if isinstance(action, MoveToFolderAction):
                mutation = Mutation(move_to_folder_id=targets[index].id)
            else:
                mutation = action.to_mutation()
            self.bulk.apply_one(message.id, mutation)
        return notifications


def seed_rules(db: Session, definitions: List[RuleDefinition], user_id: str = "default") -> Dict[str, int]:
    """
    Create or update stored rules from definitions (keyed by name + account).

    Returns:
        {'created': N, 'updated': N, 'skipped': N}
    """
    repo = InboxRepository(db)
    stats = {'created': 0, 'updated': 0, 'skipped': 0}
    accounts = {a.email_address.lower(): a for a in repo.list_accounts(user_id)}

    for definition in definitions:
        account_id = None
        if definition.account:
            account = accounts.get(definition.account.lower())
            if account is None:
                logger.warning(f"Rule '{definition.name}' references unknown account {definition.account}; skipped")
                stats['skipped'] += 1
                continue
            account_id = account.id

        rule = (
            db.query(Rule)
            .filter(
                Rule.user_id == user_id,
                Rule.name == definition.name,
                Rule.account_id == account_id if account_id is not None else Rule.account_id.is_(None),
            )
            .first()
        )
        if rule is None:
            rule = Rule(user_id=user_id, name=definition.name, account_id=account_id)
            db.add(rule)
            stats['created'] += 1
        else:
            stats['updated'] += 1

        rule.description = definition.description
        rule.priority = definition.priority
        rule.is_enabled = definition.enabled
        rule.stop_on_match = definition.stop_on_match
        rule.conditions = [c.model_dump(mode="json") for c in definition.conditions]
        rule.actions = [a.model_dump(mode="json") for a in definition.actions]

    db.commit()
    logger.info(f"Seeded rules: {stats}")
    return stats
