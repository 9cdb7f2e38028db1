"""
Unit tests for the rule engine: condition semantics, rule validation,
evaluation order, stop-on-match, inert move targets and YAML seeding.
"""
from datetime import datetime
from pathlib import Path

import pytest

from studio_inbox.core.database.models import Message, Rule
from studio_inbox.core.email.errors import InboxValidationError
from studio_inbox.core.email.rule_engine import (
    RuleEngine,
    load_rules_from_yaml,
    parse_actions,
    parse_conditions,
    seed_rules,
)

EXAMPLE_RULES = Path(__file__).parents[3] / "config" / "inbox_rules.example.yaml"


def _message(**fields):
    defaults = dict(
        subject="Wedding shoot in June",
        from_email="ana@example.org",
        from_name="Ana",
        to_emails=["studio@example.com"],
        cc_emails=["assistant@example.org"],
        body_text="Can we book the studio for a wedding?",
        date_received=datetime(2024, 3, 1, 10, 0),
        labels=["lead"],
        categories=[],
        is_read=False,
    )
    defaults.update(fields)
    return Message(**defaults)


def _check(condition: dict, **fields) -> bool:
    return parse_conditions([condition])[0].evaluate(_message(**fields))


class TestConditions:
    def test_field_equals_case_insensitive(self):
        assert _check({"type": "field_equals", "field": "from_name", "value": "ANA"})
        assert not _check({"type": "field_equals", "field": "from_name", "value": "ANA", "case_sensitive": True})

    def test_field_contains_on_list_field(self):
        assert _check({"type": "field_contains", "field": "cc_emails", "value": "assistant@"})

    def test_negate(self):
        assert not _check({"type": "field_contains", "field": "subject", "value": "wedding", "negate": True})
        assert _check({"type": "field_contains", "field": "subject", "value": "invoice", "negate": True})

    @pytest.mark.parametrize("value,match_type,expected", [
        ("example.org", "domain", True),
        ("@example.org", "domain", True),
        ("mail.example.org", "domain", False),
        ("ana@example.org", "equals", True),
        ("ana", "contains", True),
        (r"^a.a@", "regex", True),
        (r"^\S+@example\.org$", "regex", True),
        (r"^\D+@", "regex", True),
        (r"^ANA@", "regex", True),
        (r"^\s", "regex", False),
    ])
    def test_sender_matches(self, value, match_type, expected):
        assert _check({"type": "sender_matches", "value": value, "match_type": match_type}) is expected

    def test_recipient_matches_cc_optional(self):
        condition = {"type": "recipient_matches", "value": "assistant@example.org", "match_type": "equals"}
        assert _check(condition)
        assert not _check({**condition, "include_cc": False})

    def test_keyword_whole_word(self):
        assert _check({"type": "keyword_match", "keywords": ["wed"]})
        assert not _check({"type": "keyword_match", "keywords": ["wed"], "whole_word": True})
        assert _check({"type": "keyword_match", "keywords": ["wedding"], "whole_word": True})

    def test_keyword_match_all_and_fields(self):
        condition = {"type": "keyword_match", "keywords": ["wedding", "book"], "match_all": True}
        assert _check(condition)
        assert not _check({**condition, "fields": ["subject"]})

    def test_flag_and_labels(self):
        assert _check({"type": "flag_is", "flag": "is_read", "value": False})
        assert _check({"type": "label_overlap", "labels": ["lead", "vip"]})
        assert not _check({"type": "label_overlap", "labels": ["vip"]})

    def test_date_range(self):
        condition = {"type": "date_range", "after": "2024-02-01T00:00:00", "before": "2024-03-31T00:00:00"}
        assert _check(condition)
        assert not _check(condition, date_received=datetime(2024, 4, 2))
        assert not _check(condition, date_received=None)

    @pytest.mark.parametrize("condition", [
        {"type": "date_range"},
        {"type": "date_range", "after": "2024-05-01T00:00:00", "before": "2024-01-01T00:00:00"},
        {"type": "sender_matches", "value": "(", "match_type": "regex"},
        {"type": "field_equals", "field": "password", "value": "x"},
        {"type": "keyword_match", "keywords": []},
        {"type": "telepathy"},
    ])
    def test_invalid_conditions_rejected(self, condition):
        with pytest.raises(InboxValidationError):
            parse_conditions([condition])


class TestActions:
    @pytest.mark.parametrize("actions", [
        [],
        [{"type": "set_flags", "flags": {"is_shiny": True}}],
        [{"type": "move_to_folder"}],
        [{"type": "add_labels", "labels": []}],
        [{"type": "explode"}],
    ])
    def test_invalid_actions_rejected(self, actions):
        with pytest.raises(InboxValidationError):
            parse_actions(actions)

    def test_invalid_rule_rejected_on_create(self, service):
        with pytest.raises(InboxValidationError):
            service.create_rule({"name": "broken", "actions": [{"type": "move_to_folder"}]})


@pytest.fixture
def engine_with(db, sink):
    def _engine(stop_on_first_match=False):
        return RuleEngine(db, sink=sink, stop_on_first_match=stop_on_first_match)
    return _engine


@pytest.fixture
def inbound(account, folder_of, store_message):
    return store_message(account, folder_of(account, "inbox"), "<r1@x>",
                         subject="Invoice for March", from_email="billing@vendor.example")


def _label_rule(name, label, account_id=None, priority=0, stop_on_match=False, conditions=None):
    return {
        "name": name,
        "account_id": str(account_id) if account_id else None,
        "priority": priority,
        "stop_on_match": stop_on_match,
        "conditions": conditions or [],
        "actions": [{"type": "add_labels", "labels": [label]}],
    }


class TestRuleEngine:
    def test_account_rules_before_global(self, db, service, account, engine_with, inbound):
        service.create_rule(_label_rule("global high", "g", priority=100))
        service.create_rule(_label_rule("account low", "a", account_id=account.id, priority=1))
        service.create_rule(_label_rule("b account", "b", account_id=account.id, priority=1))

        ordered = [r.name for r in engine_with().ordered_rules(account)]
        assert ordered == ["account low", "b account", "global high"]

    def test_actions_are_cumulative(self, db, service, account, engine_with, inbound):
        service.create_rule(_label_rule("one", "first", priority=2))
        service.create_rule(_label_rule("two", "second", priority=1))

        evaluation = engine_with().evaluate(account, inbound)

        db.expire_all()
        assert len(evaluation.matched_rules) == 2
        assert inbound.labels == ["first", "second"]

    def test_rule_stop_on_match(self, db, service, account, engine_with, inbound):
        service.create_rule(_label_rule("one", "first", priority=2, stop_on_match=True))
        service.create_rule(_label_rule("two", "second", priority=1))

        engine_with().evaluate(account, inbound)

        db.expire_all()
        assert inbound.labels == ["first"]

    def test_engine_wide_stop_on_first_match(self, db, service, account, engine_with, inbound):
        service.create_rule(_label_rule("skip", "never", priority=3, conditions=[
            {"type": "field_contains", "field": "subject", "value": "receipt"},
        ]))
        service.create_rule(_label_rule("one", "first", priority=2))
        service.create_rule(_label_rule("two", "second", priority=1))

        engine_with(stop_on_first_match=True).evaluate(account, inbound)

        db.expire_all()
        assert inbound.labels == ["first"]

    def test_missing_move_target_makes_rule_inert(self, db, service, account, engine_with, inbound, folder_of):
        rule = service.create_rule({
            "name": "to nowhere",
            "actions": [
                {"type": "add_labels", "labels": ["moved"]},
                {"type": "move_to_folder", "folder_name": "Does Not Exist"},
            ],
        })

        evaluation = engine_with().evaluate(account, inbound)

        db.expire_all()
        assert evaluation.skipped_rules == [str(rule.id)]
        assert inbound.labels == []
        assert inbound.folder_id == folder_of(account, "inbox").id

    def test_move_target_of_other_account_is_inert(self, db, service, account, make_account,
                                                    engine_with, inbound, folder_of):
        other = make_account("other@example.com")
        service.create_rule({
            "name": "cross",
            "actions": [{"type": "move_to_folder", "folder_id": str(folder_of(other, "archive").id)}],
        })
        evaluation = engine_with().evaluate(account, inbound)
        assert evaluation.matched_rules == []
        assert len(evaluation.skipped_rules) == 1

    def test_move_and_notify(self, db, service, account, engine_with, inbound, folder_of, sink):
        service.create_rule({
            "name": "archive invoices",
            "conditions": [{"type": "keyword_match", "keywords": ["invoice"], "fields": ["subject"]}],
            "actions": [
                {"type": "move_to_folder", "folder_name": "Archive"},
                {"type": "notify", "event": "invoice"},
            ],
        })

        evaluation = engine_with().evaluate(account, inbound)

        db.expire_all()
        archive = folder_of(account, "archive")
        assert inbound.folder_id == archive.id
        assert inbound.is_archived is True
        assert evaluation.notifications == 1
        assert sink.events[0].type == "invoice"
        assert sink.events[0].message_id == str(inbound.id)

    def test_disabled_rule_ignored(self, db, service, account, engine_with, inbound):
        rule = service.create_rule(_label_rule("off", "x"))
        service.update_rule(rule.id, {"enabled": False})

        assert engine_with().evaluate(account, inbound).matched_rules == []

    def test_invalid_stored_rule_is_skipped(self, db, service, account, engine_with, inbound):
        db.add(Rule(user_id="default", name="legacy", conditions=[{"type": "unknown"}],
                    actions=[{"type": "add_labels", "labels": ["legacy"]}]))
        db.commit()
        service.create_rule(_label_rule("good", "good"))

        results = engine_with().process_new_messages(account, [inbound.id])

        db.expire_all()
        assert len(results) == 1
        assert inbound.labels == ["good"]

    def test_rules_of_other_account_do_not_apply(self, db, service, make_account, account, engine_with, inbound):
        other = make_account("other@example.com")
        service.create_rule(_label_rule("other only", "x", account_id=other.id))
        assert engine_with().evaluate(account, inbound).matched_rules == []


class TestRuleSeeding:
    def test_load_example_rules(self):
        rules = load_rules_from_yaml(EXAMPLE_RULES)
        assert [r.name for r in rules] == ["invoices", "booking requests", "newsletters"]
        assert rules[0].stop_on_match is True
        assert rules[1].account == "studio@example.com"

    def test_invalid_yaml_rule(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules:\n  - name: broken\n    actions: []\n")
        with pytest.raises(InboxValidationError):
            load_rules_from_yaml(path)

    def test_seed_creates_then_updates(self, db, account):
        definitions = load_rules_from_yaml(EXAMPLE_RULES)

        assert seed_rules(db, definitions) == {"created": 3, "updated": 0, "skipped": 0}
        assert seed_rules(db, definitions) == {"created": 0, "updated": 3, "skipped": 0}

        scoped = db.query(Rule).filter(Rule.name == "booking requests").one()
        assert scoped.account_id == account.id
        assert db.query(Rule).count() == 3

    def test_seed_skips_unknown_account(self, db):
        definitions = load_rules_from_yaml(EXAMPLE_RULES)
        assert seed_rules(db, definitions)["skipped"] == 1
