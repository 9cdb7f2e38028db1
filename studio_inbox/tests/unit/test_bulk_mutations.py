"""
Unit tests for BulkMutationEngine: per-message atomicity, partial failure,
folder moves and soft-delete handling.
"""
from uuid import uuid4

import pytest

from studio_inbox.core.email.bulk_mutations import BulkMutationEngine, dedupe_ids
from studio_inbox.core.email.errors import InboxValidationError, NotFoundError


@pytest.fixture
def bulk(db):
    return BulkMutationEngine(db)


@pytest.fixture
def two_messages(account, folder_of, store_message):
    inbox = folder_of(account, "inbox")
    first = store_message(account, inbox, "<b1@x>", subject="One")
    second = store_message(account, inbox, "<b2@x>", subject="Two", from_email="other@example.net")
    return first, second


class TestBulkMutations:
    def test_partial_failure_keeps_successes(self, db, bulk, two_messages):
        first, second = two_messages
        missing = str(uuid4())

        result = bulk.apply([first.id, missing, second.id], {"add_labels": ["lead"]})

        assert result.succeeded == [str(first.id), str(second.id)]
        assert [f.id for f in result.failed] == [missing]
        assert result.failed[0].kind == "NotFoundError"
        assert result.partial is True

        db.expire_all()
        assert first.labels == ["lead"]
        assert second.labels == ["lead"]

    def test_duplicate_ids_applied_once(self, bulk, two_messages):
        first, _ = two_messages
        result = bulk.apply([first.id, str(first.id)], {"set_flags": {"is_read": True}})
        assert result.succeeded == [str(first.id)]
        assert dedupe_ids([" a", "a", "b"]) == ["a", "b"]

    def test_label_add_is_idempotent(self, db, bulk, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"add_labels": ["vip", "lead"]})
        bulk.apply([first.id], {"add_labels": ["vip"]})

        db.expire_all()
        assert first.labels == ["lead", "vip"]

    def test_remove_labels(self, db, bulk, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"add_labels": ["vip", "lead"]})
        bulk.apply([first.id], {"remove_labels": ["vip", "unknown"]})

        db.expire_all()
        assert first.labels == ["lead"]

    def test_read_flag_updates_counts(self, db, bulk, account, folder_of, two_messages):
        first, second = two_messages
        inbox = folder_of(account, "inbox")
        assert inbox.unread_count == 2

        bulk.apply([first.id, second.id], {"set_flags": {"is_read": True}})

        db.expire_all()
        assert inbox.unread_count == 0
        assert inbox.total_count == 2
        assert first.local_modified_at is not None

    def test_local_only_flag_leaves_remote_marker(self, db, bulk, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"set_flags": {"is_starred": True}})

        db.expire_all()
        assert first.is_starred is True
        assert first.local_modified_at is None

    def test_move_to_archive_sets_flag_and_counts(self, db, bulk, account, folder_of, two_messages):
        first, _ = two_messages
        inbox = folder_of(account, "inbox")
        archive = folder_of(account, "archive")

        result = bulk.apply([first.id], {"move_to_folder_id": str(archive.id)})
        assert result.failed == []

        db.expire_all()
        assert first.folder_id == archive.id
        assert first.is_archived is True
        assert inbox.total_count == 1
        assert archive.total_count == 1

    def test_move_out_of_archive_clears_flag(self, db, bulk, account, folder_of, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"move_to_folder_id": str(folder_of(account, "archive").id)})
        bulk.apply([first.id], {"move_to_folder_id": str(folder_of(account, "inbox").id)})

        db.expire_all()
        assert first.is_archived is False

    def test_cross_account_move_fails(self, db, bulk, make_account, folder_of, two_messages):
        first, _ = two_messages
        other = make_account("other@example.com")

        result = bulk.apply([first.id], {"move_to_folder_id": str(folder_of(other, "inbox").id)})

        assert result.succeeded == []
        assert result.failed[0].kind == "InvalidOperation"
        db.expire_all()
        assert first.folder_id != folder_of(other, "inbox").id

    def test_account_scope(self, bulk, make_account, two_messages):
        first, _ = two_messages
        other = make_account("other@example.com")
        result = bulk.apply([first.id], {"add_labels": ["x"]}, account_id=other.id)
        assert result.failed[0].kind == "NotFoundError"

    def test_assignment(self, db, bulk, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"assigned_to": "assistant@example.com"})
        db.expire_all()
        assert first.assigned_to == "assistant@example.com"
        assert first.assigned_at is not None

        bulk.apply([first.id], {"unassign": True})
        db.expire_all()
        assert first.assigned_to is None

    def test_deleted_message_can_only_be_restored(self, db, bulk, account, folder_of, two_messages):
        first, _ = two_messages
        bulk.apply([first.id], {"set_flags": {"is_deleted": True}})
        db.expire_all()
        assert folder_of(account, "inbox").total_count == 1

        result = bulk.apply([first.id], {"add_labels": ["vip"]})
        assert result.failed[0].kind == "NotFoundError"

        result = bulk.apply([first.id], {"set_flags": {"is_deleted": False}})
        assert result.succeeded == [str(first.id)]
        db.expire_all()
        assert first.is_deleted is False
        assert folder_of(account, "inbox").total_count == 2

    def test_apply_one_raises(self, bulk):
        with pytest.raises(NotFoundError):
            bulk.apply_one(uuid4(), {"set_flags": {"is_read": True}})

    @pytest.mark.parametrize("mutation", [
        {},
        {"set_flags": {"is_purple": True}},
        {"add_labels": ["a"], "remove_labels": ["a"]},
        {"assigned_to": "x@example.com", "unassign": True},
        {"move_to_folder_id": "not-a-uuid"},
    ])
    def test_malformed_mutation_changes_nothing(self, db, bulk, two_messages, mutation):
        first, _ = two_messages
        with pytest.raises(InboxValidationError):
            bulk.apply([first.id], mutation)
        db.expire_all()
        assert first.labels == []
