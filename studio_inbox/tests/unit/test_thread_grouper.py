"""
Unit tests for conversation threading: header correlation, late parents,
thread merges and the subject/participant heuristic.
"""
from datetime import datetime, timedelta

import pytest

from studio_inbox.core.database.models import Message
from studio_inbox.core.email.thread_grouper import (
    ThreadGrouper,
    normalize_subject,
    strip_subject_prefixes,
)


class TestSubjectNormalization:
    @pytest.mark.parametrize("subject,expected", [
        ("Re: Booking", "Booking"),
        ("RE: Fwd: AW: Booking", "Booking"),
        ("Re[2]: Booking  request", "Booking request"),
        ("Booking", "Booking"),
        (None, ""),
    ])
    def test_strip_prefixes(self, subject, expected):
        assert strip_subject_prefixes(subject) == expected

    def test_normalize_is_case_insensitive(self):
        assert normalize_subject("Re: BOOKING") == normalize_subject("booking")


class TestThreadGrouper:
    def test_reply_joins_parent_and_unrelated_starts_new_thread(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        a = store_message(account, inbox, "<a@x>", subject="Wedding shoot")
        b = store_message(account, inbox, "<b@x>", subject="Re: Wedding shoot", in_reply_to="<a@x>",
                          date=datetime(2024, 3, 2))
        c = store_message(account, inbox, "<c@x>", subject="Invoice", from_email="shop@example.net")

        assert a.thread_id == "<a@x>"
        assert b.thread_id == a.thread_id
        assert c.thread_id == "<c@x>"

    def test_references_chain(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<root@x>")
        reply = store_message(account, inbox, "<r2@x>", subject="Different subject",
                              references=["<unknown@x>", "<root@x>"])
        assert reply.thread_id == "<root@x>"

    def test_late_parent_joins_child_thread(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        child = store_message(account, inbox, "<child@x>", subject="Re: Quote", in_reply_to="<parent@x>",
                              from_email="other@example.net")
        parent = store_message(account, inbox, "<parent@x>", subject="Something else")

        assert parent.thread_id == child.thread_id == "<child@x>"

    def test_merge_picks_larger_thread(self, db, repo, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<x1@x>", subject="Album", date=datetime(2024, 3, 5))
        store_message(account, inbox, "<x2@x>", subject="Re: Album", in_reply_to="<x1@x>", date=datetime(2024, 3, 6))
        store_message(account, inbox, "<y1@x>", subject="Prints", from_email="lab@example.net",
                      date=datetime(2024, 3, 1))

        bridge = store_message(account, inbox, "<z@x>", subject="Both", from_email="lab@example.net",
                               references=["<y1@x>", "<x2@x>"], date=datetime(2024, 3, 7))

        db.expire_all()
        threads = {m.message_id: m.thread_id for m in db.query(Message).all()}
        assert bridge.thread_id == "<x1@x>"
        assert set(threads.values()) == {"<x1@x>"}

    def test_merge_tie_goes_to_earliest_thread(self, repo, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<late@x>", subject="One", date=datetime(2024, 3, 9))
        store_message(account, inbox, "<early@x>", subject="Two", from_email="x@example.net",
                      date=datetime(2024, 3, 1))

        grouper = ThreadGrouper(repo)
        assert grouper.pick_winner(account, ["<late@x>", "<early@x>"]) == "<early@x>"

    def test_merge_is_idempotent(self, repo, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<p@x>", subject="One")
        store_message(account, inbox, "<q@x>", subject="Two", from_email="x@example.net")

        grouper = ThreadGrouper(repo)
        assert grouper.merge(account, ["<p@x>", "<q@x>"], "<p@x>") == 1
        assert grouper.merge(account, ["<p@x>", "<q@x>"], "<p@x>") == 0

    def test_heuristic_same_subject_and_participant(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        first = store_message(account, inbox, "<h1@x>", subject="Portrait session")
        second = store_message(account, inbox, "<h2@x>", subject="RE: portrait session",
                               date=datetime(2024, 3, 3))
        assert second.thread_id == first.thread_id

    def test_heuristic_requires_shared_participant(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<h1@x>", subject="Portrait session")
        # Only the account itself is shared: not the same conversation
        other = store_message(account, inbox, "<h2@x>", subject="Re: Portrait session",
                              from_email="stranger@example.net", date=datetime(2024, 3, 3))
        assert other.thread_id == "<h2@x>"

    def test_heuristic_respects_window(self, account, folder_of, store_message):
        inbox = folder_of(account, "inbox")
        store_message(account, inbox, "<h1@x>", subject="Portrait session")
        later = store_message(account, inbox, "<h2@x>", subject="Re: Portrait session",
                              date=datetime(2024, 3, 1) + timedelta(days=60))
        assert later.thread_id == "<h2@x>"

    def test_threads_are_per_account(self, make_account, folder_of, store_message):
        first = make_account("one@example.com")
        second = make_account("two@example.com")
        store_message(first, folder_of(first, "inbox"), "<a@x>", subject="Shared")
        reply = store_message(second, folder_of(second, "inbox"), "<b@x>", subject="Re: Shared",
                              in_reply_to="<a@x>")
        assert reply.thread_id == "<b@x>"
