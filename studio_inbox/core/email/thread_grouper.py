"""
Conversation threading.

Resolves the thread_id of a message that is about to be stored:

1. Header correlation: In-Reply-To/References naming a stored message, or
   stored messages naming this one (the parent arrived late).
2. Heuristic: same normalized subject, overlapping participants (the
   account's own address does not count) and close in time.
3. Otherwise the message starts its own thread (thread_id == message_id).

When correlation touches more than one existing thread the threads are
merged onto a single winner with one bulk UPDATE.
"""
import logging
import re
from datetime import timedelta
from typing import Iterable, Optional, Set

from studio_inbox.core.config import get_settings
from studio_inbox.core.database.models import Account, Message
from studio_inbox.core.database.repository import InboxRepository
from .models import NormalizedMessage

logger = logging.getLogger(__name__)

# Reply/forward prefixes in the languages our clients use, optionally
# counted ("Re[2]:") and repeated ("Re: Fwd: AW:")
_PREFIX_RE = re.compile(r'^\s*(?:(?:re|fwd?|aw|wg|sv)\s*(?:\[\d+\])?\s*:\s*)+', re.IGNORECASE)
_WS_RE = re.compile(r'\s+')


def strip_subject_prefixes(subject: Optional[str]) -> str:
    """Remove reply/forward prefixes and collapse whitespace (case preserved)"""
    if not subject:
        return ""
    return _WS_RE.sub(' ', _PREFIX_RE.sub('', subject)).strip()


def normalize_subject(subject: Optional[str]) -> str:
    """Subject key used by the heuristic: prefixes stripped, case-folded"""
    return strip_subject_prefixes(subject).casefold()


def message_participants(message: Message) -> Set[str]:
    addresses = [message.from_email] + list(message.to_emails or []) + list(message.cc_emails or [])
    return {a.lower() for a in addresses if a}


class ThreadGrouper:
    """Assigns thread ids and merges threads on late correlation"""

    def __init__(self, repository: InboxRepository, window_days: Optional[int] = None):
        self.repo = repository
        if window_days is None:
            window_days = get_settings().thread_heuristic_window_days
        self.window = timedelta(days=window_days)

    def resolve(self, account: Account, message: NormalizedMessage) -> str:
        """
        Thread id for a message not yet stored.

        Merges every thread the message correlates with, so the returned id
        is the surviving thread.
        """
        threads = self._correlated_threads(account, message)
        if threads:
            winner = self.pick_winner(account, threads)
            self.merge(account, threads, winner)
            return winner

        heuristic = self._heuristic_thread(account, message)
        if heuristic:
            logger.debug(f"Heuristic thread match for {message.message_id}: {heuristic}")
            return heuristic

        return message.message_id

    def _correlated_threads(self, account: Account, message: NormalizedMessage) -> Set[str]:
        threads = set()
        for parent in self.repo.find_by_message_ids(account.id, message.correlation_ids):
            threads.add(parent.thread_id)
        for child in self.repo.find_referencing(account.id, message.message_id):
            # The References LIKE is a substring match; confirm against the split ids
            if child.in_reply_to == message.message_id or message.message_id in (child.references or "").split():
                threads.add(child.thread_id)
        return threads

    def _heuristic_thread(self, account: Account, message: NormalizedMessage) -> Optional[str]:
        core = strip_subject_prefixes(message.subject)
        key = core.casefold()
        if not key:
            return None

        own = (account.email_address or "").lower()
        participants = message.participants - {own}
        if not participants:
            return None

        start = message.date_received - self.window
        end = message.date_received + self.window
        best = None
        for candidate in self.repo.find_subject_candidates(account.id, core, start, end):
            if normalize_subject(candidate.subject) != key:
                continue
            if not (message_participants(candidate) - {own}) & participants:
                continue
            distance = abs(candidate.date_received - message.date_received)
            if best is None or distance < best[0]:
                best = (distance, candidate.thread_id)
        return best[1] if best else None

    def pick_winner(self, account: Account, thread_ids: Iterable[str]) -> str:
        """
        Larger thread wins; ties go to the earlier first message, then to the
        lexicographically smaller id. Threads with no stored messages lose.
        """
        ids = sorted(set(thread_ids))
        stats = self.repo.thread_stats(account.id, ids)

        def rank(thread_id):
            count, earliest = stats.get(thread_id, (0, None))
            return (-count, earliest is None, earliest, thread_id)

        return min(ids, key=rank)

    def merge(self, account: Account, thread_ids: Iterable[str], winner: str) -> int:
        """Rewrite all losing threads onto winner; merging twice is a no-op"""
        losers = [t for t in set(thread_ids) if t != winner]
        if not losers:
            return 0
        moved = self.repo.rewrite_thread_ids(account.id, losers, winner)
        logger.info(f"Merged threads {sorted(losers)} into {winner} ({moved} messages)")
        return moved
