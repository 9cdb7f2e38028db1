"""
Tests for RetryManager and the shared backoff curve.
"""
import pytest

from studio_inbox.core.email.errors import InboxValidationError, MailConnectionError
from studio_inbox.core.email.retry_manager import RetryManager, backoff_delay


class Flaky:
    """Fails with the queued errors, then returns 'ok'"""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_backoff_delay():
    assert [backoff_delay(n, 2.0) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]
    assert backoff_delay(10, 2.0, max_delay=30.0) == 30.0
    assert backoff_delay(-1, 5.0) == 5.0


class TestRetryManager:
    @pytest.mark.asyncio
    async def test_transient_error_then_success(self):
        operation = Flaky(MailConnectionError("Connection reset"), MailConnectionError("timed out"))
        manager = RetryManager(max_retries=3, base_delay=0)

        assert await manager.execute_with_retry(operation, "send") == "ok"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        operation = Flaky(*[MailConnectionError("timed out")] * 5)
        manager = RetryManager(max_retries=2, base_delay=0)

        with pytest.raises(MailConnectionError):
            await manager.execute_with_retry(operation, "send")
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        operation = Flaky(MailConnectionError("Authentication failed", details={"permanent": True}))
        manager = RetryManager(max_retries=3, base_delay=0)

        with pytest.raises(MailConnectionError):
            await manager.execute_with_retry(operation, "send")
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_arguments_passed_through(self):
        seen = []

        async def operation(a, b=None):
            seen.append((a, b))
            return a

        assert await RetryManager(base_delay=0).execute_with_retry(operation, "op", 1, b=2) == 1
        assert seen == [(1, 2)]

    @pytest.mark.parametrize("error,permanent", [
        (InboxValidationError("bad input"), True),
        (MailConnectionError("x", details={"permanent": True}), True),
        (Exception("535 5.7.8 Username and Password not accepted"), True),
        (Exception("550 Mailbox unavailable"), True),
        (Exception("Connection reset by peer"), False),
        (None, False),
    ])
    def test_is_permanent_error(self, error, permanent):
        assert RetryManager().is_permanent_error(error) is permanent
