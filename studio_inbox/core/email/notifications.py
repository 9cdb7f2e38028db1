"""
Notification sinks for rule actions.

Delivery (push, email digest, webhook) lives outside the inbox; the rule
engine only emits NotificationEvent objects to a sink.
"""
import logging
from abc import ABC, abstractmethod
from typing import List

from .models import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationSink(ABC):
    @abstractmethod
    def emit(self, event: NotificationEvent) -> None:
        """Hand over one event; must not raise for delivery problems"""


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes events to the log"""

    def emit(self, event: NotificationEvent) -> None:
        logger.info(
            f"Notification {event.type}: message {event.message_id} "
            f"(account {event.account_id}, rule {event.rule_id})"
        )


class InMemoryNotificationSink(NotificationSink):
    """Collects events (tests, CLI dry runs)"""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def emit(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def clear(self):
        self.events.clear()
