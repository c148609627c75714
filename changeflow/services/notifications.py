"""
Outbound notifications.

Delivery is fire-and-forget: a failed send is logged and never undoes
the state change that triggered it.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Tuple

logger = logging.getLogger(__name__)


class Notifier(ABC):

    @abstractmethod
    async def send(self, address: str, message: str) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier: writes the message to the log instead of a mailbox."""

    async def send(self, address: str, message: str) -> None:
        logger.info("Notification to %s: %s", address, message)


class RecordingNotifier(Notifier):
    """Keeps every message in memory. Useful for development and tests."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    async def send(self, address: str, message: str) -> None:
        self.sent.append((address, message))

    def messages_for(self, address: str) -> List[str]:
        return [message for to, message in self.sent if to == address]


async def notify_safely(notifier: Notifier, address: str, message: str, **log_context) -> bool:
    """Send and swallow delivery failures. Returns True when the send succeeded."""
    try:
        await notifier.send(address, message)
        return True
    except Exception as exc:  # Delivery must never break the workflow
        logger.warning(
            "Notification to %s failed: %s", address, exc,
            extra=log_context,
        )
        return False
