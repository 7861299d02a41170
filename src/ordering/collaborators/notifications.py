"""Notification port, a recording fake, and the fire-and-forget helper.

Notification failures must never affect order state, so every call from the
ordering services goes through ``notify_quietly``.
"""

from abc import ABC, abstractmethod
from uuid import uuid4

import structlog

logger = structlog.get_logger(__name__)


class NotificationDeliveryError(Exception):
    pass


class Notifier(ABC):
    @abstractmethod
    def notify(self, user_id: str, event_type: str, payload: dict) -> str:
        """Dispatch a notification and return its message id."""
        ...


class RecordingNotifier(Notifier):
    """Notifier that records messages in memory for test assertions."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.should_succeed = True
        self.failure_reason = "Notification delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Notification delivery failed") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def notify(self, user_id: str, event_type: str, payload: dict) -> str:
        if not self.should_succeed:
            raise NotificationDeliveryError(self.failure_reason)

        message_id = f"ntf-{uuid4().hex[:12]}"
        self.sent.append(
            {
                "message_id": message_id,
                "user_id": user_id,
                "event_type": event_type,
                "payload": payload,
            }
        )
        return message_id

    def of_type(self, event_type: str) -> list[dict]:
        return [message for message in self.sent if message["event_type"] == event_type]

    def reset(self) -> None:
        self.sent.clear()
        self.should_succeed = True
        self.failure_reason = "Notification delivery failed"


def notify_quietly(notifier: Notifier, user_id: str, event_type: str, payload: dict) -> None:
    try:
        notifier.notify(user_id, event_type, payload)
    except Exception as exc:
        logger.warning(
            "Notification dispatch failed",
            anomaly="notification_failure",
            user_id=user_id,
            event_type=event_type,
            error=str(exc),
        )
