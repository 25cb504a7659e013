import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, recipient: str, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default dispatcher: records the event in the log and nothing else."""

    def notify(self, recipient: str, event: str, payload: dict[str, Any]) -> None:
        logger.info(f"notification {event} -> {recipient}: {payload}")


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []

    def notify(self, recipient: str, event: str, payload: dict[str, Any]) -> None:
        self.sent.append((recipient, event, payload))

    def events(self, event: Optional[str] = None) -> list[tuple[str, str, dict]]:
        return [s for s in self.sent if event is None or s[1] == event]


def dispatch(notifier: Notifier, recipient: str, event: str, payload: dict[str, Any]) -> bool:
    """Fire-and-forget: a failed notification never undoes the operation."""
    try:
        notifier.notify(recipient, event, payload)
        return True
    except Exception as e:
        logger.warning(f"Notification {event} to {recipient} failed: {e}")
        return False
