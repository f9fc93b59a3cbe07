"""User-facing notification sinks for background failures."""

from __future__ import annotations

from enum import Enum
import logging
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class NotificationSink(Protocol):
    """Receives messages that should be surfaced to the user, e.g. as a toast."""

    def notify(self, message: str, severity: Severity = Severity.ERROR) -> None: ...


_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class LoggingNotificationSink:
    """Default sink that writes notifications to the application log."""

    def notify(self, message: str, severity: Severity = Severity.ERROR) -> None:
        LOGGER.log(
            _LEVELS.get(Severity(severity), logging.ERROR),
            "notification",
            extra={
                "event": "notification",
                "severity": Severity(severity).value,
                "notification": message,
            },
        )


class RecordingNotificationSink:
    """Sink that keeps notifications in memory, for headless callers."""

    def __init__(self) -> None:
        self.notifications: list[tuple[str, Severity]] = []

    def notify(self, message: str, severity: Severity = Severity.ERROR) -> None:
        self.notifications.append((message, Severity(severity)))


__all__ = [
    "LoggingNotificationSink",
    "NotificationSink",
    "RecordingNotificationSink",
    "Severity",
]
