"""User-visible notifications (toasts) raised by the workflow services."""
import logging
from dataclasses import dataclass, field
from typing import Callable, List

from wordflow.models import now_iso

logger = logging.getLogger(__name__)

LEVEL_SUCCESS = "success"
LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"

_LOG_LEVELS = {
    LEVEL_SUCCESS: logging.INFO,
    LEVEL_INFO: logging.INFO,
    LEVEL_WARNING: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
}


@dataclass
class Notification:
    level: str
    message: str
    created_at: str = field(default_factory=now_iso)


class Notifier:
    """Collects notifications and forwards them to registered sinks."""

    def __init__(self):
        self.history: List[Notification] = []
        self._sinks: List[Callable[[Notification], None]] = []

    def subscribe(self, sink: Callable[[Notification], None]) -> None:
        self._sinks.append(sink)

    def notify(self, level: str, message: str) -> Notification:
        notification = Notification(level=level, message=message)
        self.history.append(notification)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", level, message)
        for sink in self._sinks:
            try:
                sink(notification)
            except Exception as e:
                logger.warning("Notification sink %r failed: %s", sink, e)
        return notification

    def success(self, message: str) -> Notification:
        return self.notify(LEVEL_SUCCESS, message)

    def info(self, message: str) -> Notification:
        return self.notify(LEVEL_INFO, message)

    def warning(self, message: str) -> Notification:
        return self.notify(LEVEL_WARNING, message)

    def error(self, message: str) -> Notification:
        return self.notify(LEVEL_ERROR, message)

    def of_level(self, level: str) -> List[Notification]:
        return [n for n in self.history if n.level == level]

    def clear(self) -> None:
        self.history.clear()
