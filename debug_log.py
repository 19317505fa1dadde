"""
Debug Log Feed

A logging handler that keeps the most recent records as LogEntry objects and
pushes each new one to its subscribers (e.g. an on-screen debug console).
The application builds one feed and hands it to whoever wants to listen;
there is no module-level registry.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

FEED_LIMIT = 200  # entries kept for late subscribers


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: float
    message: str
    type: str  # info | warn | error | success


Listener = Callable[[LogEntry], None]


def entry_type(record: logging.LogRecord) -> str:
    if record.levelno >= logging.ERROR:
        return "error"
    if record.levelno >= logging.WARNING:
        return "warn"
    if getattr(record, "success", False):
        return "success"
    return "info"


class LogFeed(logging.Handler):
    """Ring buffer of log entries with its own listener set."""

    def __init__(self, limit: int = FEED_LIMIT, level: int = logging.INFO):
        super().__init__(level)
        self.entries: deque[LogEntry] = deque(maxlen=limit)
        self._listeners: set[Listener] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that unsubscribes it."""
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    def emit(self, record: logging.LogRecord):
        try:
            entry = LogEntry(
                id=uuid.uuid4().hex[:9],
                timestamp=record.created,
                message=record.getMessage(),
                type=entry_type(record),
            )
        except Exception:
            self.handleError(record)
            return
        self.entries.append(entry)
        for listener in list(self._listeners):
            listener(entry)

    def clear(self):
        self.entries.clear()


def configure_logging(level: str | int = "INFO", feed: Optional[LogFeed] = None,
                      log_file: Optional[str] = None):
    """Root logging for the CLI. The terminal is the game screen, so records go to a file."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    handler: logging.Handler = (
        logging.FileHandler(log_file, encoding="utf-8") if log_file else logging.NullHandler()
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    if feed is not None:
        root.addHandler(feed)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
