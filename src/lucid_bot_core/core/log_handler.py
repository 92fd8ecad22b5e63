"""
Session logging handler.

Publishes log records to the bot /logs topic with rate limiting to prevent flooding.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Protocol

# Rate limiting: max logs per time window
MAX_LOGS_PER_WINDOW = 10
TIME_WINDOW_S = 1.0

_LEVEL_MAP = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


class LogPublisher(Protocol):
    def is_connected(self) -> bool: ...

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any: ...


class SessionLogHandler(logging.Handler):
    """
    Logging handler that publishes records to the session logs topic.

    At most MAX_LOGS_PER_WINDOW records per TIME_WINDOW_S seconds are sent;
    the rest are counted and reported with the next published record.
    """

    def __init__(self, publisher: LogPublisher, topic: str) -> None:
        super().__init__()
        self.publisher = publisher
        self.topic = topic

        self._lock = threading.Lock()
        self._log_timestamps: list[float] = []
        self._dropped_count = 0
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        # publish() may log; never re-enter from the same thread
        if getattr(self._local, "emitting", False):
            return
        if not self.publisher.is_connected():
            return
        if not self._should_publish():
            return

        self._local.emitting = True
        try:
            payload: dict[str, Any] = {
                "level": _LEVEL_MAP.get(record.levelno, "info"),
                "logger": record.name,
                "message": self.format(record),
            }
            dropped = self._take_dropped()
            if dropped:
                payload["dropped"] = dropped
            self.publisher.publish(self.topic, json.dumps(payload), qos=0, retain=False)
        except Exception:
            self.handleError(record)
        finally:
            self._local.emitting = False

    def _take_dropped(self) -> int:
        with self._lock:
            dropped, self._dropped_count = self._dropped_count, 0
            return dropped

    def _should_publish(self) -> bool:
        """True if under the rate limit; records the send."""
        with self._lock:
            now = time.monotonic()
            cutoff = now - TIME_WINDOW_S
            self._log_timestamps = [ts for ts in self._log_timestamps if ts > cutoff]

            if len(self._log_timestamps) >= MAX_LOGS_PER_WINDOW:
                self._dropped_count += 1
                return False

            self._log_timestamps.append(now)
            return True
