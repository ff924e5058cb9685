from __future__ import annotations

import threading
from typing import Callable, List

from dichoptic.logging import get_logger

logger = get_logger(__name__)

SessionListener = Callable[[str], None]

REFRESH_UNAVAILABLE = "refresh_unavailable"
REFRESH_FAILED = "refresh_failed"


class SessionEvents:
    """Publish/subscribe hub for the process-wide "session ended" signal.

    Listeners receive the reason string. A failing listener is logged and
    does not stop the remaining listeners from being notified.
    """

    def __init__(self) -> None:
        self._listeners: List[SessionListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, reason: str) -> None:
        with self._lock:
            listeners = list(self._listeners)
        logger.info("session_ended", reason=reason, listeners=len(listeners))
        for listener in listeners:
            try:
                listener(reason)
            except Exception as exc:
                logger.error(
                    "session_listener_failed",
                    reason=reason,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
