# src/webapp_session/host.py

from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

ActivityHandler = Callable[[str], None]


class Navigator:
    """
    Where the host application currently is, and how to send it elsewhere.
    The default keeps the location in memory, which is all a headless host needs;
    UI hosts override `redirect`.
    """

    def __init__(self, current_path: str = "/") -> None:
        self.current_path = current_path
        self.history: List[Tuple[str, Optional[Dict[str, Any]]]] = []

    def redirect(self, path: str, state: Optional[Dict[str, Any]] = None) -> None:
        logger.info("navigate", path=path, from_path=self.current_path, state=state)
        self.history.append((path, state))
        self.current_path = path


class Notifier:
    """Transient user-facing messages. The default only logs them."""

    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def notify(self, message: str, level: str = "info") -> None:
        logger.info("user_notified", level=level, message=message)
        self.messages.append((level, message))


class ActivityHub:
    """
    Fan-out point for user-interaction signals (pointer, keyboard, scroll, touch).
    The host calls `emit` with the kind of signal; subscribers get the kind.
    """

    def __init__(self) -> None:
        self._handlers: List[ActivityHandler] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: ActivityHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, kind: str) -> None:
        for handler in list(self._handlers):
            handler(kind)
