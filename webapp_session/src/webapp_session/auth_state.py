# src/webapp_session/auth_state.py

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from .session_data import SessionUser

logger = structlog.get_logger(__name__)

AuthListener = Callable[[Optional[SessionUser]], None]


class FileUserStore:
    """
    Keeps the current user across process restarts as a small JSON file.
    Storage problems are logged and otherwise ignored: losing the persisted
    user only means the next start begins logged out.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        try:
            if not self.path.exists():
                return None
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("user_store_read_failed", path=str(self.path), error=str(e))
            return None
        return data if isinstance(data, dict) else None

    def save(self, user: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(user), encoding="utf-8")
        except OSError as e:
            logger.error("user_store_write_failed", path=str(self.path), error=str(e))

    def remove(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("user_store_remove_failed", path=str(self.path), error=str(e))


class AuthState:
    """
    The "current user" seen by the host application.

    The session layer only ever clears it (idle timeout, unrecoverable refresh
    failure); setting it is left to the host's login flow. Listeners run
    synchronously on every change, with the new user or None.
    """

    def __init__(self, store: Optional[FileUserStore] = None) -> None:
        self._store = store
        self._listeners: List[AuthListener] = []
        self._user: Optional[SessionUser] = None
        if store is not None:
            persisted = store.load()
            if persisted is not None:
                try:
                    self._user = SessionUser.model_validate(persisted)
                except ValidationError as e:
                    logger.warning("persisted_user_invalid", error=str(e))
                    store.remove()

    @property
    def current_user(self) -> Optional[SessionUser]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    def set_user(self, user: Union[SessionUser, Dict[str, Any]]) -> SessionUser:
        if not isinstance(user, SessionUser):
            user = SessionUser.model_validate(user)
        self._user = user
        if self._store is not None:
            self._store.save(user.model_dump())
        logger.info("auth_user_set", user=user.email or user.id)
        self._emit(user)
        return user

    def clear_user(self) -> bool:
        """Drop the current user. Returns False when there was none to drop."""
        if self._user is None:
            return False
        previous = self._user
        self._user = None
        if self._store is not None:
            self._store.remove()
        logger.info("auth_user_cleared", user=previous.email or previous.id)
        self._emit(None)
        return True

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, user: Optional[SessionUser]) -> None:
        for listener in list(self._listeners):
            try:
                listener(user)
            except Exception as e:
                logger.error("auth_listener_failed", listener=repr(listener), error=str(e))
