# src/webapp_session/token_cache.py

from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class CsrfTokenCache:
    """
    Holds the single current CSRF token for one SessionClient.
    An empty cache means the next state-mutating request has to fetch one first.
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    def get(self) -> Optional[str]:
        return self._token

    def set(self, token: str) -> None:
        rotated = self._token is not None and self._token != token
        self._token = token
        logger.debug("csrf_token_cached", rotated=rotated)

    def clear(self) -> None:
        self._token = None
