# src/webapp_session/api.py

from typing import Any, Dict, List, Optional

import structlog

from .client import SessionClient

logger = structlog.get_logger(__name__)


class AuthAPI:
    """Authentication endpoints, all sent through the session client."""

    def __init__(self, client: SessionClient) -> None:
        self.client = client
        self.settings = client.settings

    async def login(self, email: str, password: str, captcha_token: Optional[str] = None) -> Dict[str, Any]:
        """
        Log in with credentials and return the server's payload.
        Setting the current user from `payload["user"]` is up to the caller.
        """
        payload: Dict[str, Any] = {"email": email, "password": password}
        if captcha_token:
            payload["captchaToken"] = captcha_token
        response = await self.client.post(self.settings.LOGIN_PATH, json=payload)
        return response.json()

    async def logout(self) -> Dict[str, Any]:
        """
        Log out on the server. The server drops its CSRF token with the session,
        so the cached one is cleared too; the local user is cleared last.
        """
        try:
            response = await self.client.post(self.settings.LOGOUT_PATH)
        finally:
            self.client.token_cache.clear()
            self.client.auth_state.clear_user()
        return response.json()

    async def get_current_user(self) -> Dict[str, Any]:
        response = await self.client.get(self.settings.ME_PATH)
        return response.json()

    async def refresh_token(self) -> None:
        await self.client.refresh_session()

    async def fetch_csrf_token(self) -> Optional[str]:
        return await self.client.fetch_csrf_token()


class SessionsAPI:
    """Management of the current user's server-side sessions."""

    def __init__(self, client: SessionClient) -> None:
        self.client = client
        self.base = client.settings.SESSIONS_PATH

    async def list_sessions(self) -> List[Dict[str, Any]]:
        response = await self.client.get(self.base)
        return response.json()

    async def revoke_session(self, session_id: str) -> Dict[str, Any]:
        response = await self.client.delete(f"{self.base}/{session_id}")
        logger.info("session_revoked", session_id=session_id)
        return response.json()

    async def revoke_all_sessions(self) -> Dict[str, Any]:
        """Revoke every session of the user except the current one."""
        response = await self.client.post(f"{self.base}/revoke-all")
        return response.json()

    async def trust_session(self, session_id: str) -> Dict[str, Any]:
        response = await self.client.post(f"{self.base}/{session_id}/trust")
        return response.json()
