# src/webapp_session/config.py

from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

import structlog
from dotenv import load_dotenv
from pydantic import AnyHttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

# .env is at the service root, two levels up from src/webapp_session/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.debug("env_file_loaded", path=str(ENV_FILE_PATH))


def _split_csv(name: str, v: Any) -> List[str]:
    if isinstance(v, str):
        if not v.strip():
            return []
        return [item.strip() for item in v.split(',') if item.strip()]
    if isinstance(v, (list, tuple)):
        return [str(item) for item in v]
    raise TypeError(f'{name}: Expected a comma-separated string or a list, got {type(v)}')


class Settings(BaseSettings):
    # === Transport ===
    API_BASE_URL: AnyHttpUrl = "http://localhost:5000/api"
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    # Verbs that never carry a CSRF token
    SAFE_METHODS: Union[str, List[str]] = "GET,HEAD,OPTIONS"

    # === CSRF ===
    CSRF_HEADER_NAME: str = "x-csrf-token"
    CSRF_TOKEN_PATH: str = "/csrf-token"
    CSRF_TOKEN_FIELD: str = "csrfToken"
    CSRF_ERROR_MARKER: str = "csrf"

    # === Server endpoints ===
    REFRESH_PATH: str = "/auth/refresh"
    LOGIN_PATH: str = "/auth/login"
    LOGOUT_PATH: str = "/auth/logout"
    ME_PATH: str = "/auth/me"
    SESSIONS_PATH: str = "/sessions"

    # === Failure codes sent by the server ===
    IDLE_TIMEOUT_CODE: str = "SESSION_IDLE_TIMEOUT"
    PASSWORD_EXPIRED_CODE: str = "PASSWORD_EXPIRED"

    # === Host routes ===
    LOGIN_ROUTE: str = "/login"
    REGISTER_ROUTE: str = "/register"
    CHANGE_PASSWORD_ROUTE: str = "/change-password"

    # === Session monitor (seconds) ===
    SESSION_IDLE_TIMEOUT_SECONDS: float = 15 * 60
    SESSION_TICK_SECONDS: float = 5.0
    SESSION_HEARTBEAT_SECONDS: float = 15.0
    SESSION_ACTIVITY_EVENTS: Union[str, List[str]] = "mousedown,mousemove,keypress,scroll,touchstart,click"

    # === Auth state persistence ===
    SESSION_USER_STORE_PATH: Optional[Path] = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_default=True
    )

    @property
    def META_ROUTES(self) -> Tuple[str, str]:
        # Never bootstrap a CSRF token for these, or the fetch would recurse
        return (self.REFRESH_PATH, self.CSRF_TOKEN_PATH)

    @field_validator("SAFE_METHODS", mode='before')
    @classmethod
    def parse_safe_methods(cls, v: Any) -> List[str]:
        return [m.upper() for m in _split_csv("SAFE_METHODS", v)]

    @field_validator("SESSION_ACTIVITY_EVENTS", mode='before')
    @classmethod
    def parse_activity_events(cls, v: Any) -> List[str]:
        return _split_csv("SESSION_ACTIVITY_EVENTS", v)

    @model_validator(mode='after')
    def check_monitor_timings(self) -> 'Settings':
        if self.SESSION_TICK_SECONDS <= 0:
            raise ValueError("SESSION_TICK_SECONDS must be positive.")
        if self.SESSION_HEARTBEAT_SECONDS >= self.SESSION_IDLE_TIMEOUT_SECONDS:
            raise ValueError("SESSION_HEARTBEAT_SECONDS must be shorter than SESSION_IDLE_TIMEOUT_SECONDS.")
        return self


try:
    settings = Settings()
except Exception as e:
    logger.error("settings_invalid", error=str(e))
    raise
