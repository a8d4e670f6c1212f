# src/auth_service/config.py

from pathlib import Path
from typing import Any, Dict, List, Union

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

# .env is at the service root, two levels up from src/auth_service/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.debug("env_file_loaded", path=str(ENV_FILE_PATH))

DEV_JWT_SECRET = "dev-only-change-me"


class AccountRecord(BaseModel):
    email: str
    password: str
    role: str = "user"
    name: str = ""


class Settings(BaseSettings):
    # === Access tokens ===
    AUTH_JWT_SECRET: str = DEV_JWT_SECRET
    AUTH_JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_TTL_SECONDS: int = 15 * 60

    # === Server sessions ===
    SESSION_COOKIE_NAME: str = "session_id"
    SESSION_COOKIE_MAX_AGE: int = 60 * 60 * 4  # 4 hours
    ACCESS_COOKIE_NAME: str = "access_token"
    REFRESH_COOKIE_NAME: str = "refresh_token"
    COOKIE_SECURE: bool = False
    IDLE_TIMEOUT_SECONDS: int = 15 * 60

    # === CSRF ===
    CSRF_HEADER_NAME: str = "x-csrf-token"

    # === Accounts ===
    # "email:password[:role]" entries, comma separated
    AUTH_ACCOUNTS: Union[str, List[AccountRecord]] = ""
    AUTH_PASSWORD_EXPIRED: Union[str, List[str]] = ""

    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        validate_default=True
    )

    @property
    def ACCOUNTS_BY_EMAIL(self) -> Dict[str, AccountRecord]:
        return {a.email.lower(): a for a in self.AUTH_ACCOUNTS}

    @field_validator("AUTH_ACCOUNTS", mode='before')
    @classmethod
    def parse_accounts(cls, v: Any) -> List[Any]:
        if isinstance(v, list):
            return v
        if not isinstance(v, str):
            raise TypeError(f'AUTH_ACCOUNTS: Expected a comma-separated string or a list, got {type(v)}')
        accounts = []
        for entry in (e.strip() for e in v.split(',')):
            if not entry:
                continue
            parts = entry.split(':')
            if len(parts) not in (2, 3):
                raise ValueError(f"AUTH_ACCOUNTS entry '{parts[0]}' must look like email:password[:role].")
            accounts.append({
                "email": parts[0],
                "password": parts[1],
                "role": parts[2] if len(parts) == 3 else "user",
                "name": parts[0].split('@')[0],
            })
        return accounts

    @field_validator("AUTH_PASSWORD_EXPIRED", mode='before')
    @classmethod
    def parse_password_expired(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            return [e.strip().lower() for e in v.split(',') if e.strip()]
        if isinstance(v, list):
            return [str(e).lower() for e in v]
        raise TypeError(f'AUTH_PASSWORD_EXPIRED: Expected a comma-separated string or a list, got {type(v)}')

    @model_validator(mode='after')
    def check_token_lifetimes(self) -> 'Settings':
        if self.IDLE_TIMEOUT_SECONDS <= 0:
            raise ValueError("IDLE_TIMEOUT_SECONDS must be positive.")
        return self


try:
    settings = Settings()
except Exception as e:
    logger.error("settings_invalid", error=str(e))
    raise
