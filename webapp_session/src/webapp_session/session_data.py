# src/webapp_session/session_data.py

from pydantic import BaseModel, ConfigDict
from typing import Optional


class SessionUser(BaseModel):
    """
    The logged-in user as the host application knows it.
    Whatever extra fields the server returns for the user are kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
