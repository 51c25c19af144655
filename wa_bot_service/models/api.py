"""
Modelos Pydantic de la API de control.
"""

from typing import Any, List, Optional
from pydantic import BaseModel, field_validator


class SessionRequest(BaseModel):
    """Body de /bot/create y /bot/destroy."""
    sessionId: Optional[str] = None

    @field_validator('sessionId', mode='before')
    @classmethod
    def coerce_numeric_session_id(cls, v: Any) -> Any:
        """Acepta sessionId numéricos ({"sessionId": 42} -> "42")."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class SessionActionResponse(BaseModel):
    message: str
    sessionId: str


class SessionListResponse(BaseModel):
    sessions: List[str]
    count: int


class HealthResponse(BaseModel):
    """Respuesta del endpoint de health check."""
    status: str
    timestamp: str
    activeSessions: int
