"""
Resultados tipados de operaciones internas.

Las operaciones best-effort (webhooks, ciclo de vida) nunca lanzan hacia
la capa de borde; devuelven un resultado que el llamador puede ignorar.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class WebhookResult:
    """Resultado de un POST al backend."""
    endpoint: str
    ok: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None

    @property
    def reply(self) -> Optional[str]:
        """Campo ``reply`` de la respuesta del backend, si existe."""
        if not self.ok or not isinstance(self.data, dict):
            return None
        reply = self.data.get("reply")
        if isinstance(reply, str) and reply:
            return reply
        return None


@dataclass
class OperationResult:
    """Resultado de una operación del gestor de sesiones."""
    session_id: str
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls, session_id: str) -> "OperationResult":
        return cls(session_id=session_id, ok=True)

    @classmethod
    def failure(cls, session_id: str, error: str) -> "OperationResult":
        return cls(session_id=session_id, ok=False, error=error)
