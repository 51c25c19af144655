"""
Modelos del registro de sesiones WhatsApp.

Una sesión es la conexión de un tenant identificada por ``sessionId``;
su entrada en el registro es la única fuente de verdad de "sesión activa".
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from .events import WhatsAppUser

if TYPE_CHECKING:
    from ..services.whatsapp_client import WhatsAppClient


class SessionStatus(str, Enum):
    """
    Ciclo de vida de una sesión.

    connecting -> open -> closing -> {reconnecting | terminated}
    """
    CONNECTING = "connecting"      # Cliente creado, esperando QR / autenticación
    OPEN = "open"                  # Autenticada y lista
    CLOSING = "closing"            # Cierre recibido, decidiendo reconexión
    RECONNECTING = "reconnecting"  # Reconexión programada, sin cliente vivo
    TERMINATED = "terminated"      # Eliminada del registro


class PhoneInfo(BaseModel):
    """Identidad estable de la cuenta conectada."""
    jid: str = Field(description="JID completo de la cuenta")
    name: Optional[str] = Field(default=None, description="Nombre visible")
    phone: str = Field(description="Número derivado del JID")

    @classmethod
    def from_user(cls, user: WhatsAppUser) -> "PhoneInfo":
        """Deriva el teléfono quitando el sufijo de dispositivo y el servidor."""
        phone = user.id.split("@", 1)[0].split(":", 1)[0]
        return cls(jid=user.id, name=user.name, phone=phone)


@dataclass
class SessionEntry:
    """Entrada viva del registro. Dueña exclusiva de su cliente y sus tareas."""
    session_id: str
    status: SessionStatus = SessionStatus.CONNECTING
    client: Optional["WhatsAppClient"] = None
    heartbeat_task: Optional[asyncio.Task] = None
    reconnect_task: Optional[asyncio.Task] = None
    phone_info: Optional[PhoneInfo] = None
    reconnect_attempts: int = 0
    destroying: bool = False
    created_at: datetime = field(default_factory=datetime.now)

