"""
Modelos Pydantic para eventos emitidos por el cliente WhatsApp (Baileys).

Los eventos llegan desde el bridge Node.js como JSON y se validan aquí
antes de llegar al gestor de sesiones.
"""

from typing import Any, Dict, List, Optional
from enum import Enum, IntEnum
from pydantic import BaseModel, ConfigDict, Field


class ConnectionState(str, Enum):
    """Estados de conexión reportados por el cliente."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"


class DisconnectReason(IntEnum):
    """
    Códigos de cierre de Baileys (``lastDisconnect.error.output.statusCode``).

    Solo LOGGED_OUT es terminal; cualquier otra causa permite reconectar.
    """
    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class ClientEvent(str, Enum):
    """Streams de eventos a los que se suscribe el gestor."""
    CONNECTION_UPDATE = "connection_update"
    CREDS_UPDATE = "creds_update"
    MESSAGES_UPSERT = "messages_upsert"


class WhatsAppUser(BaseModel):
    """Cuenta autenticada en la conexión (``sock.user``)."""
    id: str = Field(description="JID de la cuenta, ej. 123:4@s.whatsapp.net")
    name: Optional[str] = None


class ConnectionUpdate(BaseModel):
    """
    Cambio de estado de conexión.

    Un mismo evento puede traer un QR pendiente, un cambio de estado o ambos.
    """
    connection: Optional[ConnectionState] = None
    qr: Optional[str] = None
    status_code: Optional[int] = Field(default=None, description="Código de cierre, si hubo")
    error: Optional[str] = None
    user: Optional[WhatsAppUser] = None

    @property
    def is_logged_out(self) -> bool:
        """Cierre provocado por logout explícito de la cuenta remota."""
        return self.status_code == DisconnectReason.LOGGED_OUT


class MessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    remote_jid: str = Field(alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: Optional[str] = None


class InboundMessage(BaseModel):
    """Mensaje individual dentro de un ``messages.upsert``."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    key: MessageKey
    message: Optional[Dict[str, Any]] = None

    @property
    def has_content(self) -> bool:
        return bool(self.message)

    @property
    def text(self) -> str:
        """Texto plano: ``conversation`` primero, luego ``extendedTextMessage.text``."""
        if not self.message:
            return ""
        conversation = self.message.get("conversation")
        if conversation:
            return conversation
        extended = self.message.get("extendedTextMessage") or {}
        return extended.get("text") or ""


class MessagesUpsert(BaseModel):
    """Lote de mensajes nuevos (todos se reenvían, sin filtrar por tipo)."""
    messages: List[InboundMessage] = Field(default_factory=list)
