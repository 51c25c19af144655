"""
Webhook Notifier - notificaciones best-effort al backend.

POST JSON a ``BACKEND_URL + endpoint`` con timeout acotado. Sin reintentos,
sin cola: cualquier fallo se loguea y se devuelve como resultado, nunca
como excepción.
"""

import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from ..models.results import WebhookResult
from ..utils.logger import get_logger, log_webhook_call

logger = get_logger(__name__)


class WebhookEndpoint(str, Enum):
    """Endpoints lógicos del backend."""
    QR_UPDATE = "/api/webhook/wa/qr-update"
    CONNECTION_UPDATE = "/api/webhook/wa/connection-update"
    INCOMING_MESSAGE = "/api/webhook/wa/incoming-message"
    HEARTBEAT = "/api/webhook/wa/heartbeat"


class WebhookNotifier:
    """
    Cliente HTTP compartido para todos los webhooks de todas las sesiones.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"}
        )
        self.stats = {
            "webhooks_sent": 0,
            "webhooks_failed": 0,
        }

    async def notify(self, endpoint: str, payload: Dict[str, Any]) -> WebhookResult:
        """
        Envía un webhook y devuelve el resultado sin lanzar nunca.

        Args:
            endpoint: Path del webhook (ver WebhookEndpoint)
            payload: Body JSON, siempre incluye ``sessionId``

        Returns:
            WebhookResult con status y body decodificado (si era JSON)
        """
        path = endpoint.value if isinstance(endpoint, WebhookEndpoint) else endpoint
        session_id = payload.get("sessionId")
        start_time = time.monotonic()

        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return self._failed(path, session_id, start_time, str(e), e.response.status_code)
        except httpx.HTTPError as e:
            return self._failed(path, session_id, start_time, str(e) or type(e).__name__)
        except Exception as e:
            return self._failed(path, session_id, start_time, f"{type(e).__name__}: {e}")

        duration_ms = (time.monotonic() - start_time) * 1000
        self.stats["webhooks_sent"] += 1
        log_webhook_call(
            logger, path, duration_ms, True,
            session_id=session_id, status_code=response.status_code
        )

        return WebhookResult(
            endpoint=path,
            ok=True,
            status_code=response.status_code,
            data=self._decode_body(response)
        )

    def _failed(
        self,
        path: str,
        session_id: Optional[str],
        start_time: float,
        error: str,
        status_code: Optional[int] = None
    ) -> WebhookResult:
        duration_ms = (time.monotonic() - start_time) * 1000
        self.stats["webhooks_failed"] += 1
        log_webhook_call(
            logger, path, duration_ms, False,
            session_id=session_id, status_code=status_code, error=error
        )
        return WebhookResult(endpoint=path, ok=False, status_code=status_code, error=error)

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def aclose(self):
        """Cierra el cliente HTTP compartido."""
        await self._client.aclose()
