"""
Configuración global para tests pytest.

Define fixtures, fakes del cliente WhatsApp y del notifier, y
configuración común para todos los tests.
"""

import asyncio
import os
import tempfile

# Antes de importar el paquete: sin logs a disco y rutas temporales
_TEST_ROOT = tempfile.mkdtemp(prefix="wa-bot-tests-")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SESSIONS_PATH", os.path.join(_TEST_ROOT, "sessions"))
os.environ.setdefault("BRIDGE_PATH", os.path.join(_TEST_ROOT, "bridge"))

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from wa_bot_service.models.events import (
    ClientEvent, ConnectionState, ConnectionUpdate, MessagesUpsert, WhatsAppUser
)
from wa_bot_service.models.results import WebhookResult
from wa_bot_service.services.credential_store import CredentialStore
from wa_bot_service.services.session_manager import FixedDelayPolicy, SessionManager, SessionRegistry
from wa_bot_service.services.webhook_service import WebhookEndpoint
from wa_bot_service.services.whatsapp_client import BridgeCommandError, WhatsAppClient
from wa_bot_service.utils.config import Settings, set_settings_for_testing


@pytest.fixture
def test_settings(tmp_path):
    """Configuración de testing."""
    return Settings(
        SESSIONS_PATH=str(tmp_path / "sessions"),
        BRIDGE_PATH=str(tmp_path / "bridge"),
        BACKEND_URL="http://backend.test",
        RECONNECT_DELAY=0.0,
        HEARTBEAT_INTERVAL=0.01,
        ENVIRONMENT="testing",
        LOG_LEVEL="DEBUG",
        LOG_TO_FILE=False,
        DEBUG=True
    )


@pytest.fixture(autouse=True)
def setup_test_settings(test_settings):
    """Auto-setup settings de testing para todos los tests."""
    set_settings_for_testing(test_settings)


class FakeWhatsAppClient(WhatsAppClient):
    """Cliente en memoria: los tests disparan eventos a mano."""

    def __init__(self, session_id: str, auth_path: Path):
        super().__init__(session_id)
        self.auth_path = auth_path
        self.started = False
        self.closed = False
        self.logged_out = False
        self.sent: List[Tuple[str, str]] = []
        self.fail_logout = False
        self.close_on_logout = True

    async def start(self):
        self.started = True

    async def send_text(self, to: str, text: str) -> Optional[str]:
        if self.closed:
            raise BridgeCommandError("client closed")
        self.sent.append((to, text))
        return f"MSG{len(self.sent)}"

    async def logout(self):
        if self.fail_logout:
            raise BridgeCommandError("logout failed")
        self.logged_out = True
        # Como Baileys: el logout dispara un close con statusCode 401
        if self.close_on_logout:
            await self.emit_close(status_code=401)

    async def close(self):
        self.closed = True

    async def emit_qr(self, qr: str):
        await self._emit(ClientEvent.CONNECTION_UPDATE, ConnectionUpdate(qr=qr))

    async def emit_open(self, jid: str = "123@s.whatsapp.net", name: str = "Alice"):
        user = WhatsAppUser(id=jid, name=name)
        self.user = user
        await self._emit(
            ClientEvent.CONNECTION_UPDATE,
            ConnectionUpdate(connection=ConnectionState.OPEN, user=user)
        )

    async def emit_close(self, status_code: Optional[int] = None):
        await self._emit(
            ClientEvent.CONNECTION_UPDATE,
            ConnectionUpdate(connection=ConnectionState.CLOSE, status_code=status_code, error="closed")
        )

    async def emit_creds(self, creds: Dict[str, Any]):
        await self._emit(ClientEvent.CREDS_UPDATE, creds)

    async def emit_messages(self, messages: List[Dict[str, Any]]):
        upsert = MessagesUpsert.model_validate({"type": "notify", "messages": messages})
        await self._emit(ClientEvent.MESSAGES_UPSERT, upsert)


class FakeClientFactory:
    """Factory que registra cada cliente creado."""

    def __init__(self):
        self.clients: List[FakeWhatsAppClient] = []
        self.fail_with: Optional[Exception] = None
        self.version_gate: Optional[asyncio.Event] = None
        self.resolve_calls = 0

    async def resolve_version(self) -> Optional[List[int]]:
        self.resolve_calls += 1
        if self.version_gate is not None:
            await self.version_gate.wait()
        return None

    def create(self, session_id: str, auth_path: Path, version: Optional[List[int]]) -> WhatsAppClient:
        if self.fail_with is not None:
            raise self.fail_with
        client = FakeWhatsAppClient(session_id, auth_path)
        self.clients.append(client)
        return client

    def latest(self, session_id: str) -> FakeWhatsAppClient:
        return [c for c in self.clients if c.session_id == session_id][-1]


class RecordingNotifier:
    """Notifier que registra webhooks y devuelve respuestas configurables."""

    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.responses: Dict[str, WebhookResult] = {}
        self.gate: Optional[asyncio.Event] = None

    async def notify(self, endpoint, payload: Dict[str, Any]) -> WebhookResult:
        path = endpoint.value if isinstance(endpoint, WebhookEndpoint) else endpoint
        self.calls.append((path, dict(payload)))
        if self.gate is not None and path == WebhookEndpoint.INCOMING_MESSAGE.value:
            await self.gate.wait()
        return self.responses.get(path, WebhookResult(endpoint=path, ok=True, status_code=200))

    def payloads(self, endpoint: WebhookEndpoint) -> List[Dict[str, Any]]:
        return [payload for path, payload in self.calls if path == endpoint.value]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Espera a que ``predicate()`` sea verdadero o falla el test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def credential_store(tmp_path):
    return CredentialStore(tmp_path / "sessions")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest_asyncio.fixture
async def manager(credential_store, notifier, client_factory):
    """SessionManager con fakes, reconexión inmediata y heartbeat rápido."""
    session_manager = SessionManager(
        registry=SessionRegistry(),
        credential_store=credential_store,
        notifier=notifier,
        client_factory=client_factory,
        reconnect_policy=FixedDelayPolicy(delay=0.0),
        heartbeat_interval=0.01,
        qr_encoder=lambda qr: f"data:image/png;base64,{qr}"
    )
    yield session_manager
    await session_manager.shutdown()


def pytest_configure(config):
    """Configuración global de pytest."""
    config.addinivalue_line("markers", "integration: marca tests de integración")
    config.addinivalue_line("markers", "slow: marca tests lentos")
