"""
Session Manager - ciclo de vida multi-tenant de conexiones WhatsApp.

Mantiene el registro de sesiones activas, crea / reconecta / destruye
conexiones, conecta los eventos del cliente con el Credential Store y el
Webhook Notifier, y corre un heartbeat por sesión abierta.

Todo corre en un único event loop: no hay locks sobre el registro, pero
cualquier handler puede encontrarse con que su sesión ya no existe, así que
cada lectura del registro comprueba identidad antes de actuar.
"""

import asyncio
import functools
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from ..models.events import ClientEvent, ConnectionState, ConnectionUpdate, InboundMessage, MessagesUpsert
from ..models.results import OperationResult, WebhookResult
from ..models.sessions import PhoneInfo, SessionEntry, SessionStatus
from ..utils.logger import get_logger, log_session_event
from ..utils.qr import encode_qr_data_url
from .credential_store import CredentialStore, InvalidSessionIdError, validate_session_id
from .webhook_service import WebhookEndpoint
from .whatsapp_client import WhatsAppClient

logger = get_logger(__name__)


class ClientFactory(Protocol):
    """Construye clientes WhatsApp (ver BaileysBridgeFactory)."""

    async def resolve_version(self) -> Optional[List[int]]: ...

    def create(self, session_id: str, auth_path: Path, version: Optional[List[int]]) -> WhatsAppClient: ...


class Notifier(Protocol):
    async def notify(self, endpoint: str, payload: Dict[str, Any]) -> WebhookResult: ...


class ReconnectPolicy(Protocol):
    def next_delay(self, attempt: int) -> Optional[float]:
        """Segundos a esperar antes del intento ``attempt`` (0-based); None = no reintentar."""


class FixedDelayPolicy:
    """
    Reintento con delay fijo.

    Sin ``max_attempts`` reintenta indefinidamente, sin backoff.
    """

    def __init__(self, delay: float = 3.0, max_attempts: Optional[int] = None):
        self.delay = delay
        self.max_attempts = max_attempts

    def next_delay(self, attempt: int) -> Optional[float]:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return None
        return self.delay


class SessionRegistry:
    """Mapa sessionId -> SessionEntry. Solo el SessionManager lo modifica."""

    def __init__(self):
        self._entries: Dict[str, SessionEntry] = {}

    def get(self, session_id: str) -> Optional[SessionEntry]:
        return self._entries.get(session_id)

    def add(self, entry: SessionEntry):
        if entry.session_id in self._entries:
            raise KeyError(f"Session {entry.session_id} already registered")
        self._entries[entry.session_id] = entry

    def remove(self, session_id: str, entry: Optional[SessionEntry] = None) -> Optional[SessionEntry]:
        """
        Elimina una entrada.

        Con ``entry`` solo elimina si sigue siendo la registrada, para que
        un handler atrasado no borre una sesión recreada.
        """
        current = self._entries.get(session_id)
        if current is None or (entry is not None and current is not entry):
            return None
        return self._entries.pop(session_id)

    def is_current(self, entry: SessionEntry) -> bool:
        return self._entries.get(entry.session_id) is entry

    def session_ids(self) -> List[str]:
        return list(self._entries.keys())

    def entries(self) -> List[SessionEntry]:
        return list(self._entries.values())

    def clear(self):
        self._entries.clear()

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class SessionManager:
    """
    Gestor del ciclo de vida de sesiones.

    Features:
    - Registro explícito e inyectado (una instancia = un registro)
    - Reconexión con política inyectable (por defecto 3s fijo, sin límite)
    - Heartbeat por sesión con cancelación explícita
    - Operaciones serializadas por sessionId (create / destroy / reconnect)
    """

    def __init__(
        self,
        registry: SessionRegistry,
        credential_store: CredentialStore,
        notifier: Notifier,
        client_factory: ClientFactory,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        heartbeat_interval: float = 30.0,
        qr_encoder: Callable[[str], str] = encode_qr_data_url
    ):
        self.registry = registry
        self.credential_store = credential_store
        self.notifier = notifier
        self.client_factory = client_factory
        self.reconnect_policy = reconnect_policy or FixedDelayPolicy()
        self.heartbeat_interval = heartbeat_interval
        self.qr_encoder = qr_encoder

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    # ================================
    # Consultas
    # ================================

    def has_session(self, session_id: str) -> bool:
        return session_id in self.registry

    def list_sessions(self) -> List[str]:
        """Snapshot de los sessionId activos."""
        return self.registry.session_ids()

    @property
    def active_count(self) -> int:
        return len(self.registry)

    def get_status(self, session_id: str) -> Optional[SessionStatus]:
        entry = self.registry.get(session_id)
        return entry.status if entry else None

    # ================================
    # Create
    # ================================

    @asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        """
        Serializa create / destroy / reconnect de un sessionId.

        El lock se descarta cuando nadie lo usa y la sesión ya no está
        registrada.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
            self._discard_lock(session_id)

    def _discard_lock(self, session_id: str):
        if session_id not in self._lock_users and session_id not in self.registry:
            self._locks.pop(session_id, None)

    async def create_session(self, session_id: str, require_existing: bool = False) -> OperationResult:
        """
        Crea la conexión de una sesión.

        La entrada queda registrada en ``connecting`` antes de cualquier I/O.
        No comprueba si ya existe: eso lo hace la API de control. Los fallos
        se notifican como ``disconnected`` y se devuelven, nunca se lanzan.

        Args:
            session_id: ID de la sesión
            require_existing: Solo conectar si el directorio de credenciales
                sigue existiendo al tomar el lock (restore al arrancar)

        Raises:
            InvalidSessionIdError: Si el sessionId no es utilizable
        """
        validate_session_id(session_id)

        entry = SessionEntry(session_id=session_id)
        previous = self.registry.remove(session_id)
        if previous:
            logger.warning(f"⚠️ Reemplazando entrada previa de {session_id}")
            previous.status = SessionStatus.TERMINATED
            self._cancel_tasks(previous)
            self._dispose_client(previous)
        self.registry.add(entry)

        async with self._session_lock(session_id):
            if not self.registry.is_current(entry):
                return OperationResult.failure(session_id, "session removed before connecting")
            if require_existing and not self.credential_store.path_for(session_id).exists():
                # Destruida mientras esperaba turno: no recrear su directorio
                self.registry.remove(session_id, entry)
                entry.status = SessionStatus.TERMINATED
                logger.info(f"⏭️ Sesión {session_id} destruida antes de restaurarse", extra={'session_id': session_id})
                return OperationResult.failure(session_id, "session directory removed")
            log_session_event(logger, session_id, "create", f"🔄 Creando sesión {session_id}")
            return await self._open_connection(entry)

    async def _open_connection(self, entry: SessionEntry) -> OperationResult:
        """Carga credenciales, construye el cliente y lo arranca."""
        session_id = entry.session_id
        client: Optional[WhatsAppClient] = None
        entry.status = SessionStatus.CONNECTING

        try:
            record = await asyncio.to_thread(self.credential_store.load, session_id)
            version = await self.client_factory.resolve_version()

            client = self.client_factory.create(session_id, record.path, version)
            entry.client = client
            client.on(ClientEvent.CONNECTION_UPDATE, functools.partial(self._on_connection_update, entry, client))
            client.on(ClientEvent.CREDS_UPDATE, functools.partial(self._on_creds_update, entry, client))
            client.on(ClientEvent.MESSAGES_UPSERT, functools.partial(self._on_messages_upsert, entry, client))

            await client.start()

            if not self.registry.is_current(entry):
                raise RuntimeError("session destroyed while connecting")

            log_session_event(
                logger, session_id, "connecting",
                f"📡 Sesión {session_id} conectando "
                f"({'credenciales existentes' if record.has_credentials else 'nuevo emparejamiento'})"
            )
            return OperationResult.success(session_id)

        except Exception as e:
            logger.error(
                f"❌ Error creating session {session_id}: {e}",
                exc_info=True,
                extra={'session_id': session_id}
            )
            if entry.client is client:
                entry.client = None
            if client is not None:
                self._dispose_client_instance(client)

            removed = self.registry.remove(session_id, entry)
            if removed:
                entry.status = SessionStatus.TERMINATED
                self._cancel_tasks(entry)

            await self._notify_disconnected(session_id)
            return OperationResult.failure(session_id, str(e))

    # ================================
    # Eventos del cliente
    # ================================

    def _is_live(self, entry: SessionEntry, client: WhatsAppClient) -> bool:
        return self.registry.is_current(entry) and entry.client is client

    async def _on_connection_update(self, entry: SessionEntry, client: WhatsAppClient, update: ConnectionUpdate):
        session_id = entry.session_id
        if not self._is_live(entry, client):
            logger.debug(f"connection_update obsoleto para {session_id}, ignorado")
            return

        if update.qr:
            await self._handle_qr(entry, update.qr)

        if update.connection == ConnectionState.CLOSE:
            await self._handle_close(entry, client, update)
        elif update.connection == ConnectionState.OPEN:
            await self._handle_open(entry, client, update)

    async def _handle_qr(self, entry: SessionEntry, qr: str):
        session_id = entry.session_id
        log_session_event(logger, session_id, "qr", f"📱 QR disponible para {session_id}")
        try:
            qr_code = self.qr_encoder(qr)
        except Exception as e:
            logger.error(f"❌ Error codificando QR de {session_id}: {e}", extra={'session_id': session_id})
            return
        await self.notifier.notify(WebhookEndpoint.QR_UPDATE, {
            "sessionId": session_id,
            "qrCode": qr_code,
        })

    async def _handle_close(self, entry: SessionEntry, client: WhatsAppClient, update: ConnectionUpdate):
        session_id = entry.session_id
        entry.status = SessionStatus.CLOSING
        self._cancel_heartbeat(entry)

        should_reconnect = not update.is_logged_out and not entry.destroying
        log_session_event(
            logger, session_id, "close",
            f"⚠️ Sesión {session_id} cerrada (code={update.status_code}, error={update.error}, "
            f"reconnect={should_reconnect})"
        )

        await self._notify_disconnected(session_id)

        # La sesión pudo destruirse mientras se enviaba el webhook
        if not self._is_live(entry, client):
            return

        delay = self.reconnect_policy.next_delay(entry.reconnect_attempts) if should_reconnect else None
        if delay is not None:
            entry.status = SessionStatus.RECONNECTING
            entry.reconnect_attempts += 1
            log_session_event(
                logger, session_id, "reconnect",
                f"🔄 Reconnecting session {session_id} en {delay}s (intento {entry.reconnect_attempts})"
            )
            entry.reconnect_task = asyncio.create_task(self._reconnect_after(entry, delay))
            return

        entry.status = SessionStatus.TERMINATED
        self.registry.remove(session_id, entry)
        self._discard_lock(session_id)
        entry.client = None
        self._dispose_client_instance(client)
        log_session_event(logger, session_id, "terminated", f"🛑 Sesión {self._describe(entry)} eliminada del registro")

    async def _reconnect_after(self, entry: SessionEntry, delay: float):
        """
        Reintento programado.

        ``entry.reconnect_task`` apunta a esta tarea hasta que el intento
        termina, así destroy y shutdown pueden cancelarla en pleno arranque.
        """
        try:
            await asyncio.sleep(delay)

            async with self._session_lock(entry.session_id):
                if not self.registry.is_current(entry) or entry.status != SessionStatus.RECONNECTING:
                    return

                old_client = entry.client
                entry.client = None
                if old_client is not None:
                    await old_client.close()

                await self._open_connection(entry)
        finally:
            if entry.reconnect_task is asyncio.current_task():
                entry.reconnect_task = None

    async def _handle_open(self, entry: SessionEntry, client: WhatsAppClient, update: ConnectionUpdate):
        session_id = entry.session_id
        user = update.user or client.user
        if user is None:
            logger.warning(f"⚠️ Sesión {session_id} abierta sin datos de cuenta", extra={'session_id': session_id})
            phone_info = None
        else:
            phone_info = PhoneInfo.from_user(user)

        entry.status = SessionStatus.OPEN
        entry.phone_info = phone_info
        entry.reconnect_attempts = 0
        log_session_event(logger, session_id, "open", f"✅ Session {session_id} connected successfully")

        await self.notifier.notify(WebhookEndpoint.CONNECTION_UPDATE, {
            "sessionId": session_id,
            "status": "connected",
            "phoneInfo": phone_info.model_dump() if phone_info else None,
        })

        if self._is_live(entry, client) and entry.status == SessionStatus.OPEN:
            self._start_heartbeat(entry)

    async def _on_creds_update(self, entry: SessionEntry, client: WhatsAppClient, creds: Dict[str, Any]):
        """Persiste la rotación antes de devolver el control al cliente."""
        session_id = entry.session_id
        if not self._is_live(entry, client):
            logger.debug(f"creds_update obsoleto para {session_id}, ignorado")
            return
        try:
            self.credential_store.save(session_id, creds)
        except Exception as e:
            logger.error(f"❌ Error guardando credenciales de {session_id}: {e}", extra={'session_id': session_id})

    async def _on_messages_upsert(self, entry: SessionEntry, client: WhatsAppClient, upsert: MessagesUpsert):
        for message in upsert.messages:
            if message.key.from_me or not message.has_content:
                continue
            self._spawn(self.forward_incoming_message(entry, client, message))

    async def forward_incoming_message(
        self,
        entry: SessionEntry,
        client: WhatsAppClient,
        message: InboundMessage
    ) -> Optional[WebhookResult]:
        """
        Reenvía un mensaje entrante al backend y envía su ``reply``, si hay.

        Los fallos se loguean; nunca llegan al cliente.
        """
        session_id = entry.session_id
        sender = message.key.remote_jid
        text = message.text

        result = await self.notifier.notify(WebhookEndpoint.INCOMING_MESSAGE, {
            "sessionId": session_id,
            "from": sender,
            "text": text,
        })
        if not result.ok:
            logger.error(f"❌ Failed to get reply from backend: {result.error}", extra={'session_id': session_id})
            return result

        logger.info(f"📨 Forwarded message from {sender}: {text[:50]}", extra={'session_id': session_id})

        reply = result.reply
        if not reply:
            return result

        if not self._is_live(entry, client):
            logger.warning(
                f"⚠️ Respuesta descartada: sesión {session_id} ya no está activa",
                extra={'session_id': session_id}
            )
            return result

        try:
            await client.send_text(sender, reply)
            logger.info(f"📤 Respuesta enviada a {sender}", extra={'session_id': session_id})
        except Exception as e:
            logger.error(f"❌ Error enviando respuesta a {sender}: {e}", extra={'session_id': session_id})
        return result

    # ================================
    # Heartbeat
    # ================================

    def _start_heartbeat(self, entry: SessionEntry):
        self._cancel_heartbeat(entry)
        entry.heartbeat_task = asyncio.create_task(self._heartbeat_loop(entry))

    async def _heartbeat_loop(self, entry: SessionEntry):
        session_id = entry.session_id
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.registry.is_current(entry) or entry.status != SessionStatus.OPEN:
                return
            result = await self.notifier.notify(WebhookEndpoint.HEARTBEAT, {"sessionId": session_id})
            if not result.ok:
                logger.warning(f"⚠️ Heartbeat failed for {session_id}", extra={'session_id': session_id})

    def _cancel_heartbeat(self, entry: SessionEntry):
        task = entry.heartbeat_task
        entry.heartbeat_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # ================================
    # Destroy / restore / shutdown
    # ================================

    async def destroy_session(self, session_id: str) -> OperationResult:
        """
        Destruye una sesión: logout, baja del registro y borrado de credenciales.

        Idempotente. Los fallos de cada paso se loguean y no interrumpen
        los siguientes; el resultado es siempre ``ok``.

        Raises:
            InvalidSessionIdError: Si el sessionId no es utilizable
        """
        validate_session_id(session_id)
        errors: List[str] = []

        description = session_id
        pending = self.registry.get(session_id)
        if pending:
            # Un reintento en curso retiene el lock hasta terminar de conectar
            self._cancel_tasks(pending)

        async with self._session_lock(session_id):
            entry = self.registry.get(session_id)
            if entry:
                description = self._describe(entry)
                entry.destroying = True
                entry.status = SessionStatus.CLOSING
                self._cancel_tasks(entry)

                client = entry.client
                if client is not None:
                    try:
                        await client.logout()
                    except Exception as e:
                        logger.error(f"❌ Error logging out session {session_id}: {e}", extra={'session_id': session_id})
                        errors.append(f"logout: {e}")

                self.registry.remove(session_id, entry)
                entry.status = SessionStatus.TERMINATED
                entry.client = None
                if client is not None:
                    await client.close()

            try:
                await asyncio.to_thread(self.credential_store.delete, session_id)
            except Exception as e:
                logger.error(f"❌ Error cleaning session files {session_id}: {e}", extra={'session_id': session_id})
                errors.append(f"cleanup: {e}")

        log_session_event(logger, session_id, "destroy", f"🗑️ Bot session destroyed: {description}")

        result = OperationResult.success(session_id)
        if errors:
            result.error = "; ".join(errors)
        return result

    async def restore_sessions(self) -> List[OperationResult]:
        """
        Recrea secuencialmente las sesiones con directorio en disco.

        Se ejecuta una vez al arrancar el proceso.
        """
        results: List[OperationResult] = []
        session_ids = await asyncio.to_thread(self.credential_store.list_session_ids)

        for session_id in session_ids:
            if self.has_session(session_id):
                continue
            try:
                validate_session_id(session_id)
            except InvalidSessionIdError:
                logger.warning(f"⚠️ Directorio de sesión ignorado: {session_id!r}")
                continue

            logger.info(f"♻️ Restoring session: {session_id}", extra={'session_id': session_id})
            results.append(await self.create_session(session_id, require_existing=True))

        logger.info(f"✅ Restauración completada: {sum(r.ok for r in results)}/{len(results)} sesiones")
        return results

    async def shutdown(self):
        """Cierra todas las conexiones sin logout; las credenciales quedan en disco."""
        logger.info(f"🛑 Cerrando {len(self.registry)} sesiones...")

        entries = self.registry.entries()
        self.registry.clear()
        pending = list(self._background_tasks)
        for entry in entries:
            entry.status = SessionStatus.TERMINATED
            if entry.reconnect_task is not None:
                pending.append(entry.reconnect_task)
            self._cancel_tasks(entry)
            client, entry.client = entry.client, None
            if client is not None:
                await client.close()

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for entry in entries:
            self._discard_lock(entry.session_id)

        close = getattr(self.notifier, "aclose", None)
        if close is not None:
            await close()

    # ================================
    # Helpers
    # ================================

    async def _notify_disconnected(self, session_id: str) -> WebhookResult:
        return await self.notifier.notify(WebhookEndpoint.CONNECTION_UPDATE, {
            "sessionId": session_id,
            "status": "disconnected",
            "phoneInfo": None,
        })

    @staticmethod
    def _describe(entry: SessionEntry) -> str:
        """sessionId, teléfono (si llegó a abrir) y tiempo de vida de la entrada."""
        phone = f" +{entry.phone_info.phone}" if entry.phone_info else ""
        uptime = (datetime.now() - entry.created_at).total_seconds()
        return f"{entry.session_id}{phone} ({uptime:.0f}s)"

    def _cancel_tasks(self, entry: SessionEntry):
        self._cancel_heartbeat(entry)
        task = entry.reconnect_task
        entry.reconnect_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _dispose_client(self, entry: SessionEntry):
        client, entry.client = entry.client, None
        if client is not None:
            self._dispose_client_instance(client)

    def _dispose_client_instance(self, client: WhatsAppClient):
        """Cierra un cliente en segundo plano (puede llamarse desde su propio handler)."""
        self._spawn(client.close())

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task
