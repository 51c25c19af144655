"""
WhatsApp Client - conexión por sesión vía bridge Baileys.

Cada sesión corre su propio proceso Node.js con @whiskeysockets/baileys.
El proceso habla JSON lines: eventos por stdout, comandos por stdin.
El protocolo WhatsApp (emparejamiento, cifrado, socket) vive por completo
en la librería; aquí solo se traducen eventos y comandos.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..models.events import (
    ClientEvent, ConnectionState, ConnectionUpdate, MessagesUpsert, WhatsAppUser
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[None]]

BRIDGE_SCRIPT_NAME = "baileys-bridge.js"

# Mensajes con miniaturas superan el límite por defecto de 64KB por línea
STREAM_LIMIT = 16 * 1024 * 1024


class WhatsAppClientError(Exception):
    """Error base del cliente WhatsApp."""


class BridgeStartError(WhatsAppClientError):
    """El bridge no llegó a arrancar."""


class BridgeCommandError(WhatsAppClientError):
    """El bridge rechazó o no respondió un comando."""


class ClientClosedError(WhatsAppClientError):
    """Operación sobre un cliente ya cerrado."""


class WhatsAppClient(ABC):
    """
    Conexión WhatsApp de una sesión.

    Emite ``connection_update``, ``creds_update`` y ``messages_upsert``;
    acepta envíos de texto y logout explícito.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.user: Optional[WhatsAppUser] = None
        self.event_handlers: Dict[str, EventHandler] = {}

    def on(self, event: ClientEvent, handler: EventHandler):
        """Registra el handler de un stream de eventos."""
        self.event_handlers[ClientEvent(event).value] = handler

    async def _emit(self, event: ClientEvent, payload: Any):
        handler = self.event_handlers.get(event.value)
        if not handler:
            return
        try:
            await handler(payload)
        except Exception as e:
            logger.error(
                f"❌ Error en event handler {event.value} de {self.session_id}: {e}",
                exc_info=True,
                extra={'session_id': self.session_id, 'event_type': event.value}
            )

    @abstractmethod
    async def start(self):
        """Abre la conexión. No espera al emparejamiento."""

    @abstractmethod
    async def send_text(self, to: str, text: str) -> Optional[str]:
        """Envía texto a un JID. Devuelve el id del mensaje si se conoce."""

    @abstractmethod
    async def logout(self):
        """Cierra sesión en la cuenta remota (invalida credenciales)."""

    @abstractmethod
    async def close(self):
        """Libera la conexión sin hacer logout."""


class BaileysBridgeClient(WhatsAppClient):
    """
    Cliente que corre el bridge Baileys como subprocess.

    Los eventos se despachan en orden y cada handler se espera antes de
    leer la siguiente línea, así una rotación de credenciales queda
    persistida antes de procesar el siguiente evento.
    """

    def __init__(
        self,
        session_id: str,
        auth_path: Path,
        script_path: Path,
        node_binary: str = "node",
        version: Optional[List[int]] = None,
        log_level: str = "silent",
        start_timeout: float = 60.0,
        command_timeout: float = 15.0
    ):
        super().__init__(session_id)
        self.auth_path = Path(auth_path)
        self.script_path = Path(script_path)
        self.node_binary = node_binary
        self.version = version
        self.log_level = log_level
        self.start_timeout = start_timeout
        self.command_timeout = command_timeout

        self.process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._started: Optional[asyncio.Future] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._closing = False
        self._close_reported = False

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def _command_line(self) -> List[str]:
        version_arg = ".".join(str(part) for part in self.version) if self.version else "latest"
        return [
            self.node_binary,
            str(self.script_path),
            str(self.auth_path),
            version_arg,
            self.log_level,
        ]

    async def start(self):
        """
        Lanza el bridge y espera su evento ``started``.

        Raises:
            BridgeStartError: Si el proceso no arranca, reporta ``fatal``
                o no responde dentro de ``start_timeout``
        """
        if self._closing:
            raise ClientClosedError(f"Client for {self.session_id} already closed")

        loop = asyncio.get_running_loop()
        self._started = loop.create_future()

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self._command_line(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.script_path.parent),
                limit=STREAM_LIMIT
            )
        except OSError as e:
            raise BridgeStartError(f"Cannot launch bridge for {self.session_id}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_events())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            await asyncio.wait_for(asyncio.shield(self._started), timeout=self.start_timeout)
        except asyncio.TimeoutError:
            self._started.cancel()
            await self.close()
            raise BridgeStartError(f"Bridge for {self.session_id} did not start in {self.start_timeout}s")
        except BridgeStartError:
            await self.close()
            raise

        logger.info(
            f"🚀 Bridge iniciado para {self.session_id} (pid {self.process.pid})",
            extra={'session_id': self.session_id}
        )

    async def _read_events(self):
        """Lee eventos JSON del stdout del bridge hasta EOF."""
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                await self._handle_line(line.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Error leyendo eventos de {self.session_id}: {e}", exc_info=True)
            if self.process.returncode is None:
                self.process.kill()

        returncode = await self.process.wait()
        await self._on_exit(returncode)

    async def _read_stderr(self):
        while True:
            line = await self.process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"bridge[{self.session_id}] {text}")

    async def _handle_line(self, line: str):
        line = line.strip()
        if not line:
            return
        if not line.startswith('{'):
            logger.debug(f"bridge[{self.session_id}] {line}")
            return

        try:
            event_data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"JSON decode error de {self.session_id}: {e}, line: {line[:200]}")
            return

        await self._handle_event(event_data)

    async def _handle_event(self, event_data: Dict[str, Any]):
        """Traduce un evento del bridge y lo entrega al handler registrado."""
        event_type = event_data.get('event')
        data = event_data.get('data') or {}

        if event_type == 'started':
            if self._started and not self._started.done():
                self._started.set_result(data)

        elif event_type == 'fatal':
            error = data.get('error', 'unknown error')
            logger.error(f"❌ Bridge fatal en {self.session_id}: {error}", extra={'session_id': self.session_id})
            if self._started and not self._started.done():
                self._started.set_exception(BridgeStartError(error))

        elif event_type == 'command_result':
            future = self._pending.pop(data.get('id'), None)
            if future and not future.done():
                if data.get('ok'):
                    future.set_result(data.get('result'))
                else:
                    future.set_exception(BridgeCommandError(data.get('error', 'command failed')))

        elif event_type == ClientEvent.CONNECTION_UPDATE.value:
            try:
                update = ConnectionUpdate.model_validate(data)
            except ValidationError as e:
                logger.warning(f"⚠️ connection_update inválido de {self.session_id}: {e}")
                return
            if update.connection == ConnectionState.OPEN and update.user:
                self.user = update.user
            if update.connection == ConnectionState.CLOSE:
                self._close_reported = True
            await self._emit(ClientEvent.CONNECTION_UPDATE, update)

        elif event_type == ClientEvent.CREDS_UPDATE.value:
            creds = data.get('creds')
            if isinstance(creds, dict):
                await self._emit(ClientEvent.CREDS_UPDATE, creds)

        elif event_type == ClientEvent.MESSAGES_UPSERT.value:
            try:
                upsert = MessagesUpsert.model_validate(data)
            except ValidationError as e:
                logger.warning(f"⚠️ messages_upsert inválido de {self.session_id}: {e}")
                return
            await self._emit(ClientEvent.MESSAGES_UPSERT, upsert)

        else:
            logger.debug(f"📥 Evento ignorado de {self.session_id}: {event_type}")

    async def _on_exit(self, returncode: Optional[int]):
        """El proceso terminó: falla lo pendiente y reporta cierre si nadie lo hizo."""
        error = ClientClosedError(f"Bridge for {self.session_id} exited with code {returncode}")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

        if self._started and not self._started.done():
            self._started.set_exception(BridgeStartError(str(error)))
            return

        if self._closing or self._close_reported:
            return

        logger.warning(
            f"⚠️ Bridge de {self.session_id} terminó inesperadamente (código {returncode})",
            extra={'session_id': self.session_id}
        )
        self._close_reported = True
        await self._emit(
            ClientEvent.CONNECTION_UPDATE,
            ConnectionUpdate(connection=ConnectionState.CLOSE, error=str(error))
        )

    async def _send_command(self, action: str, data: Optional[Dict[str, Any]] = None) -> Any:
        """Envía un comando al bridge y espera su ``command_result``."""
        if self._closing or not self.is_running or not self.process.stdin:
            raise ClientClosedError(f"Bridge for {self.session_id} not available")

        command_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[command_id] = future

        command = {"id": command_id, "action": action, "data": data or {}}
        try:
            self.process.stdin.write((json.dumps(command) + '\n').encode("utf-8"))
            await self.process.stdin.drain()
            return await asyncio.wait_for(future, timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise BridgeCommandError(f"{action} timed out after {self.command_timeout}s")
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ClientClosedError(f"Bridge for {self.session_id} not available: {e}") from e
        finally:
            self._pending.pop(command_id, None)

    async def send_text(self, to: str, text: str) -> Optional[str]:
        result = await self._send_command("send_message", {"to": to, "text": text})
        return result.get("message_id") if isinstance(result, dict) else None

    async def logout(self):
        await self._send_command("logout")

    async def close(self):
        """
        Detiene el bridge (SIGTERM, luego SIGKILL tras 10s).

        No espera a la tarea lectora: puede llamarse desde un handler.
        """
        if self._closing:
            return
        self._closing = True

        if self.process and self.process.returncode is None:
            try:
                if self.process.stdin:
                    self.process.stdin.close()
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=10.0)
                except asyncio.TimeoutError:
                    self.process.kill()
            except ProcessLookupError:
                pass
            except Exception as e:
                logger.error(f"❌ Error deteniendo bridge de {self.session_id}: {e}")

        for future in self._pending.values():
            if not future.done():
                future.set_exception(ClientClosedError(f"Client for {self.session_id} closed"))
        self._pending.clear()

        logger.info(f"🛑 Bridge detenido para {self.session_id}", extra={'session_id': self.session_id})


class BaileysBridgeFactory:
    """
    Prepara el runtime del bridge y construye un cliente por sesión.
    """

    def __init__(
        self,
        bridge_path: str,
        node_binary: str = "node",
        npm_binary: str = "npm",
        version: Optional[str] = None,
        log_level: str = "silent",
        start_timeout: float = 60.0,
        command_timeout: float = 15.0
    ):
        self.bridge_path = Path(bridge_path)
        self.node_binary = node_binary
        self.npm_binary = npm_binary
        self.version = version
        self.log_level = log_level
        self.start_timeout = start_timeout
        self.command_timeout = command_timeout

    @property
    def script_path(self) -> Path:
        return self.bridge_path / BRIDGE_SCRIPT_NAME

    async def prepare(self) -> bool:
        """
        Escribe el script bridge y instala dependencias Node.js si faltan.

        Returns:
            True si el runtime quedó listo
        """
        self.bridge_path.mkdir(parents=True, exist_ok=True)
        write_bridge_script(self.bridge_path)

        if (self.bridge_path / "node_modules").exists():
            return True
        return await self._install_node_dependencies()

    async def _install_node_dependencies(self) -> bool:
        """Instala dependencias Node.js del bridge."""
        logger.info("📦 Instalando dependencias Node.js del bridge...")

        try:
            process = await asyncio.create_subprocess_exec(
                self.npm_binary, 'install', '--omit=dev', '--no-audit', '--no-fund',
                cwd=str(self.bridge_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=300)
            except asyncio.TimeoutError:
                logger.error("❌ Timeout instalando dependencias Node.js")
                process.kill()
                return False
        except OSError as e:
            logger.error(f"❌ Error ejecutando npm install: {e}")
            return False

        if process.returncode != 0:
            logger.error(f"❌ Error instalando dependencias: {stderr.decode(errors='replace')}")
            return False

        logger.info("✅ Dependencias Node.js instaladas")
        return True

    async def resolve_version(self) -> Optional[List[int]]:
        """
        Versión del protocolo WhatsApp Web a usar.

        None delega en el bridge (``fetchLatestBaileysVersion``).
        """
        if not self.version:
            return None
        try:
            return [int(part) for part in self.version.split(".")]
        except ValueError:
            logger.warning(f"⚠️ WA_VERSION inválida '{self.version}', usando la última")
            return None

    def create(self, session_id: str, auth_path: Path, version: Optional[List[int]]) -> WhatsAppClient:
        return BaileysBridgeClient(
            session_id=session_id,
            auth_path=auth_path,
            script_path=self.script_path,
            node_binary=self.node_binary,
            version=version,
            log_level=self.log_level,
            start_timeout=self.start_timeout,
            command_timeout=self.command_timeout
        )


def write_bridge_script(bridge_path: Path) -> Path:
    """
    Escribe el script Node.js y su package.json.

    Las credenciales (``creds.json``) las persiste Python a partir de
    los eventos ``creds_update``; las claves de señal las escribe Baileys.
    """
    script_path = bridge_path / BRIDGE_SCRIPT_NAME
    with open(script_path, 'w', encoding='utf-8') as f:
        f.write(BRIDGE_SCRIPT)

    package_json_path = bridge_path / "package.json"
    with open(package_json_path, 'w', encoding='utf-8') as f:
        json.dump(BRIDGE_PACKAGE_JSON, f, indent=2)

    return script_path


BRIDGE_PACKAGE_JSON = {
    "name": "wa-bot-service-bridge",
    "version": "1.0.0",
    "private": True,
    "description": "Baileys bridge driven by wa-bot-service",
    "dependencies": {
        "@whiskeysockets/baileys": "^6.7.0",
        "pino": "^9.0.0"
    },
    "engines": {
        "node": ">=18.0.0"
    }
}


BRIDGE_SCRIPT = r'''
const {
  default: makeWASocket,
  useMultiFileAuthState,
  fetchLatestBaileysVersion,
  BufferJSON,
} = require("@whiskeysockets/baileys");
const pino = require("pino");
const readline = require("readline");

const authPath = process.argv[2];
const versionArg = process.argv[3] || "latest";
const logLevel = process.argv[4] || "silent";

let sock = null;

function emit(event, data) {
  process.stdout.write(JSON.stringify({ event, data }, BufferJSON.replacer) + "\n");
}

async function start() {
  const { state } = await useMultiFileAuthState(authPath);

  let version;
  if (versionArg === "latest") {
    ({ version } = await fetchLatestBaileysVersion());
  } else {
    version = versionArg.split(".").map(Number);
  }

  sock = makeWASocket({
    version,
    logger: pino({ level: logLevel }),
    auth: state,
  });

  sock.ev.on("connection.update", (update) => {
    const { connection, lastDisconnect, qr } = update;
    if (!connection && !qr) return;

    const payload = {
      connection: connection || null,
      qr: qr || null,
      status_code: lastDisconnect?.error?.output?.statusCode ?? null,
      error: lastDisconnect?.error?.message ?? null,
      user: null,
    };
    if (connection === "open" && sock.user) {
      payload.user = { id: sock.user.id, name: sock.user.name || null };
    }
    emit("connection_update", payload);
  });

  // creds.json lo escribe Python; no se llama a saveCreds aquí
  sock.ev.on("creds.update", () => {
    emit("creds_update", { creds: state.creds });
  });

  sock.ev.on("messages.upsert", (m) => {
    emit("messages_upsert", {
      type: m.type,
      messages: m.messages.map((msg) => ({
        key: msg.key,
        message: msg.message || null,
        pushName: msg.pushName || null,
      })),
    });
  });

  emit("started", { version });
}

const rl = readline.createInterface({ input: process.stdin });

rl.on("line", async (line) => {
  let command;
  try {
    command = JSON.parse(line);
  } catch (error) {
    emit("command_error", { error: error.message });
    return;
  }

  const { id, action, data } = command;
  try {
    if (!sock) throw new Error("socket not started");

    if (action === "send_message") {
      const result = await sock.sendMessage(data.to, { text: data.text });
      emit("command_result", { id, ok: true, result: { message_id: result?.key?.id || null } });
    } else if (action === "logout") {
      await sock.logout();
      emit("command_result", { id, ok: true, result: null });
    } else {
      throw new Error(`unknown action ${action}`);
    }
  } catch (error) {
    emit("command_result", { id, ok: false, error: error.message });
  }
});

rl.on("close", () => process.exit(0));
process.on("SIGTERM", () => process.exit(0));
process.on("SIGINT", () => process.exit(0));

start().catch((error) => {
  emit("fatal", { error: error.message });
  process.exit(1);
});
'''
