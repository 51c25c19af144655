"""
FastAPI Main Application - WhatsApp Bot Session Service

Aplicación principal que expone la API de control de sesiones
(create / destroy / list / health) sobre el SessionManager, y restaura
las sesiones persistidas al arrancar.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wa_bot_service.models.api import (
    HealthResponse, SessionActionResponse, SessionListResponse, SessionRequest
)
from wa_bot_service.services.credential_store import CredentialStore, InvalidSessionIdError
from wa_bot_service.services.session_manager import FixedDelayPolicy, SessionManager, SessionRegistry
from wa_bot_service.services.webhook_service import WebhookNotifier
from wa_bot_service.services.whatsapp_client import BaileysBridgeFactory
from wa_bot_service.utils.config import Settings, get_settings
from wa_bot_service.utils.logger import get_logger, LoggingMiddleware

logger = get_logger(__name__)


def build_session_manager(settings: Settings) -> SessionManager:
    """Construye el SessionManager con sus colaboradores reales."""
    return SessionManager(
        registry=SessionRegistry(),
        credential_store=CredentialStore(Path(settings.SESSIONS_PATH)),
        notifier=WebhookNotifier(settings.BACKEND_URL, timeout=settings.WEBHOOK_TIMEOUT),
        client_factory=BaileysBridgeFactory(**settings.bridge_config),
        reconnect_policy=FixedDelayPolicy(delay=settings.RECONNECT_DELAY),
        heartbeat_interval=settings.HEARTBEAT_INTERVAL
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager para la aplicación.

    Prepara el bridge, restaura sesiones en background y cierra
    todas las conexiones en shutdown.
    """
    manager: SessionManager = app.state.session_manager
    restore_task: Optional[asyncio.Task] = None

    logger.info("🚀 Iniciando WhatsApp Bot Service...")

    prepare = getattr(manager.client_factory, "prepare", None)
    if prepare is not None and not await prepare():
        logger.error("❌ Runtime del bridge no disponible; las sesiones fallarán al conectar")

    if app.state.restore_on_startup:
        restore_task = asyncio.create_task(manager.restore_sessions())

    yield  # Aquí la app está corriendo

    logger.info("🛑 Cerrando aplicación...")
    if restore_task and not restore_task.done():
        restore_task.cancel()
        await asyncio.gather(restore_task, return_exceptions=True)
    await manager.shutdown()
    logger.info("✅ Aplicación cerrada correctamente")


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": error})


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[SessionManager] = None,
    restore_on_startup: bool = True
) -> FastAPI:
    """
    Crea la aplicación FastAPI.

    Args:
        settings: Configuración (por defecto get_settings())
        manager: SessionManager a exponer (por defecto uno real)
        restore_on_startup: Restaurar sesiones persistidas al arrancar
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="WhatsApp Bot Session Service",
        description="Multiplexa sesiones WhatsApp por tenant y las conecta al backend vía webhooks",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.session_manager = manager or build_session_manager(settings)
    app.state.restore_on_startup = restore_on_startup

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware, logger=logger)

    @app.post("/bot/create", response_model=SessionActionResponse)
    async def create_bot_session(request: Request, body: Optional[SessionRequest] = None):
        """
        Inicia una sesión. No espera a que conecte: el QR y el estado
        llegan al backend por webhook.
        """
        manager = get_session_manager(request)
        session_id = body.sessionId if body else None

        if not session_id:
            return _bad_request("Session ID required")

        if manager.has_session(session_id):
            return _bad_request("Session already exists")

        logger.info(f"Creating bot session: {session_id}")
        try:
            await manager.create_session(session_id)
        except InvalidSessionIdError:
            return _bad_request("Invalid session ID")

        return SessionActionResponse(message="Bot session creation initiated", sessionId=session_id)

    @app.post("/bot/destroy", response_model=SessionActionResponse)
    async def destroy_bot_session(request: Request, body: Optional[SessionRequest] = None):
        """Logout, baja del registro y borrado de credenciales."""
        manager = get_session_manager(request)
        session_id = body.sessionId if body else None

        if not session_id:
            return _bad_request("Session ID required")

        try:
            await manager.destroy_session(session_id)
        except InvalidSessionIdError:
            return _bad_request("Invalid session ID")

        return SessionActionResponse(message="Bot session destroyed", sessionId=session_id)

    @app.get("/bot/sessions", response_model=SessionListResponse)
    async def list_bot_sessions(request: Request):
        sessions = get_session_manager(request).list_sessions()
        return SessionListResponse(sessions=sessions, count=len(sessions))

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Endpoint de health check para monitoreo."""
        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc).isoformat(),
            activeSessions=get_session_manager(request).active_count
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Bodies mal formados responden 400 con el mismo formato que el resto de errores."""
        logger.warning(f"⚠️ Body inválido en {request.url.path}: {exc.errors()}")
        if any("sessionId" in error.get("loc", ()) for error in exc.errors()):
            return _bad_request("Invalid session ID")
        return _bad_request("Invalid request body")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handler global para excepciones no manejadas."""
        logger.error(f"❌ Excepción global no manejada: {exc}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.DEBUG else "An error occurred",
                "timestamp": time.time()
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False
    )
