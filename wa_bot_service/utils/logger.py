"""
Sistema de logging centralizado y estructurado.

Configura logging con formato estructurado, niveles apropiados
y rotación de archivos para el servicio de sesiones WhatsApp.
"""

import logging
import logging.handlers
import sys
import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware

from .config import get_settings

# Configuración global
_loggers: Dict[str, logging.Logger] = {}
_log_initialized = False

# Campos extra que los formatters muestran si el record los trae
_EXTRA_FIELDS = ("session_id", "endpoint", "event_type", "status_code", "duration_ms")


class StructuredFormatter(logging.Formatter):
    """
    Formatter que produce logs estructurados en JSON.

    Útil para parsing automático y agregación de logs en producción.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        # Añadir información de excepción si existe
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter readable para desarrollo y debugging.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)

        extras = []
        if hasattr(record, 'session_id'):
            extras.append(f"session:{record.session_id}")
        if hasattr(record, 'event_type'):
            extras.append(f"event:{record.event_type}")
        if hasattr(record, 'duration_ms'):
            extras.append(f"{record.duration_ms:.1f}ms")

        if extras:
            formatted += f" [{', '.join(extras)}]"

        return formatted


def setup_logging():
    """
    Configura sistema de logging global.

    Establece handlers, formatters y niveles apropiados según el entorno.
    """
    global _log_initialized

    if _log_initialized:
        return

    settings = get_settings()

    # Limpiar configuración existente
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.is_production:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(console_handler)

    if settings.LOG_TO_FILE:
        log_dir = Path(settings.LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / "wa_bot_service.log",
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

        # Error log separado
        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=10*1024*1024,  # 10MB
            backupCount=3,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(error_handler)

    _configure_external_loggers()

    _log_initialized = True

    logger = logging.getLogger(__name__)
    logger.info(f"📋 Logging configurado - Nivel: {settings.LOG_LEVEL}, Entorno: {settings.ENVIRONMENT}")


def _configure_external_loggers():
    """Configura loggers de bibliotecas externas para reducir ruido."""
    for logger_name in ('httpx', 'httpcore', 'asyncio', 'multipart', 'PIL'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Obtiene logger configurado para un módulo.

    Args:
        name: Nombre del módulo (típicamente __name__)

    Returns:
        Logger configurado
    """
    if not _log_initialized:
        setup_logging()

    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)

    return _loggers[name]


def log_session_event(
    logger: logging.Logger,
    session_id: str,
    event_type: str,
    message: str,
    level: int = logging.INFO
):
    """
    Log especializado para eventos del ciclo de vida de una sesión.

    Args:
        logger: Logger a usar
        session_id: ID de la sesión
        event_type: Tipo de evento (qr, open, close, reconnect, destroy...)
        message: Mensaje legible
        level: Nivel de logging
    """
    logger.log(
        level,
        message,
        extra={
            'session_id': session_id,
            'event_type': event_type
        }
    )


def log_webhook_call(
    logger: logging.Logger,
    endpoint: str,
    duration_ms: float,
    success: bool,
    session_id: Optional[str] = None,
    status_code: Optional[int] = None,
    error: Optional[str] = None
):
    """
    Log especializado para llamadas webhook al backend.

    Args:
        logger: Logger a usar
        endpoint: Path del webhook llamado
        duration_ms: Duración en milisegundos
        success: Si fue exitosa
        session_id: Sesión que originó el evento
        status_code: HTTP status devuelto (si hubo respuesta)
        error: Mensaje de error si falló
    """
    if success:
        level = logging.DEBUG
        message = f"Webhook {endpoint} entregado ({status_code})"
    else:
        level = logging.ERROR
        message = f"❌ Webhook failed {endpoint}: {error}"

    extra_data = {
        'endpoint': endpoint,
        'duration_ms': duration_ms,
    }
    if session_id:
        extra_data['session_id'] = session_id
    if status_code is not None:
        extra_data['status_code'] = status_code

    logger.log(level, message, extra=extra_data)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware para logging de requests HTTP en FastAPI.

    Registra información de requests/responses para debugging.
    """

    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request, call_next):
        start_time = datetime.now()

        self.logger.info(f"HTTP {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as e:
            duration = (datetime.now() - start_time).total_seconds() * 1000
            self.logger.error(
                f"HTTP request failed - {request.method} {request.url.path}: {e}",
                extra={'duration_ms': duration},
                exc_info=True
            )
            raise

        duration = (datetime.now() - start_time).total_seconds() * 1000
        self.logger.info(
            f"HTTP {response.status_code} {request.method} {request.url.path}",
            extra={'duration_ms': duration, 'status_code': response.status_code}
        )
        return response
