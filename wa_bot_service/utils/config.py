"""
Configuración centralizada del servicio usando Pydantic Settings.

Maneja variables de entorno, validación y configuración por defecto
para el gestor de sesiones WhatsApp y el bridge Baileys.
"""

from typing import List, Dict, Any, Optional
from pathlib import Path
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configuración centralizada del servicio.

    Carga automáticamente desde variables de entorno y .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ================================
    # FastAPI Configuration
    # ================================
    PORT: int = Field(default=3001, description="Puerto del servidor")
    HOST: str = Field(default="0.0.0.0", description="Host del servidor")
    CORS_ORIGINS: str = Field(default="*", description="Orígenes CORS permitidos")

    # ================================
    # Backend (webhooks)
    # ================================
    BACKEND_URL: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices("BACKEND_URL", "LARAVEL_URL"),
        description="URL base del backend que recibe los webhooks"
    )
    WEBHOOK_TIMEOUT: float = Field(default=5.0, description="Timeout de webhooks en segundos")

    # ================================
    # WhatsApp Sessions
    # ================================
    SESSIONS_PATH: str = Field(default="./sessions", description="Directorio raíz de credenciales")
    RECONNECT_DELAY: float = Field(default=3.0, description="Delay fijo antes de reconectar")
    HEARTBEAT_INTERVAL: float = Field(default=30.0, description="Intervalo del heartbeat por sesión")

    # ================================
    # Baileys Bridge (Node.js)
    # ================================
    BRIDGE_PATH: str = Field(default="./bridge", description="Directorio del script bridge")
    NODE_BINARY: str = Field(default="node", description="Ejecutable de Node.js")
    NPM_BINARY: str = Field(default="npm", description="Ejecutable de npm")
    WA_VERSION: Optional[str] = Field(default=None, description="Versión del protocolo (None = última)")
    BRIDGE_LOG_LEVEL: str = Field(default="silent", description="Nivel pino del bridge")
    BRIDGE_START_TIMEOUT: float = Field(default=60.0, description="Timeout de arranque del bridge")
    COMMAND_TIMEOUT: float = Field(default=15.0, description="Timeout de comandos al bridge")

    # ================================
    # Environment Configuration
    # ================================
    ENVIRONMENT: str = Field(default="development", description="Entorno: development/staging/production/testing")
    LOG_LEVEL: str = Field(default="INFO", description="Nivel de logging")
    LOG_TO_FILE: bool = Field(default=True, description="Escribir logs rotados a disco")
    LOG_DIR: str = Field(default="logs", description="Directorio de logs")
    DEBUG: bool = Field(default=False, description="Modo debug")

    @field_validator('SESSIONS_PATH')
    @classmethod
    def validate_sessions_path(cls, v):
        """Valida y crea directorio de sesiones si no existe."""
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return str(path.absolute())

    @field_validator('BRIDGE_PATH')
    @classmethod
    def validate_bridge_path(cls, v):
        return str(Path(v).absolute())

    @field_validator('BACKEND_URL')
    @classmethod
    def validate_backend_url(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError('BACKEND_URL debe empezar con http:// o https://')
        return v.rstrip("/")

    @field_validator('ENVIRONMENT')
    @classmethod
    def validate_environment(cls, v):
        """Valida que el environment sea válido."""
        valid_envs = ['development', 'staging', 'production', 'testing']
        if v not in valid_envs:
            raise ValueError(f'Environment debe ser uno de: {valid_envs}')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        """Valida nivel de logging."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'Log level debe ser uno de: {valid_levels}')
        return v.upper()

    # ================================
    # Computed Properties
    # ================================

    @property
    def is_production(self) -> bool:
        """Verifica si está en producción."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Convierte CORS origins de string a lista."""
        if self.CORS_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def bridge_config(self) -> Dict[str, Any]:
        """Configuración para el factory de clientes Baileys."""
        return {
            "bridge_path": self.BRIDGE_PATH,
            "node_binary": self.NODE_BINARY,
            "npm_binary": self.NPM_BINARY,
            "version": self.WA_VERSION,
            "log_level": self.BRIDGE_LOG_LEVEL,
            "start_timeout": self.BRIDGE_START_TIMEOUT,
            "command_timeout": self.COMMAND_TIMEOUT,
        }


# Instancia global de configuración
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Obtiene instancia singleton de configuración.

    Returns:
        Settings: Configuración del sistema
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# Para testing - permite inyectar configuración mock
def set_settings_for_testing(test_settings: Settings):
    """
    Establece configuración para testing.

    Args:
        test_settings: Configuración de prueba
    """
    global _settings
    _settings = test_settings
