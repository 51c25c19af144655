"""
Credential Store - credenciales persistentes por sesión.

Cada sesión tiene su directorio ``<SESSIONS_PATH>/<sessionId>/``. El
servicio escribe ``creds.json`` en cada rotación de credenciales; el resto
de archivos (claves de señal) los gestiona la librería cliente. El
directorio es la identidad durable de la sesión entre reinicios.
"""

import json
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.logger import get_logger

logger = get_logger(__name__)

CREDS_FILE = "creds.json"

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@+-]{0,127}$")


class CredentialStoreError(Exception):
    """Error leyendo o escribiendo credenciales."""


class InvalidSessionIdError(CredentialStoreError):
    """sessionId vacío o no utilizable como nombre de directorio."""

    def __init__(self, session_id: str):
        super().__init__(f"Invalid session ID: {session_id!r}")
        self.session_id = session_id


@dataclass
class CredentialRecord:
    """Credenciales cargadas para una sesión."""
    session_id: str
    path: Path
    creds: Optional[Dict[str, Any]] = None

    @property
    def has_credentials(self) -> bool:
        """False para una sesión que nunca fue emparejada."""
        return bool(self.creds)


def validate_session_id(session_id: str) -> str:
    """Valida que el sessionId sea seguro como nombre de directorio."""
    if not session_id or not _SESSION_ID_PATTERN.match(session_id) or ".." in session_id:
        raise InvalidSessionIdError(session_id)
    return session_id


class CredentialStore:
    """
    Almacén de credenciales en disco, un directorio por sesión.

    Todas las operaciones son síncronas; el gestor las delega a un thread
    cuando no necesita garantizar orden respecto al cliente.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, session_id: str) -> Path:
        return self.root / validate_session_id(session_id)

    def load(self, session_id: str) -> CredentialRecord:
        """
        Carga (o crea vacío) el registro de credenciales de una sesión.

        Raises:
            InvalidSessionIdError: Si el sessionId no es válido
            CredentialStoreError: Si ``creds.json`` existe pero está corrupto
        """
        path = self.path_for(session_id)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CredentialStoreError(f"Cannot create credential directory {path}: {e}") from e

        creds_path = path / CREDS_FILE
        if not creds_path.exists():
            logger.info(f"🆕 Sin credenciales previas para {session_id}, se requerirá QR")
            return CredentialRecord(session_id=session_id, path=path)

        try:
            with open(creds_path, "r", encoding="utf-8") as f:
                creds = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialStoreError(f"Corrupted credentials for {session_id}: {e}") from e

        if not isinstance(creds, dict):
            raise CredentialStoreError(f"Corrupted credentials for {session_id}: not an object")

        return CredentialRecord(session_id=session_id, path=path, creds=creds)

    def save(self, session_id: str, creds: Dict[str, Any]) -> None:
        """
        Persiste credenciales rotadas con escritura atómica.

        Un crash entre rotación y escritura pierde la última rotación.
        """
        path = self.path_for(session_id)
        path.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=".creds-", suffix=".tmp", dir=path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(creds, f)
            os.replace(tmp_name, path / CREDS_FILE)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, session_id: str) -> bool:
        """
        Elimina recursivamente el directorio de la sesión.

        Returns:
            True si existía y se eliminó, False si no existía
        """
        path = self.path_for(session_id)
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True

    def list_session_ids(self) -> List[str]:
        """Subdirectorios inmediatos del root, en orden estable."""
        if not self.root.exists():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())
