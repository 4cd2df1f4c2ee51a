"""Durable per-session storage slots.

Each session owns one slot holding its transport credentials (opaque JSON
managed by the transport) and its conversation-store snapshot. Deleting a
slot removes both together.
"""

import json
import logging
import os
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

CREDENTIALS_FILE = "creds.json"
SNAPSHOT_FILE = "store.json"


class SessionStorage(ABC):
    """Base class for session storage backends."""

    @abstractmethod
    def list_sessions(self) -> list[str]:
        """Return the ids of every session with a storage slot."""
        ...

    @abstractmethod
    def read_credentials(self, session_id: str) -> dict | None:
        ...

    @abstractmethod
    def write_credentials(self, session_id: str, credentials: dict) -> None:
        ...

    @abstractmethod
    def read_snapshot(self, session_id: str) -> bytes | None:
        ...

    @abstractmethod
    def write_snapshot(self, session_id: str, data: bytes) -> None:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> None:
        """Remove credentials and snapshot for a session."""
        ...


class FileSessionStorage(SessionStorage):
    """Directory-per-session storage under a root path.

    Layout::

        <root>/<session_id>/creds.json
        <root>/<session_id>/store.json
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def session_path(self, session_id: str) -> Path:
        return self.root / session_id

    def list_sessions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(d.name for d in self.root.iterdir() if d.is_dir())

    def read_credentials(self, session_id: str) -> dict | None:
        path = self.session_path(session_id) / CREDENTIALS_FILE
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def write_credentials(self, session_id: str, credentials: dict) -> None:
        data = json.dumps(credentials, ensure_ascii=False).encode("utf-8")
        self._write(self.session_path(session_id) / CREDENTIALS_FILE, data)

    def read_snapshot(self, session_id: str) -> bytes | None:
        path = self.session_path(session_id) / SNAPSHOT_FILE
        if not path.is_file():
            return None
        return path.read_bytes()

    def write_snapshot(self, session_id: str, data: bytes) -> None:
        self._write(self.session_path(session_id) / SNAPSHOT_FILE, data)

    def delete(self, session_id: str) -> None:
        path = self.session_path(session_id)
        if path.exists():
            shutil.rmtree(path)
            logger.info("[%s] Storage deleted", session_id)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        # Write-then-rename so readers never see a half-written file.
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)


class MemorySessionStorage(SessionStorage):
    """Process-local storage, for embedding and tests."""

    def __init__(self) -> None:
        self._slots: dict[str, dict[str, object]] = {}
        self._lock = threading.Lock()

    def list_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._slots)

    def read_credentials(self, session_id: str) -> dict | None:
        with self._lock:
            return self._slots.get(session_id, {}).get("credentials")

    def write_credentials(self, session_id: str, credentials: dict) -> None:
        with self._lock:
            self._slots.setdefault(session_id, {})["credentials"] = dict(credentials)

    def read_snapshot(self, session_id: str) -> bytes | None:
        with self._lock:
            return self._slots.get(session_id, {}).get("snapshot")

    def write_snapshot(self, session_id: str, data: bytes) -> None:
        with self._lock:
            self._slots.setdefault(session_id, {})["snapshot"] = bytes(data)

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._slots.pop(session_id, None)
