"""Key-value persistence collaborators."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from taskscope.errors import StorageFailure

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "aiTrialToken"


class KeyValueStore(Protocol):
    """Minimal get/set store. Implementations raise StorageFailure on error."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryStore:
    """In-process dict-backed store."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value


class JsonFileStore:
    """
    Store backed by a single JSON document on disk.

    Every set() rewrites the document atomically, so a failed write leaves
    the previous content in place.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StorageFailure(f"Cannot read {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageFailure(f"{self._path} does not contain a JSON object")
        return data

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._write(data)

    def _write(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
            )
        except OSError as e:
            raise StorageFailure(f"Cannot write {self._path}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageFailure(f"Cannot write {self._path}: {e}") from e
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass


def load_credential(store: KeyValueStore, env_var: str | None = None) -> str | None:
    """
    Return the remote API credential.

    An environment variable wins over the token stored under CREDENTIAL_KEY.
    The value is passed through untouched.
    """
    if env_var:
        value = os.environ.get(env_var)
        if value:
            return value
    try:
        return store.get(CREDENTIAL_KEY) or None
    except StorageFailure as e:
        logger.error("Error reading credential: %s", e)
        return None


def store_credential(store: KeyValueStore, token: str) -> bool:
    """Persist a separately-issued credential token. Returns False on failure."""
    try:
        store.set(CREDENTIAL_KEY, token)
    except StorageFailure as e:
        logger.error("Error setting credential token: %s", e)
        return False
    logger.info("Credential token set")
    return True
