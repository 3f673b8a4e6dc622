"""
Persistent key/value backends for the State Store.

The State Store only needs get, prefix iteration and an atomic batch
commit. Two implementations are provided: an in-memory map and a JSON file
guarded by an inter-process lock.
"""
import json
import logging
import os
import stat
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional, Tuple

import portalocker

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """
    Abstract base class for committed-state storage.

    Implementations must apply ``batch_commit`` atomically: either every
    write lands or none does.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """
        Read a committed value.

        Returns:
            The stored bytes, or None if the key is absent
        """
        pass

    @abstractmethod
    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        """Iterate committed (key, value) pairs whose key starts with ``prefix``, sorted by key."""
        pass

    @abstractmethod
    def batch_commit(self, writes: Mapping[str, Optional[bytes]]) -> None:
        """
        Apply writes atomically. A None value deletes the key.

        Raises:
            OSError or any backend error if the batch could not be applied
        """
        pass

    def close(self) -> None:
        """Release resources held by the backend."""
        pass


class MemoryBackend(StorageBackend):
    """Dictionary-backed storage, used for tests and single-process nodes."""

    def __init__(self, initial: Optional[Mapping[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        with self._lock:
            items = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        return iter(items)

    def batch_commit(self, writes: Mapping[str, Optional[bytes]]) -> None:
        with self._lock:
            staged = dict(self._data)
            for key, value in writes.items():
                if value is None:
                    staged.pop(key, None)
                else:
                    staged[key] = bytes(value)
            self._data = staged

    def snapshot(self) -> Dict[str, bytes]:
        """Return a copy of the full committed map."""
        with self._lock:
            return dict(self._data)


class JsonFileBackend(StorageBackend):
    """
    Storage persisted to a single JSON file.

    Reads are served from memory; every batch is written to a temporary file
    and atomically renamed over the store file while holding a portalocker
    lock, so concurrent processes never observe a half-written store.
    """

    def __init__(self, path: str, lock_timeout: int = 10):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._ensure_dir()
        self._data: Dict[str, bytes] = self._load()
        logger.debug("Opened file backend at %s with %d keys", self.path, len(self._data))

    def _ensure_dir(self) -> None:
        directory = self.path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            with portalocker.Lock(self._get_lock_path(), timeout=self.lock_timeout):
                if not self.path.exists():
                    self._write_file({})
        if os.name == 'posix':
            os.chmod(self.path, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def _get_lock_path(self) -> str:
        return str(self.path) + '.lock'

    def _load(self) -> Dict[str, bytes]:
        with portalocker.Lock(self._get_lock_path(), timeout=self.lock_timeout):
            try:
                with open(self.path, 'r') as f:
                    raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Corrupt state file {self.path}: {e}") from e
        return {key: bytes.fromhex(value) for key, value in raw.get("state", {}).items()}

    def _write_file(self, data: Mapping[str, bytes]) -> None:
        payload = {"state": {key: value.hex() for key, value in sorted(data.items())}}
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        with self._lock:
            items = sorted((k, v) for k, v in self._data.items() if k.startswith(prefix))
        return iter(items)

    def batch_commit(self, writes: Mapping[str, Optional[bytes]]) -> None:
        with self._lock:
            staged = dict(self._data)
            for key, value in writes.items():
                if value is None:
                    staged.pop(key, None)
                else:
                    staged[key] = bytes(value)
            with portalocker.Lock(self._get_lock_path(), timeout=self.lock_timeout):
                self._write_file(staged)
            # Only swap the in-memory view once the file is durable
            self._data = staged
