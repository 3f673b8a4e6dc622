"""
Versioned State Store with staged views.

The committed state lives in a StorageBackend. Every commit bumps an
integer version and records the values it overwrote in a bounded undo log,
so a StagedView keeps reading the exact snapshot it was staged on while
other commits land. Commit is the single serialization point.
"""
import itertools
import logging
import threading
from collections import OrderedDict
from typing import Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Tuple, Union

from ..exceptions import (
    InvalidViewError, SnapshotExpiredError, StaleViewError,
    StoreCorruptionError, StoreHaltedError
)
from .backends import MemoryBackend, StorageBackend
from .keys import owner_of

logger = logging.getLogger(__name__)


class DiffEntry(NamedTuple):
    old: Optional[bytes]
    new: Optional[bytes]


class StateDiff(Mapping):
    """
    Ordered, read-only mapping of key -> DiffEntry(old, new).

    ``None`` stands for an absent key on either side.
    """

    def __init__(self, entries: Iterable[Tuple[str, DiffEntry]] = ()):
        self._entries: "OrderedDict[str, DiffEntry]" = OrderedDict(entries)

    def __getitem__(self, key: str) -> DiffEntry:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"StateDiff({list(self._entries)})"

    def touched_accounts(self) -> List[str]:
        """Addresses owning at least one changed key, in first-change order."""
        seen: Dict[str, None] = {}
        for key in self._entries:
            owner = owner_of(key)
            if owner is not None:
                seen.setdefault(owner, None)
        return list(seen)

    def for_account(self, address: str) -> "StateDiff":
        return StateDiff((k, v) for k, v in self._entries.items() if owner_of(k) == address)


class StagedView:
    """
    A read/write overlay on one committed snapshot.

    Reads see pending writes layered over the snapshot. Nothing reaches the
    committed store until ``StateStore.commit`` is called with this view.
    """

    def __init__(self, store: "StateStore", view_id: int, base_version: int):
        self._store = store
        self.view_id = view_id
        self.base_version = base_version
        self._writes: "OrderedDict[str, Optional[bytes]]" = OrderedDict()
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise InvalidViewError(f"Staged view {self.view_id} is closed")

    def read(self, key: str) -> Optional[bytes]:
        """Read through pending writes, then the base snapshot."""
        self._check_open()
        if key in self._writes:
            return self._writes[key]
        return self._store._read_at(key, self.base_version)

    def pre_read(self, key: str) -> Optional[bytes]:
        """Read the base snapshot, ignoring pending writes."""
        self._check_open()
        return self._store._read_at(key, self.base_version)

    def has(self, key: str) -> bool:
        return self.read(key) is not None

    def write(self, key: str, value: bytes) -> None:
        self._check_open()
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError(f"State values must be bytes, got {type(value).__name__}")
        self._writes[key] = bytes(value)

    def delete(self, key: str) -> None:
        self._check_open()
        self._writes[key] = None

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        """Iterate the post-write (key, value) pairs under ``prefix``, sorted by key."""
        self._check_open()
        merged = dict(self._store._iter_prefix_at(prefix, self.base_version))
        for key, value in self._writes.items():
            if key.startswith(prefix):
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
        return iter(sorted(merged.items()))

    def pending_writes(self) -> Dict[str, Optional[bytes]]:
        return dict(self._writes)

    def diff(self) -> StateDiff:
        """Build the diff of pending writes against the base snapshot; no-op writes are dropped."""
        self._check_open()
        entries = []
        for key, new in self._writes.items():
            old = self._store._read_at(key, self.base_version)
            if old != new:
                entries.append((key, DiffEntry(old, new)))
        return StateDiff(entries)

    def __repr__(self) -> str:
        return f"StagedView(id={self.view_id}, base={self.base_version}, writes={len(self._writes)})"


class StateStore:
    """
    Versioned key/value store. Many staged views may coexist; only one
    commit runs at a time and it must be based on the current version.
    """

    def __init__(self, backend: Optional[StorageBackend] = None, retention: int = 64):
        self._backend = backend or MemoryBackend()
        self.retention = retention
        self._version = 0
        # version -> values overwritten by the commit that produced version + 1
        self._undo: Dict[int, Dict[str, Optional[bytes]]] = {}
        self._state_lock = threading.RLock()
        self._commit_lock = threading.Lock()
        self._views: Dict[int, StagedView] = {}
        self._view_ids = itertools.count(1)
        self._halted = False

    @property
    def version(self) -> int:
        with self._state_lock:
            return self._version

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    def active_views(self) -> int:
        with self._state_lock:
            return len(self._views)

    def read(self, key: str) -> Optional[bytes]:
        """Read a committed value; None when absent."""
        with self._state_lock:
            return self._backend.get(key)

    def iter_prefix(self, prefix: str) -> Iterator[Tuple[str, bytes]]:
        with self._state_lock:
            return self._backend.iter_prefix(prefix)

    def _read_at(self, key: str, version: int) -> Optional[bytes]:
        with self._state_lock:
            for v in self._versions_since(version):
                undo = self._undo[v]
                if key in undo:
                    return undo[key]
            return self._backend.get(key)

    def _iter_prefix_at(self, prefix: str, version: int) -> Iterator[Tuple[str, bytes]]:
        with self._state_lock:
            merged = dict(self._backend.iter_prefix(prefix))
            restored: Dict[str, Optional[bytes]] = {}
            for v in self._versions_since(version):
                for key, old in self._undo[v].items():
                    if key.startswith(prefix) and key not in restored:
                        restored[key] = old
            for key, old in restored.items():
                if old is None:
                    merged.pop(key, None)
                else:
                    merged[key] = old
        return iter(sorted(merged.items()))

    def _versions_since(self, version: int) -> range:
        if version > self._version:
            raise InvalidViewError(f"Snapshot {version} is in the future (current {self._version})")
        if version < self._version and (version not in self._undo):
            raise SnapshotExpiredError(
                f"Snapshot {version} fell out of the retention window (current {self._version})"
            )
        return range(version, self._version)

    def stage(self) -> StagedView:
        """Open an empty staged view over the current committed version."""
        with self._state_lock:
            view = StagedView(self, next(self._view_ids), self._version)
            self._views[view.view_id] = view
        logger.debug("Opened staged view %d at version %d", view.view_id, view.base_version)
        return view

    def speculative_write(
        self, writes: Union[Mapping[str, Optional[bytes]], Iterable[Tuple[str, Optional[bytes]]]]
    ) -> StagedView:
        """Open a staged view with ``writes`` already applied (None deletes)."""
        items = writes.items() if isinstance(writes, Mapping) else writes
        view = self.stage()
        for key, value in items:
            if value is None:
                view.delete(key)
            else:
                view.write(key, value)
        return view

    def _claim(self, view: StagedView) -> None:
        if view.closed or self._views.get(view.view_id) is not view:
            raise InvalidViewError(f"Staged view {view.view_id} is not open on this store")

    def commit(self, view: StagedView) -> int:
        """
        Atomically apply a staged view.

        Returns:
            The new committed version

        Raises:
            StaleViewError: If another commit landed after the view was staged
            StoreHaltedError: If an earlier commit corrupted the store
            StoreCorruptionError: If the backend failed to apply the batch
        """
        with self._commit_lock:
            if self._halted:
                raise StoreHaltedError("State store is halted pending operator intervention")
            with self._state_lock:
                self._claim(view)
                if view.base_version != self._version:
                    raise StaleViewError(
                        f"View {view.view_id} staged at version {view.base_version}, "
                        f"store is at {self._version}"
                    )
                writes = view.pending_writes()
                undo = {key: self._backend.get(key) for key in writes}
                try:
                    self._backend.batch_commit(writes)
                except Exception as e:
                    self._halted = True
                    logger.error("Atomic commit of view %d failed, halting store: %s", view.view_id, e)
                    raise StoreCorruptionError(f"Batch commit failed: {e}") from e
                self._undo[self._version] = undo
                self._version += 1
                self._undo.pop(self._version - 1 - self.retention, None)
                self._close(view)
                version = self._version
        logger.debug("Committed view %d (%d writes) -> version %d", view.view_id, len(writes), version)
        return version

    def discard(self, view: StagedView) -> None:
        """Drop a staged view without touching committed state. Idempotent."""
        with self._state_lock:
            if self._views.get(view.view_id) is view:
                self._close(view)
                logger.debug("Discarded view %d", view.view_id)

    def _close(self, view: StagedView) -> None:
        view.closed = True
        self._views.pop(view.view_id, None)

    def resume(self) -> None:
        """Clear the halted flag after an operator has repaired the backend."""
        with self._commit_lock:
            if self._halted:
                logger.warning("Resuming halted state store at version %d", self._version)
            self._halted = False
