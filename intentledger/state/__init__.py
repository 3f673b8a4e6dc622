"""
State Store for intentledger: versioned committed state plus staged views.
"""
from .backends import StorageBackend, MemoryBackend, JsonFileBackend
from .store import StateStore, StagedView, StateDiff, DiffEntry
from . import keys

__all__ = [
    'StorageBackend',
    'MemoryBackend',
    'JsonFileBackend',
    'StateStore',
    'StagedView',
    'StateDiff',
    'DiffEntry',
    'keys',
]
