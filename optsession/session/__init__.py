"""
Optimization sessions: data model, key/value stores and checkpointing.
"""

from .store import (
    GetStatus,
    GetResult,
    KeyValueStore,
    MemoryStore,
    DirectoryStore,
    create_store,
    session_key,
)
from .model import META_COLUMNS, METRIC_COLUMNS, SessionIdentity, BestCell, Session
from .checkpoint import CheckpointManager, ResumeStatus, ResumeResult

__all__ = [
    'GetStatus',
    'GetResult',
    'KeyValueStore',
    'MemoryStore',
    'DirectoryStore',
    'create_store',
    'session_key',
    'META_COLUMNS',
    'METRIC_COLUMNS',
    'SessionIdentity',
    'BestCell',
    'Session',
    'CheckpointManager',
    'ResumeStatus',
    'ResumeResult',
]
