"""
Persistent Key/Value Stores
===========================

Store contract used by the checkpoint manager plus two implementations:

- ``MemoryStore``: process-local dictionary, used by tests and dry runs
- ``DirectoryStore``: one file per key under a root folder; DataFrames are
  written as CSV through pandas, everything else as JSON

``get`` never raises for a missing key: it returns a ``GetResult`` that
distinguishes found, not found and read errors.
"""

import os
import copy
import json
import hashlib
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import quote, unquote

import pandas as pd

from optsession.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

KEY_PREFIX = "Opt"
CSV_SUFFIX = ".csv"
JSON_SUFFIX = ".json"


class GetStatus(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class GetResult:
    """Outcome of a store read"""
    status: GetStatus
    value: Any = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is GetStatus.FOUND

    @classmethod
    def hit(cls, value: Any) -> "GetResult":
        return cls(GetStatus.FOUND, value=value)

    @classmethod
    def miss(cls) -> "GetResult":
        return cls(GetStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> "GetResult":
        return cls(GetStatus.ERROR, error=error)


class KeyValueStore(ABC):
    """Minimal persistent store contract"""

    @abstractmethod
    def put(self, key: str, value: Any) -> None:
        """Write ``value`` under ``key``; raises PersistenceError on failure."""
        pass

    @abstractmethod
    def get(self, key: str) -> GetResult:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key``; returns False when it did not exist."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        pass


class MemoryStore(KeyValueStore):
    """Thread-safe in-memory store; values are copied on the way in and out"""

    def __init__(self):
        self._data = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def get(self, key: str) -> GetResult:
        with self._lock:
            if key not in self._data:
                return GetResult.miss()
            return GetResult.hit(copy.deepcopy(self._data[key]))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class DirectoryStore(KeyValueStore):
    """
    File-per-key store.

    Each ``/``-separated key segment becomes a percent-encoded folder name.
    Writes go to a temporary file first and are moved into place atomically.
    """

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)
        self._lock = threading.Lock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(str(root_dir), "open", str(e))

    def _base_path(self, key: str) -> Path:
        segments = [quote(seg, safe="") for seg in key.split("/") if seg]
        if not segments:
            raise PersistenceError(key, "resolve", "empty key")
        return self.root.joinpath(*segments)

    def put(self, key: str, value: Any) -> None:
        base = self._base_path(key)
        is_frame = isinstance(value, pd.DataFrame)
        target = base.with_name(base.name + (CSV_SUFFIX if is_frame else JSON_SUFFIX))
        stale = base.with_name(base.name + (JSON_SUFFIX if is_frame else CSV_SUFFIX))

        with self._lock:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", newline="") as handle:
                        if is_frame:
                            value.to_csv(handle, index=False)
                        else:
                            json.dump(value, handle, default=str)
                    os.replace(tmp_path, target)
                finally:
                    if os.path.exists(tmp_path):
                        os.remove(tmp_path)
                if stale.exists():
                    stale.unlink()
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceError(key, "write", str(e))

    def get(self, key: str) -> GetResult:
        base = self._base_path(key)
        csv_path = base.with_name(base.name + CSV_SUFFIX)
        json_path = base.with_name(base.name + JSON_SUFFIX)

        with self._lock:
            try:
                if csv_path.exists():
                    try:
                        return GetResult.hit(pd.read_csv(csv_path))
                    except pd.errors.EmptyDataError:
                        return GetResult.hit(pd.DataFrame())
                if json_path.exists():
                    with open(json_path, "r") as handle:
                        return GetResult.hit(json.load(handle))
                return GetResult.miss()
            except (OSError, ValueError, pd.errors.ParserError) as e:
                logger.error(f"Failed to read '{key}': {e}")
                return GetResult.failed(str(e))

    def delete(self, key: str) -> bool:
        base = self._base_path(key)
        removed = False
        with self._lock:
            for suffix in (CSV_SUFFIX, JSON_SUFFIX):
                path = base.with_name(base.name + suffix)
                if path.exists():
                    try:
                        path.unlink()
                    except OSError as e:
                        raise PersistenceError(key, "delete", str(e))
                    removed = True
        return removed

    def keys(self, prefix: str = "") -> List[str]:
        found = []
        with self._lock:
            for path in self.root.rglob("*"):
                if not path.is_file() or path.suffix not in (CSV_SUFFIX, JSON_SUFFIX):
                    continue
                rel = path.relative_to(self.root).with_suffix("")
                key = "/".join(unquote(part) for part in rel.parts)
                if key.startswith(prefix):
                    found.append(key)
        return sorted(set(found))


def create_store(backend: str, root_dir: Optional[str] = None) -> KeyValueStore:
    """Store factory for the configured backend name"""
    if backend == "memory":
        return MemoryStore()
    if backend == "directory":
        if not root_dir:
            raise PersistenceError("<root>", "open", "directory backend needs a root directory")
        return DirectoryStore(root_dir)
    raise PersistenceError("<root>", "open", f"unknown store backend {backend!r}")


def identity_hash(identity, length: int = 4) -> str:
    """Short deterministic hash of the parameter space and attributes"""
    payload = json.dumps(
        {'params': identity.param_space, 'attrs': identity.attrs.to_dict()},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:length]


def session_key(identity) -> str:
    """
    Storage key of a session.

    ``Opt/{subject}/{yymmdd(start)}-{yymmdd(stop)}:{param initials}{hash}``
    """
    tr = identity.time_range
    initials = "".join(name[0] for name in identity.param_space if name)
    return (f"{KEY_PREFIX}/{identity.subject}/"
            f"{tr.start.strftime('%y%m%d')}-{tr.stop.strftime('%y%m%d')}:"
            f"{initials}{identity_hash(identity)}")
