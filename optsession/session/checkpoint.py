"""
Checkpoint / Resume Manager
===========================

Persists session rows to a key/value store and restores them on resume.

Layout under the session key:
    {key}/meta     identity metadata (JSON)
    {key}/results  results table (DataFrame)

Row ranges are half-open ``[from_row, to_row)`` and written at their
positions, so re-saving a range overwrites instead of duplicating.
"""

import time
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

import pandas as pd
import psutil

from optsession.utils.exceptions import PersistenceError, SessionMismatchError
from .model import Session, SessionIdentity
from .store import KeyValueStore, GetStatus, KEY_PREFIX

logger = logging.getLogger(__name__)

META_SUFFIX = "meta"
RESULTS_SUFFIX = "results"


class ResumeStatus(Enum):
    RESUMED = "resumed"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"


@dataclass
class ResumeResult:
    status: ResumeStatus
    rows: int = 0
    error: Optional[SessionMismatchError] = None

    @property
    def resumed(self) -> bool:
        return self.status is ResumeStatus.RESUMED


def meta_key(key: str) -> str:
    return f"{key}/{META_SUFFIX}"


def results_key(key: str) -> str:
    return f"{key}/{RESULTS_SUFFIX}"


class CheckpointManager:
    """
    Saves, loads and resumes sessions.

    Args:
        store: Backing key/value store
        save_interval: Minimum seconds between periodic saves (None disables them)
        memory_limit_mb: Process RSS above which a warning is logged at checkpoints
    """

    def __init__(self, store: KeyValueStore,
                 save_interval: Optional[float] = None,
                 memory_limit_mb: Optional[int] = None):
        self.store = store
        self.save_interval = save_interval
        self.memory_limit_mb = memory_limit_mb
        self._save_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    def save(self, session: Session, from_row: int = 0, to_row: Optional[int] = None,
             truncate: bool = False) -> int:
        """
        Persist rows ``[from_row, to_row)`` of ``session``.

        Identity metadata is written on the first save (``from_row == 0``) or
        when the store has none. With ``truncate`` any stored rows past
        ``to_row`` are dropped. Returns the number of rows written.
        """
        key = session.key
        rows = session.rows(from_row, to_row)
        to_row = from_row + len(rows)

        meta = self.store.get(meta_key(key))
        if meta.status is GetStatus.ERROR:
            raise PersistenceError(meta_key(key), "read", meta.error)
        if from_row == 0 or not meta.found:
            self.store.put(meta_key(key), {
                'identity': session.identity.to_dict(),
                'columns': session.columns,
                'updated_at': datetime.now().isoformat(),
            })

        stored = self.store.get(results_key(key))
        if stored.status is GetStatus.ERROR:
            raise PersistenceError(results_key(key), "read", stored.error)
        existing = stored.value if stored.found else pd.DataFrame(columns=session.columns)
        existing = existing.reindex(columns=session.columns)

        if len(existing) < from_row:
            raise PersistenceError(
                results_key(key), "write",
                f"cannot write rows from {from_row}: only {len(existing)} rows stored"
            )

        chunk = pd.DataFrame(rows, columns=session.columns)
        parts = [existing.iloc[:from_row], chunk]
        if not truncate:
            parts.append(existing.iloc[to_row:])
        frames = [p for p in parts if len(p)]
        merged = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=session.columns)
        self.store.put(results_key(key), merged)

        if truncate:
            session.saved_rows = to_row
        else:
            session.saved_rows = max(session.saved_rows, to_row)
        session.last_save_time = time.monotonic()
        logger.debug(f"Saved rows [{from_row}, {to_row}) of {key} ({len(merged)} stored)")
        return len(rows)

    def maybe_save(self, session: Session) -> bool:
        """
        Time-gated flush of rows added since the last save.

        Returns False when saving is disabled, the interval has not elapsed or
        another thread is already saving.
        """
        if self.save_interval is None:
            return False
        now = time.monotonic()
        if session.last_save_time is not None and now - session.last_save_time < self.save_interval:
            return False
        if not self._save_lock.acquire(blocking=False):
            return False
        try:
            count = session.row_count()
            if count <= session.saved_rows and session.last_save_time is not None:
                session.last_save_time = now
                return False
            self.save(session, session.saved_rows, count)
            self._log_resources(session)
            return True
        finally:
            self._save_lock.release()

    def final_save(self, session: Session) -> int:
        """Unconditional flush of unsaved rows"""
        with self._save_lock:
            count = session.row_count()
            written = self.save(session, session.saved_rows, count)
        logger.info(f"Final save of {session.key}: {count} rows stored")
        self._log_resources(session)
        return written

    def rewrite(self, session: Session) -> int:
        """Replace the stored table with the in-memory rows"""
        with self._save_lock:
            session.saved_rows = 0
            return self.save(session, 0, None, truncate=True)

    def _log_resources(self, session: Session) -> None:
        memory_mb = int(psutil.Process().memory_info().rss / (1024 * 1024))
        logger.debug(f"Checkpoint {session.key}: rows={session.saved_rows}, memory={memory_mb}MB")
        if self.memory_limit_mb and memory_mb > self.memory_limit_mb:
            logger.warning(f"High memory usage ({memory_mb}MB) above limit {self.memory_limit_mb}MB")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, key: str) -> Optional[Tuple[SessionIdentity, pd.DataFrame]]:
        """Stored identity and rows of ``key``, None when the session does not exist"""
        meta = self.store.get(meta_key(key))
        if meta.status is GetStatus.ERROR:
            raise PersistenceError(meta_key(key), "read", meta.error)
        if not meta.found:
            return None

        identity = SessionIdentity.from_dict(meta.value['identity'])
        columns = meta.value.get('columns') or []
        stored = self.store.get(results_key(key))
        if stored.status is GetStatus.ERROR:
            raise PersistenceError(results_key(key), "read", stored.error)
        results = stored.value if stored.found else pd.DataFrame(columns=columns)
        if columns and len(results.columns) == 0:
            results = pd.DataFrame(columns=columns)
        return identity, restore_param_values(results, identity.param_space)

    def resume(self, session: Session, key: Optional[str] = None) -> ResumeResult:
        """
        Replay persisted rows into ``session``.

        The in-memory session is only touched when the stored identity matches
        field by field.
        """
        key = key or session.key
        loaded = self.load(key)
        if loaded is None:
            logger.info(f"No stored session at {key}")
            return ResumeResult(ResumeStatus.NOT_FOUND)

        identity, results = loaded
        mismatch = session.identity.compare(identity, key=key)
        if mismatch is not None:
            logger.warning(f"Resume of {key} refused: {mismatch.message}")
            return ResumeResult(ResumeStatus.MISMATCH, error=mismatch)

        missing = [c for c in session.columns if c not in results.columns]
        if missing and len(results):
            raise PersistenceError(results_key(key), "read", f"stored rows lack columns {missing}")

        records = results.reindex(columns=session.columns).to_dict("records") if len(results) else []
        count = session.extend_rows(records)
        for row in records:
            session.best.offer(row.get("obj"), session.param_tuple(row))
        session.saved_rows = count
        session.last_save_time = time.monotonic()

        logger.info(f"Resumed {len(records)} rows from {key}")
        return ResumeResult(ResumeStatus.RESUMED, rows=len(records))

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, subject: Optional[str] = None) -> List[str]:
        """Keys of stored sessions, optionally for one subject"""
        prefix = f"{KEY_PREFIX}/{subject}/" if subject else f"{KEY_PREFIX}/"
        suffix = f"/{META_SUFFIX}"
        return sorted(k[:-len(suffix)] for k in self.store.keys(prefix) if k.endswith(suffix))

    def delete_sessions(self, subject: Optional[str] = None,
                        keep: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Delete stored sessions.

        ``keep`` maps identity fields (``subject``, ``splits``, ``seed``,
        ``offset``, ``params``) to values; sessions matching all of them are
        kept. Returns the deleted keys.
        """
        deleted = []
        for key in self.list_sessions(subject):
            if keep:
                loaded = self.load(key)
                if loaded is not None and _matches(loaded[0], keep):
                    continue
            self.store.delete(results_key(key))
            self.store.delete(meta_key(key))
            deleted.append(key)
        if deleted:
            logger.info(f"Deleted {len(deleted)} stored sessions")
        return deleted


def _matches(identity: SessionIdentity, keep: Dict[str, Any]) -> bool:
    attrs = identity.attrs.to_dict()
    for field_name, expected in keep.items():
        if field_name == "subject":
            actual = identity.subject
        elif field_name == "params":
            actual = list(identity.param_space)
            expected = list(expected)
        elif field_name in attrs:
            actual = attrs[field_name]
        else:
            return False
        if actual != expected:
            return False
    return True


def restore_param_values(results: pd.DataFrame, param_space: Dict[str, List[Any]]) -> pd.DataFrame:
    """
    Map stored parameter cells back onto their domain values.

    Stores that keep tables as text re-infer column types on read, so a
    domain like ``["2", 3]`` comes back as ``[2, 3]``. Cells are matched
    by value first, then by their text form; unmatched cells are kept.
    """
    if not len(results):
        return results
    results = results.copy()
    for name, domain in param_space.items():
        if name not in results.columns:
            continue
        by_value = {}
        by_text = {}
        for value in domain:
            by_text.setdefault(str(value), value)
            try:
                by_value.setdefault(value, value)
            except TypeError:
                continue

        def restore(cell: Any) -> Any:
            try:
                return by_value[cell]
            except (KeyError, TypeError):
                return by_text.get(str(cell), cell)

        results[name] = results[name].map(restore)
    return results
