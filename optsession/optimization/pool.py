"""
Worker Pool
===========

Fixed set of ``{lock, clone}`` slots, one per concurrent worker, plus the
cancellation token shared by orchestrators and workers.

Key Features:
- One independent clone of the scored system per worker
- Slot selection by worker id, never by content
- Worker count bounded by CPU count and available memory
- SIGINT / SIGTERM mapped onto the cancellation token
"""

import os
import queue
import signal
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Iterator

import psutil

from optsession.systems.base import ScoredSystem
from optsession.utils.exceptions import ConfigurationError, SearchCancelled

logger = logging.getLogger(__name__)

# Headroom on the per-worker memory budget
MEMORY_SAFETY_FACTOR = 1.25


class CancellationToken:
    """
    Cooperative stop flag passed through orchestrators and workers.

    In-flight trials finish; no new trial starts once the token is set.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None
        self._previous_handlers: Dict[int, Any] = {}
        self._signal_depth = 0

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SearchCancelled(self.reason or "cancelled")

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, gracefully stopping search...")
        self.cancel(f"signal {signum}")

    def install_signal_handlers(self) -> bool:
        """Route SIGINT / SIGTERM to ``cancel``; only possible from the main thread"""
        if threading.current_thread() is not threading.main_thread():
            return False
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)
        return True

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    @contextmanager
    def handle_signals(self) -> Iterator["CancellationToken"]:
        """Signal routing for the duration of the block; nested blocks keep the outer handlers"""
        installed = self._signal_depth == 0 and self.install_signal_handlers()
        self._signal_depth += 1
        try:
            yield self
        finally:
            self._signal_depth -= 1
            if installed:
                self.restore_signal_handlers()


@dataclass
class WorkerSlot:
    worker_id: int
    system: ScoredSystem
    lock: threading.Lock


class WorkerPool:
    """
    Per-worker evaluation contexts.

    Built once per session: ``size`` clones of ``template``, each set up and
    guarded by its own lock.
    """

    def __init__(self, template: ScoredSystem, size: int = 1):
        if size < 1:
            raise ConfigurationError("worker pool", f"size must be >= 1, got {size}")
        self.template = template
        self.slots: List[WorkerSlot] = []
        for worker_id in range(size):
            clone = template.clone()
            clone.setup()
            self.slots.append(WorkerSlot(worker_id, clone, threading.Lock()))

        self._free: "queue.Queue[int]" = queue.Queue()
        for slot in self.slots:
            self._free.put(slot.worker_id)

        logger.info(f"WorkerPool initialized: {size} clones of {template.name}")

    @property
    def size(self) -> int:
        return len(self.slots)

    @contextmanager
    def acquire(self, worker_id: int) -> Iterator[ScoredSystem]:
        """Exclusive use of the clone in slot ``worker_id``"""
        slot = self.slots[worker_id % len(self.slots)]
        with slot.lock:
            yield slot.system

    @contextmanager
    def checkout(self) -> Iterator[int]:
        """Borrow a free worker id, blocking until one is available"""
        worker_id = self._free.get()
        try:
            yield worker_id
        finally:
            self._free.put(worker_id)


def resolve_worker_count(requested: int = 0, memory_per_worker_mb: int = 1500) -> int:
    """
    Number of workers to use.

    ``requested`` of 0 means all CPU cores; the result is further capped by the
    memory available for ``memory_per_worker_mb`` per clone.
    """
    cpu_count = os.cpu_count() or 1
    available_memory_mb = psutil.virtual_memory().available // (1024 * 1024)
    memory_limited = max(1, int(available_memory_mb // (memory_per_worker_mb * MEMORY_SAFETY_FACTOR)))

    wanted = requested if requested > 0 else cpu_count
    workers = max(1, min(wanted, memory_limited))

    if workers != wanted:
        logger.info(f"Adjusted worker count from {wanted} to {workers} "
                    f"(CPU: {cpu_count}, Memory: {memory_limited})")
    return workers
