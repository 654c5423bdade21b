"""
Centralized Logging Setup
=========================

Logging configuration for the optimization engine.

Modules log through ``logging.getLogger(__name__)``; this module only wires
handlers onto the package logger and offers a thread-safe progress tracker
for long grid runs.

Key Features:
- Console output with a compact format
- Rotating log files with a detailed format
- Separate debug log for troubleshooting worker behaviour
- Thread-safe progress tracking with rate and ETA
"""

import logging
import logging.handlers
import sys
import time
import threading
from pathlib import Path
from typing import Optional, Dict, Any

PACKAGE_LOGGER = "optsession"

DETAILED_FORMAT = '%(asctime)s | %(name)s | %(levelname)s | %(message)s'
SIMPLE_FORMAT = '%(levelname)s: %(message)s'

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL
}

_setup_lock = threading.Lock()


def setup_logging(log_dir: str = "logs",
                  level: str = "INFO",
                  console: bool = True,
                  files: bool = True,
                  max_file_size: int = 20 * 1024 * 1024,
                  backup_count: int = 5) -> Dict[str, Any]:
    """
    Configure handlers on the package logger

    Safe to call more than once: existing handlers are replaced.

    Args:
        log_dir: Directory for log files
        level: Logging level name
        console: Enable console output
        files: Enable rotating file output
        max_file_size: Max size before rotation (bytes)
        backup_count: Number of rotated files to keep

    Returns:
        Dictionary with setup results
    """
    log_level = LEVEL_MAP.get(level.upper(), logging.INFO)

    with _setup_lock:
        try:
            package_logger = logging.getLogger(PACKAGE_LOGGER)
            package_logger.setLevel(logging.DEBUG if files else log_level)
            for handler in list(package_logger.handlers):
                package_logger.removeHandler(handler)
                handler.close()

            if console:
                console_handler = logging.StreamHandler(sys.stdout)
                console_handler.setLevel(log_level)
                console_handler.setFormatter(logging.Formatter(SIMPLE_FORMAT))
                package_logger.addHandler(console_handler)

            if files:
                log_path = Path(log_dir)
                log_path.mkdir(parents=True, exist_ok=True)
                detailed = logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

                file_handler = logging.handlers.RotatingFileHandler(
                    log_path / f"{PACKAGE_LOGGER}.log",
                    maxBytes=max_file_size,
                    backupCount=backup_count
                )
                file_handler.setLevel(log_level)
                file_handler.setFormatter(detailed)
                package_logger.addHandler(file_handler)

                debug_handler = logging.handlers.RotatingFileHandler(
                    log_path / f"{PACKAGE_LOGGER}_debug.log",
                    maxBytes=max_file_size,
                    backupCount=2
                )
                debug_handler.setLevel(logging.DEBUG)
                debug_handler.setFormatter(detailed)
                package_logger.addHandler(debug_handler)

            package_logger.info(f"Logging initialized - Level: {level.upper()}, Directory: {log_dir if files else 'disabled'}")

            return {
                'success': True,
                'log_dir': log_dir,
                'level': level.upper(),
                'console_output': console,
                'file_output': files
            }

        except OSError as e:
            return {
                'success': False,
                'error': str(e)
            }


class ProgressTracker:
    """
    Progress tracker for long-running searches

    Logs roughly 50 times over the whole run with completion rate and ETA.
    ``update`` is safe to call from worker threads.
    """

    def __init__(self, total: int, name: str = "Progress",
                 logger: Optional[logging.Logger] = None,
                 completed: int = 0):
        self.total = total
        self.name = name
        self.logger = logger or logging.getLogger(f"{PACKAGE_LOGGER}.progress")

        self.current = completed
        self.start_time = time.time()
        self.last_update = completed
        self.update_interval = max(1, total // 50)

        self._lock = threading.Lock()

        self.logger.info(f"Starting {self.name}: {total:,} items")

    def update(self, n: int = 1) -> None:
        """Advance the counter (thread-safe)"""
        with self._lock:
            self.current += n
            if (self.current - self.last_update) >= self.update_interval or self.current >= self.total:
                self._log_progress()
                self.last_update = self.current

    def _log_progress(self) -> None:
        if self.total <= 0:
            return

        elapsed = time.time() - self.start_time
        progress_pct = (self.current / self.total) * 100

        if self.current > 0 and elapsed > 0:
            rate = self.current / elapsed
            eta_seconds = (self.total - self.current) / rate if rate > 0 else 0
            eta_str = f" | ETA: {eta_seconds:.0f}s" if eta_seconds > 0 else ""
        else:
            rate = 0
            eta_str = ""

        self.logger.info(
            f"{self.name}: {self.current:,}/{self.total:,} "
            f"({progress_pct:.1f}%) | Rate: {rate:.1f}/s{eta_str}"
        )

    def finish(self) -> None:
        elapsed = time.time() - self.start_time
        rate = self.current / elapsed if elapsed > 0 else 0

        self.logger.info(
            f"{self.name} Complete: {self.current:,} items in {elapsed:.1f}s "
            f"(avg {rate:.1f}/s)"
        )


def log_performance(func_name: str, start_time: float, end_time: float, **metrics) -> None:
    """
    Log duration and metrics for a finished operation

    Args:
        func_name: Name of the operation
        start_time: Start timestamp
        end_time: End timestamp
        **metrics: Additional metrics to log
    """
    logger = logging.getLogger(f"{PACKAGE_LOGGER}.performance")
    duration = end_time - start_time
    metrics_str = " | ".join([f"{k}: {v}" for k, v in metrics.items()])
    logger.info(f"{func_name}: {duration:.3f}s | {metrics_str}")
