"""
taskdash Logging — stdlib loggers plus a structured JSONL audit trail.

Implements:
- configure_logging: level + handler for the ``taskdash`` logger tree
- FileLogger: per-object-type, per-category JSONL files (daily rotation)
- AsyncLogQueue: in-memory queue drained by a background thread
- Entry builders for aggregation, cache, scheduler and system events
- LogRetentionManager: delete/compress old files (run on midnight rollover)

The engine never depends on the audit trail being up: ``log()`` drops the
entry when no queue was initialised.
"""

from __future__ import annotations

import gzip
import json
import logging
import shutil
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("taskdash.engine.logging")

# Object types and their permitted categories
OBJECT_TYPE_CATEGORIES = {
    "aggregations": ["execution", "performance"],
    "cache": ["execution"],
    "scheduler": ["execution"],
    "system": ["execution"],
}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", stream: Optional[Any] = None) -> logging.Logger:
    """
    Attach a single stream handler to the ``taskdash`` logger.

    Safe to call repeatedly — the handler is replaced, not duplicated.
    """
    root = logging.getLogger("taskdash")
    root.setLevel(level.upper())
    for handler in list(root.handlers):
        if getattr(handler, "_taskdash_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._taskdash_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


class LogEntry:
    """A structured log entry destined for a specific file."""

    __slots__ = ("object_type", "category", "data")

    def __init__(self, object_type: str, category: str, data: Dict[str, Any]):
        self.object_type = object_type
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured entries to logs/{object_type}/{category}/{YYYY-MM-DD}.jsonl.

    Thread-safe — one lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                (self._log_dir / obj_type / cat).mkdir(parents=True, exist_ok=True)

    def write(self, entry: LogEntry) -> None:
        """Write a single log entry to the appropriate file."""
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write a batch of entries, grouped by target file."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.object_type, entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def _resolve_path(self, object_type: str, category: str) -> Path:
        """Resolve the log file path for today's date."""
        target = self._log_dir / object_type / category
        target.mkdir(parents=True, exist_ok=True)
        return target / f"{date.today().isoformat()}.jsonl"


class AsyncLogQueue:
    """
    Non-blocking push, background flush.

    A daemon thread flushes to the FileLogger every flush_interval_ms or as
    soon as flush_batch_size entries are waiting, whichever comes first.
    """

    def __init__(
        self,
        file_logger: FileLogger,
        flush_interval_ms: int = 100,
        flush_batch_size: int = 50,
        max_queue_size: int = 10000,
    ):
        self._logger = file_logger
        self._flush_interval = flush_interval_ms / 1000.0
        self._flush_batch_size = flush_batch_size
        self._queue: Queue[LogEntry] = Queue(maxsize=max_queue_size)
        self._running = False
        self._flush_thread: Optional[threading.Thread] = None
        self._dropped_count = 0

    def start(self) -> None:
        """Start the background flush thread."""
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="taskdash-log-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Async log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._drain()
        logger.info(f"Async log queue stopped (dropped: {self._dropped_count})")

    def push(self, entry: LogEntry) -> bool:
        """Queue an entry. Returns False if it was dropped (queue full)."""
        try:
            self._queue.put_nowait(entry)
            return True
        except Full:
            self._dropped_count += 1
            return False

    def _flush_loop(self) -> None:
        while self._running:
            batch = self._collect_batch()
            if batch:
                try:
                    self._logger.write_batch(batch)
                except OSError as e:
                    logger.error(f"Log flush error: {e}")
            else:
                time.sleep(self._flush_interval)

    def _collect_batch(self) -> List[LogEntry]:
        batch: List[LogEntry] = []
        deadline = time.monotonic() + self._flush_interval
        while len(batch) < self._flush_batch_size:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                batch.append(self._queue.get(timeout=min(remaining, 0.01)))
            except Empty:
                if batch:
                    break
        return batch

    def _drain(self) -> None:
        batch: List[LogEntry] = []
        while True:
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Log drain error: {e}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(event: str, level: str, **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
    }
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_aggregation(
    computation: str,
    month_id: Optional[str],
    viewer_id: Optional[str],
    task_count: int,
    duration_ms: float,
    cached: bool,
    fingerprint: Optional[str] = None,
) -> LogEntry:
    """Build an aggregation execution entry (one per compute call)."""
    data = _base_entry(
        event="aggregation_computed",
        level="INFO",
        computation=computation,
        month_id=month_id,
        viewer_id=viewer_id,
        task_count=task_count,
        duration_ms=round(duration_ms, 3),
        cached=cached,
        fingerprint=fingerprint,
    )
    return LogEntry("aggregations", "execution", data)


def log_aggregation_performance(
    computation: str,
    input_count: int,
    visible_count: int,
    duration_ms: float,
) -> LogEntry:
    """Build a performance entry for a cache-miss recomputation."""
    data = _base_entry(
        event="aggregation_performance",
        level="INFO",
        computation=computation,
        input_count=input_count,
        visible_count=visible_count,
        duration_ms=round(duration_ms, 3),
    )
    return LogEntry("aggregations", "performance", data)


def log_cache_event(
    event: str,
    fingerprint: Optional[str] = None,
    reason: Optional[str] = None,
    count: Optional[int] = None,
) -> LogEntry:
    """Build a cache entry: hit, miss, set, evicted, invalidated."""
    data = _base_entry(
        event=f"cache_{event}",
        level="DEBUG" if event in ("hit", "miss") else "INFO",
        fingerprint=fingerprint,
        reason=reason,
        count=count,
    )
    return LogEntry("cache", "execution", data)


def log_scheduler_event(
    event: str,
    delay_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> LogEntry:
    """Build a scheduler entry: armed, fired, cancelled, failed."""
    data = _base_entry(
        event=f"scheduler_{event}",
        level="ERROR" if error else "INFO",
        delay_ms=delay_ms,
        error=error,
    )
    return LogEntry("scheduler", "execution", data)


def log_system_event(
    event: str,
    level: str = "INFO",
    details: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a system event entry (startup, shutdown, config changes)."""
    data = _base_entry(event=event, level=level, details=details)
    return LogEntry("system", "execution", data)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class LogRetentionManager:
    """Deletes log files past retention and gzips files older than compress_after_days."""

    def __init__(
        self,
        log_dir: str = "logs",
        retention_days: int = 30,
        compress_after_days: int = 7,
    ):
        self._log_dir = Path(log_dir)
        self._retention = retention_days
        self._compress_after = compress_after_days

    def cleanup(self, today: Optional[date] = None) -> Dict[str, int]:
        """
        Run retention cleanup across all log directories.

        Returns:
            {"deleted": N, "compressed": M}
        """
        deleted = 0
        compressed = 0
        today = today or date.today()

        for obj_type, categories in OBJECT_TYPE_CATEGORIES.items():
            for cat in categories:
                cat_dir = self._log_dir / obj_type / cat
                if not cat_dir.exists():
                    continue
                for file_path in cat_dir.iterdir():
                    if not file_path.is_file():
                        continue
                    file_date = _parse_file_date(file_path)
                    if file_date is None:
                        continue
                    age_days = (today - file_date).days
                    if age_days > self._retention:
                        file_path.unlink()
                        deleted += 1
                    elif age_days > self._compress_after and file_path.suffix == ".jsonl":
                        if self._compress_file(file_path):
                            compressed += 1

        result = {"deleted": deleted, "compressed": compressed}
        logger.info(f"Log cleanup: {result}")
        return result

    @staticmethod
    def _compress_file(file_path: Path) -> bool:
        gz_path = file_path.with_suffix(file_path.suffix + ".gz")
        try:
            with open(file_path, "rb") as f_in, gzip.open(gz_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
            return True
        except OSError as e:
            logger.error(f"Failed to compress {file_path}: {e}")
            if gz_path.exists():
                gz_path.unlink()
            return False


def _parse_file_date(file_path: Path) -> Optional[date]:
    """2026-02-12.jsonl / 2026-02-12.jsonl.gz -> date(2026, 2, 12)."""
    try:
        return date.fromisoformat(file_path.name.split(".")[0])
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Global queue
# ---------------------------------------------------------------------------

_global_queue: Optional[AsyncLogQueue] = None


def init_logging(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize and start the global async log queue."""
    global _global_queue
    if _global_queue is not None:
        _global_queue.stop()
    _global_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _global_queue.start()
    return _global_queue


def get_log_queue() -> Optional[AsyncLogQueue]:
    return _global_queue


def log(entry: LogEntry) -> bool:
    """Push an entry to the global queue. Non-blocking; False if not queued."""
    if _global_queue is None:
        logger.debug("Log queue not initialized — entry dropped")
        return False
    return _global_queue.push(entry)


def shutdown_logging() -> None:
    """Flush and stop the global log queue."""
    global _global_queue
    if _global_queue:
        _global_queue.stop()
        _global_queue = None
