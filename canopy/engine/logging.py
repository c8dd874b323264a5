"""
Canopy Audit Logging — Structured JSONL files fed by an async queue.

The engine logs through stdlib ``logging`` loggers (``canopy.*``) for humans;
in addition every task outcome, hook failure and unexpected error can be
recorded as a structured entry in:

    {log_dir}/{category}/{YYYY-MM-DD}.jsonl

Implements:
- LogEntry / FileLogger: per-category daily files, queryable
- AsyncLogQueue: background flush (interval or batch size)
- Entry builders: task_finished, hook_failed, unexpected_error
- init_audit_log / audit / shutdown_audit_log: module-level queue
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any, Dict, List, Optional

logger = logging.getLogger("canopy.engine.logging")

CATEGORIES = ("tasks", "hooks", "errors")


class LogEntry:
    """A structured log entry destined for a category file."""

    __slots__ = ("category", "data")

    def __init__(self, category: str, data: Dict[str, Any]):
        if category not in CATEGORIES:
            raise ValueError(f"Unknown log category '{category}'. Expected one of {CATEGORIES}")
        self.category = category
        self.data = data

    def to_json(self) -> str:
        return json.dumps(self.data, default=str, separators=(",", ":"))


class FileLogger:
    """
    Writes structured JSON entries to per-category files rotated daily.
    Thread-safe — uses a lock per file path.
    """

    def __init__(self, log_dir: str = "logs"):
        self._log_dir = Path(log_dir)
        self._file_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        for category in CATEGORIES:
            (self._log_dir / category).mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    def _resolve_path(self, category: str) -> Path:
        return self._log_dir / category / f"{date.today().isoformat()}.jsonl"

    def write(self, entry: LogEntry) -> None:
        self.write_batch([entry])

    def write_batch(self, entries: List[LogEntry]) -> None:
        """Write entries, grouping by file so each file is opened once."""
        grouped: Dict[str, List[LogEntry]] = defaultdict(list)
        for entry in entries:
            grouped[str(self._resolve_path(entry.category))].append(entry)

        for file_path, batch in grouped.items():
            with self._file_locks[file_path]:
                with open(file_path, "a", encoding="utf-8") as f:
                    for entry in batch:
                        f.write(entry.to_json())
                        f.write("\n")

    def query(
        self,
        category: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        """
        Read entries back, newest day first, chronological within a day.

        ``filters`` is an exact-match dict on top-level keys.
        """
        if end_date is None:
            end_date = date.today()
        if start_date is None:
            start_date = end_date - timedelta(days=7)

        results: List[Dict[str, Any]] = []
        current = end_date
        while current >= start_date and len(results) < limit:
            file_path = self._log_dir / category / f"{current.isoformat()}.jsonl"
            if file_path.exists():
                results.extend(self._read_jsonl(file_path, filters, limit - len(results)))
            current -= timedelta(days=1)
        return results[:limit]

    @staticmethod
    def _read_jsonl(
        path: Path,
        filters: Optional[Dict[str, Any]],
        remaining: int,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if filters and not all(data.get(k) == v for k, v in filters.items()):
                        continue
                    entries.append(data)
                    if len(entries) >= remaining:
                        break
        except OSError as exc:
            logger.warning("Could not read log file %s: %s", path, exc)
        return entries


class AsyncLogQueue:
    """
    In-memory queue with a background flush thread.

    Entries are pushed non-blocking; the thread flushes every
    ``flush_interval_ms`` or when ``flush_batch_size`` entries accumulate.
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
        if self._running:
            return
        self._running = True
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            name="canopy-audit-flush",
            daemon=True,
        )
        self._flush_thread.start()
        logger.info("Audit log queue started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the flush thread and drain remaining entries."""
        self._running = False
        if self._flush_thread and self._flush_thread.is_alive():
            self._flush_thread.join(timeout=timeout)
        self._drain()
        logger.info(f"Audit log queue stopped (dropped: {self._dropped_count})")

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
                    logger.error(f"Audit log flush error: {e}")
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
        while not self._queue.empty():
            try:
                batch.append(self._queue.get_nowait())
            except Empty:
                break
        if batch:
            try:
                self._logger.write_batch(batch)
            except OSError as e:
                logger.error(f"Audit log drain error: {e}")

    @property
    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


# ---------------------------------------------------------------------------
# Log Entry Builders
# ---------------------------------------------------------------------------

def _base_entry(event: str, level: str, task_name: str, actor_id: Any, **extra: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "task": task_name,
        "actor_id": actor_id,
    }
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


def log_task_finished(
    task_name: str,
    actor_id: Any,
    status: str,
    target_id: Optional[str] = None,
    result_ids: Optional[List[str]] = None,
    error: Optional[Dict[str, Any]] = None,
) -> LogEntry:
    """Build a task outcome entry."""
    data = _base_entry(
        "task_finished",
        "ERROR" if status == "FAIL" else "INFO",
        task_name,
        actor_id,
        status=status,
        target_id=target_id,
        result_ids=result_ids,
        error=error,
    )
    return LogEntry("tasks", data)


def log_hook_failed(task_name: str, actor_id: Any, moment: str, error: str) -> LogEntry:
    """Build an entry for a pre/post hook listener that raised."""
    return LogEntry(
        "hooks",
        _base_entry("hook_failed", "ERROR", task_name, actor_id, moment=moment, error=error),
    )


def log_unexpected_error(task_name: str, actor_id: Any, error: BaseException) -> LogEntry:
    """Build an entry for a non-domain failure hidden from the caller."""
    return LogEntry(
        "errors",
        _base_entry(
            "unexpected_error",
            "ERROR",
            task_name,
            actor_id,
            error_type=type(error).__name__,
            error=str(error),
        ),
    )


# ---------------------------------------------------------------------------
# Module-level audit queue
# ---------------------------------------------------------------------------

_audit_queue: Optional[AsyncLogQueue] = None


def init_audit_log(
    log_dir: str = "logs",
    flush_interval_ms: int = 100,
    flush_batch_size: int = 50,
    max_queue_size: int = 10000,
) -> AsyncLogQueue:
    """Initialize and start the module-level audit queue."""
    global _audit_queue
    if _audit_queue is not None:
        _audit_queue.stop()
    _audit_queue = AsyncLogQueue(
        file_logger=FileLogger(log_dir=log_dir),
        flush_interval_ms=flush_interval_ms,
        flush_batch_size=flush_batch_size,
        max_queue_size=max_queue_size,
    )
    _audit_queue.start()
    return _audit_queue


def get_audit_queue() -> Optional[AsyncLogQueue]:
    return _audit_queue


def audit(entry: LogEntry) -> bool:
    """Push an entry to the audit queue. No-op until ``init_audit_log`` runs."""
    if _audit_queue is None:
        return False
    return _audit_queue.push(entry)


def shutdown_audit_log() -> None:
    """Flush and stop the audit queue."""
    global _audit_queue
    if _audit_queue:
        _audit_queue.stop()
        _audit_queue = None
