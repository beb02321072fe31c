"""
Statement log: every tick's SQL is written to `<dir>/<tableSet>-<periodEndMillis>.sql`.

Writing happens off the replication path. Producers are detached threads that
feed a bounded queue (they block when it is full); a single writer thread
drains it to disk and prunes files older than the retention window. A name
that is already taken (two sources ending a period on the same millisecond)
gets a `-2`, `-3`, ... suffix.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Set

LOG = logging.getLogger(__name__)

_CLOSE = object()


class ReplicationLogWriter:
    def __init__(
        self,
        log_dir: str | Path,
        retention_days: float = 2,
        max_buffered_lines: int = 10_000,
        logger: logging.Logger | None = None,
    ):
        self.log_dir = Path(log_dir)
        self.retention_seconds = retention_days * 24 * 60 * 60
        self.log = logger or LOG
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_buffered_lines)
        self._writer: Optional[threading.Thread] = None
        self._writer_lock = threading.Lock()
        self._producers: List[threading.Thread] = []
        self._reserved: Set[Path] = set()

    @staticmethod
    def file_name(table_set_name: str, period_end_millis: int) -> str:
        return f"{table_set_name}-{period_end_millis}.sql"

    # ------------------------ Producer side ------------------------

    def submit(self, table_set_name: str, period_end_millis: int, statements: List[str]) -> threading.Thread:
        """Queue one statement file for writing; returns the detached producer thread."""
        self._ensure_writer()
        with self._writer_lock:
            path = self._reserve_path(table_set_name, period_end_millis)
            producer = threading.Thread(
                target=self._produce, args=(path, list(statements)), name=f"replication-log-{period_end_millis}", daemon=True
            )
            producer.start()
            self._producers = [p for p in self._producers if p.is_alive()] + [producer]
        return producer

    def _reserve_path(self, table_set_name: str, period_end_millis: int) -> Path:
        # two sources can finish a period on the same millisecond; the later one gets a suffix
        path = self.log_dir / self.file_name(table_set_name, period_end_millis)
        n = 1
        while path in self._reserved or path.exists():
            n += 1
            path = self.log_dir / f"{table_set_name}-{period_end_millis}-{n}.sql"
        self._reserved.add(path)
        return path

    def _produce(self, path: Path, statements: Iterable[str]) -> None:
        try:
            for stmt in statements:
                self._queue.put((path, stmt))
            self._queue.put((path, _CLOSE))
        except Exception:
            self.log.warning("Could not queue replication log %s", path, exc_info=True)

    # ------------------------ Writer side ------------------------

    def _ensure_writer(self) -> None:
        with self._writer_lock:
            if self._writer is None or not self._writer.is_alive():
                self._writer = threading.Thread(target=self._drain, name="replication-log-writer", daemon=True)
                self._writer.start()

    def _drain(self) -> None:
        handles = {}
        failed = set()
        while True:
            path, item = self._queue.get()
            try:
                if path in failed:
                    if item is _CLOSE:
                        failed.discard(path)
                    continue
                if item is _CLOSE:
                    fh = handles.pop(path, None)
                    if fh is None:
                        # empty statement list: still leave a file behind for the tick
                        self.log_dir.mkdir(parents=True, exist_ok=True)
                        path.touch()
                    else:
                        fh.close()
                    self.log.info("Wrote replication log %s", path)
                    self.delete_old_logs()
                    continue
                fh = handles.get(path)
                if fh is None:
                    self.log_dir.mkdir(parents=True, exist_ok=True)
                    fh = handles[path] = open(path, "w", encoding="utf-8")
                    fh.write(item)
                else:
                    fh.write("\n" + item)
            except OSError:
                self.log.warning("Failed to write replication log %s", path, exc_info=True)
                if item is not _CLOSE:
                    failed.add(path)
                fh = handles.pop(path, None)
                if fh is not None:
                    fh.close()
            finally:
                if item is _CLOSE:
                    with self._writer_lock:
                        self._reserved.discard(path)
                self._queue.task_done()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until everything queued so far is on disk (used by tests and on shutdown)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for p in list(self._producers):
            p.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(0.01)
        return True

    def delete_old_logs(self) -> List[Path]:
        removed: List[Path] = []
        if not self.log_dir.is_dir():
            return removed
        cutoff = time.time() - self.retention_seconds
        for p in self.log_dir.glob("*.sql"):
            try:
                if p.stat().st_mtime < cutoff:
                    p.unlink()
                    removed.append(p)
            except OSError:
                self.log.warning("Could not delete old replication log %s", p, exc_info=True)
        if removed:
            self.log.info("Deleted %d replication log(s) older than %.1f day(s)", len(removed), self.retention_seconds / 86400)
        return removed
