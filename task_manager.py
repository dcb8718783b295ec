"""Background pool for the slow side jobs of an export.

Renderers hand over file copies and the exporter hands over PDF conversions;
both run on a small thread pool while the export thread keeps rendering.  The
exporter only needs to submit work, look at what is still queued, wait for the
queue to drain and cancel whatever has not started yet.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Optional, Tuple

from itunes_index import CopyError, ITunesDb

logger = logging.getLogger(__name__)


class TaskManager:
    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task")
        self._lock = threading.Lock()
        self._pending: Dict[Future, str] = {}
        self.completed = 0
        self.failed = 0

    def submit(self, fn: Callable[[], object], kind: str = "task") -> Future:
        with self._lock:
            future = self._executor.submit(self._run, fn, kind)
            self._pending[future] = kind
        future.add_done_callback(self._finished)
        return future

    def _run(self, fn: Callable[[], object], kind: str) -> None:
        try:
            fn()
        except Exception as exc:  # task failures must not stop the export
            with self._lock:
                self.failed += 1
            logger.warning("%s task failed: %s", kind, exc)

    def _finished(self, future: Future) -> None:
        with self._lock:
            self._pending.pop(future, None)
            if not future.cancelled():
                self.completed += 1

    def outstanding(self) -> Tuple[int, str]:
        """Return the number of queued or running tasks and a short summary."""

        with self._lock:
            kinds = Counter(self._pending.values())
        description = ", ".join(f"{kind}: {count}" for kind, count in sorted(kinds.items()))
        return sum(kinds.values()), description

    def wait_until_drained(self, timeout: Optional[float]) -> bool:
        with self._lock:
            futures = list(self._pending)
        if not futures:
            return True
        _done, not_done = wait(futures, timeout=timeout)
        return not not_done

    def cancel_all(self) -> None:
        with self._lock:
            futures = list(self._pending)
        cancelled = sum(1 for future in futures if future.cancel())
        if cancelled:
            logger.info("Cancelled %d queued tasks", cancelled)

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_tasks)


class CopyFileTask:
    """Copy one virtual file out of the backup."""

    def __init__(self, index: ITunesDb, vpath: str, dest: str, overwrite: bool = False) -> None:
        self.index = index
        self.vpath = vpath
        self.dest = dest
        self.overwrite = overwrite

    def __call__(self) -> None:
        try:
            self.index.copy_file(self.vpath, self.dest, self.overwrite)
        except CopyError as exc:
            logger.warning("Copy of %s failed: %s", self.vpath, exc)
            raise
