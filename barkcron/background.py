"""
Fire-and-forget background work (notification hand-off, retention sweeps).

Submitted callables run on a small thread pool. Callers get no ordering
guarantee relative to their own return; drain() lets tests and shutdown
wait until everything submitted so far has finished.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from typing import Callable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Thread pool wrapper that logs failures instead of losing them."""

    def __init__(self, max_workers: int = 4, name: str = "barkcron-bg"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable, *args, description: Optional[str] = None, **kwargs) -> Optional[Future]:
        """Schedule fn(*args, **kwargs); returns None once shut down."""
        label = description or getattr(fn, '__name__', repr(fn))
        with self._lock:
            if self._closed:
                logger.warning(f"Background pool closed, dropping {label}")
                return None
            future = self._executor.submit(fn, *args, **kwargs)
            self._pending.add(future)

        future.add_done_callback(lambda f: self._finished(f, label))
        return future

    def _finished(self, future: Future, label: str):
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background task {label} failed: {error}", exc_info=error)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: float = 30.0) -> bool:
        """
        Wait until no submitted work is outstanding.

        Work submitted by running work (e.g. eviction after a record save)
        is waited for too.

        Returns:
            True if everything finished within timeout
        """
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait_for_futures(pending, timeout=remaining)
            # Let done-callbacks run before re-checking
            time.sleep(0.001)

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
