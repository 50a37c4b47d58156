"""Agent dispatcher.

Agent invocations run on a thread pool so a tick never waits for an agent.
Every job shares one cancellation event; ``shutdown()`` sets it and waits for
outstanding jobs to unwind.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 16


class Dispatcher:
    """Thread pool with outstanding-job accounting and shared cancellation.

    Jobs may submit follow-up jobs (e.g. a facilitator reply fanning out
    experts); ``wait_idle`` only returns once those have finished too.
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS, cancel: threading.Event | None = None):
        self.cancel = cancel or threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agent")
        self._idle = threading.Condition()
        self._outstanding = 0
        self._closed = False

    @property
    def outstanding(self) -> int:
        with self._idle:
            return self._outstanding

    def submit(self, name: str, fn: Callable, *args, **kwargs) -> Future | None:
        """Run ``fn(*args, **kwargs)`` on the pool.

        Returns None if the dispatcher is shutting down.
        """
        with self._idle:
            if self._closed or self.cancel.is_set():
                logger.debug(f"[DISPATCH] Dropping {name}: shutting down")
                return None
            self._outstanding += 1

        def job():
            try:
                return fn(*args, **kwargs)
            except Exception:
                logger.exception(f"[DISPATCH] Job {name} crashed")
                raise
            finally:
                with self._idle:
                    self._outstanding -= 1
                    self._idle.notify_all()

        try:
            return self._executor.submit(job)
        except RuntimeError:
            # Executor already shut down
            with self._idle:
                self._outstanding -= 1
                self._idle.notify_all()
            return None

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is outstanding. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, timeout: float | None = None) -> None:
        """Signal cancellation and wait for outstanding jobs."""
        with self._idle:
            self._closed = True
        self.cancel.set()
        if not self.wait_idle(timeout):
            logger.warning(f"[DISPATCH] {self.outstanding} job(s) still running at shutdown")
        self._executor.shutdown(wait=False, cancel_futures=True)
