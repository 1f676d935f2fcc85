"""
Task Runner - Single interface for heavy pipeline steps

The orchestrator calls run_heavy_task(kind, payload) and does not know
whether the work runs inline or on a worker thread.

Implementations:
- InlineTaskRunner: calls the handler on the caller's thread
- ThreadedTaskRunner: dispatches to a ThreadPoolExecutor with a timeout
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0

Handler = Callable[[Dict[str, Any]], Any]


class TaskTimeoutError(TimeoutError):
    """Delegated work did not finish within its timeout."""

    def __init__(self, kind: str, timeout: float):
        super().__init__(f"Task '{kind}' timed out after {timeout}s")
        self.kind = kind
        self.timeout = timeout


class TaskRunner:
    """Base class: handler registry plus the run_heavy_task interface"""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"Handler for '{kind}' must be callable")
        self._handlers[kind] = handler

    def handles(self, kind: str) -> bool:
        return kind in self._handlers

    def _handler(self, kind: str) -> Handler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise ValueError(f"No handler registered for task kind '{kind}'") from None

    def run_heavy_task(self, kind: str, payload: Dict[str, Any], timeout: Optional[float] = None) -> Any:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


class InlineTaskRunner(TaskRunner):
    """Runs handlers synchronously. timeout is accepted but not enforced."""

    def run_heavy_task(self, kind, payload, timeout=None):
        return self._handler(kind)(payload)


class ThreadedTaskRunner(TaskRunner):
    """
    Runs handlers on a shared thread pool.

    Raises:
        TaskTimeoutError: If the handler does not finish in time. The
            future is cancelled; a handler already running finishes in
            the background and its result is discarded.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, max_workers: int = 4):
        super().__init__(timeout)
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="heavy-task")
        logger.info(f"Threaded task runner started (max_workers={max_workers}, timeout={timeout}s)")

    def run_heavy_task(self, kind, payload, timeout=None):
        handler = self._handler(kind)
        limit = self.timeout if timeout is None else timeout

        future = self._executor.submit(handler, payload)
        try:
            return future.result(timeout=limit)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Task '{kind}' timed out after {limit}s")
            raise TaskTimeoutError(kind, limit) from None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Threaded task runner stopped")


def create_task_runner(mode: str = "inline", timeout: float = DEFAULT_TIMEOUT, max_workers: int = 4) -> TaskRunner:
    """
    Args:
        mode: 'inline' or 'threaded'

    Raises:
        ValueError: For an unknown mode
    """
    if mode == "inline":
        return InlineTaskRunner(timeout=timeout)
    if mode == "threaded":
        return ThreadedTaskRunner(timeout=timeout, max_workers=max_workers)
    raise ValueError(f"Unknown task runner mode '{mode}' (expected 'inline' or 'threaded')")
