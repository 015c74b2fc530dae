"""
Scan Executor - Shared worker pool with uncaught-exception logging.

Every scan runs on a fixed-size thread pool. Worker threads must never die
quietly: an exception that escapes a thread is routed to a process-wide
handler that logs the thread name and the stack trace through structlog.

Two paths lead to the handler:
1. ``threading.excepthook`` for raw threads (installed once per process)
2. A done-callback on every future submitted to ``ScanExecutor``, since a
   ``ThreadPoolExecutor`` stores task exceptions on the future instead of
   letting them reach the thread hook
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

import structlog


logger = structlog.get_logger(__name__)

_install_lock = threading.Lock()
_installed = False


def log_uncaught_exception(args: threading.ExceptHookArgs) -> None:
    """
    Log an exception that escaped a worker thread.

    Signature matches ``threading.excepthook`` so it can be installed
    directly. ``SystemExit`` is ignored, like the default hook does.

    Args:
        args: Hook arguments (exc_type, exc_value, exc_traceback, thread)
    """
    if args.exc_type is SystemExit:
        return

    thread_name = args.thread.name if args.thread is not None else "unknown"
    logger.error(
        "uncaught_exception",
        thread=thread_name,
        error=str(args.exc_value),
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def install_uncaught_exception_logger() -> bool:
    """
    Install ``log_uncaught_exception`` as the process-wide thread hook.

    Safe to call from any thread, any number of times.

    Returns:
        True if this call installed the hook, False if it was already there
    """
    global _installed

    with _install_lock:
        if _installed:
            return False
        threading.excepthook = log_uncaught_exception
        _installed = True

    logger.debug("uncaught_exception_logger_installed")
    return True


class _FutureExceptHookArgs:
    """Adapts a failed future to the ``threading.ExceptHookArgs`` shape"""

    def __init__(self, exc: BaseException, thread: Optional[threading.Thread]):
        self.exc_type = type(exc)
        self.exc_value = exc
        self.exc_traceback = exc.__traceback__
        self.thread = thread


class ScanExecutor(ThreadPoolExecutor):
    """
    Fixed-size thread pool whose tasks never fail silently.

    Example:
        >>> executor = ScanExecutor(max_workers=10, thread_name_prefix="acct-scan")
        >>> future = executor.submit(run_scan)
        >>> executor.shutdown(wait=True)
    """

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        def run() -> Any:
            try:
                return fn(*args, **kwargs)
            except BaseException as e:
                # Record the worker thread before the future swallows the error
                e._scan_thread = threading.current_thread()
                raise

        future = super().submit(run)
        future.add_done_callback(_log_future_exception)
        return future


def _log_future_exception(future: Future) -> None:
    if future.cancelled():
        return

    exc = future.exception()
    if exc is None:
        return

    thread = getattr(exc, "_scan_thread", None)
    log_uncaught_exception(_FutureExceptHookArgs(exc, thread))


def create_scan_executor(
    max_workers: int = 10,
    thread_name_prefix: str = "acct-scan",
) -> ScanExecutor:
    """
    Create the worker pool used for background scans.

    Installs the uncaught-exception logger first so every worker thread
    created afterwards is covered.

    Args:
        max_workers: Number of worker threads
        thread_name_prefix: Prefix for worker thread names

    Returns:
        A ready ScanExecutor
    """
    install_uncaught_exception_logger()

    executor = ScanExecutor(
        max_workers=max_workers,
        thread_name_prefix=thread_name_prefix,
    )
    logger.info(
        "scan_executor_created",
        max_workers=max_workers,
        thread_name_prefix=thread_name_prefix,
    )
    return executor
