"""
Core module - Scan coordination and background execution.

This package contains the single-flight scan coordinator, the worker pool
with its uncaught-exception logging, and the completion event publisher.
"""

from .executor import (
    ScanExecutor,
    create_scan_executor,
    install_uncaught_exception_logger,
    log_uncaught_exception,
)
from .publisher import EventPublisher, SyncEvent, SyncType
from .scan_coordinator import (
    CoordinatorConfig,
    InvokeCode,
    ScanCoordinator,
    ScanKind,
    ScanResult,
    ScanState,
)


__all__ = [
    # Coordination
    "ScanCoordinator",
    "CoordinatorConfig",
    "ScanKind",
    "ScanState",
    "ScanResult",
    "InvokeCode",
    # Execution
    "ScanExecutor",
    "create_scan_executor",
    "install_uncaught_exception_logger",
    "log_uncaught_exception",
    # Events
    "EventPublisher",
    "SyncEvent",
    "SyncType",
]
