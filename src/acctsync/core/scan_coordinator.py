"""
Scan Coordinator - Single-flight team and user scans.

A scan fetches teams (or users) from an external directory, maps them to
buffer records and stages them for reconciliation. The coordinator makes
sure that:
1. At most one team scan and one user scan are in flight at a time
2. Callers never wait for a scan; they get an immediate acknowledgement
3. The scan state always returns to idle when the task ends, whatever
   the outcome
4. A completion event is published when the caller asked for one

The busy-check and the switch to RUNNING happen under one lock, so two
overlapping calls for the same scan kind can never both start work. A second
call while a scan is running is rejected, not queued.

Known gap: there is no cancellation. A fetch that never returns keeps its
scan kind RUNNING; the HTTP client's request timeout bounds this in practice.
"""

import asyncio
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from ..sources.base_source import (
    AccountSourceInstance,
    AttrInfo,
    BaseDirectoryClient,
    TeamNode,
    UserBuffer,
)
from ..store.buffer_writer import BaseBufferWriter
from ..store.source_registry import SourceRegistry
from .executor import create_scan_executor
from .publisher import EventPublisher, SyncType


class ScanKind(Enum):
    """What a scan fetches"""
    TEAM = "team"
    USER = "user"


class ScanState(Enum):
    """Scan state per scan kind"""
    IDLE = "idle"
    RUNNING = "running"


class InvokeCode(Enum):
    """Outcome of a scan request, as seen by the caller"""
    SUBMITTED = "submitted"
    BUSY = "busy"
    NOT_FOUND = "not_found"


@dataclass
class ScanResult:
    """Immediate answer to scan_teams / scan_users"""
    code: InvokeCode
    message: str
    kind: ScanKind
    source_inst_id: str
    future: Optional[Future] = None  # Set only when a task was submitted

    @property
    def ok(self) -> bool:
        return self.code is InvokeCode.SUBMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "kind": self.kind.value,
            "source_inst_id": self.source_inst_id,
        }


_SYNC_TYPES = {
    ScanKind.TEAM: SyncType.TEAM,
    ScanKind.USER: SyncType.USER,
}


class CoordinatorConfig:
    """Configuration for the scan coordinator"""

    def __init__(
        self,
        max_workers: int = 10,
        thread_name_prefix: str = "acct-scan",
    ):
        self.max_workers = max_workers
        self.thread_name_prefix = thread_name_prefix


class ScanCoordinator:
    """
    Runs directory scans in the background, one per scan kind at a time.

    Example:
        >>> coordinator = ScanCoordinator(registry, PortalDirectoryClient(), InMemoryBufferWriter())
        >>> result = coordinator.scan_teams("src-1", auto_publish=True)
        >>> result.code
        <InvokeCode.SUBMITTED: 'submitted'>
        >>> coordinator.scan_teams("src-1").code
        <InvokeCode.BUSY: 'busy'>
    """

    def __init__(
        self,
        source_registry: SourceRegistry,
        directory_client: BaseDirectoryClient,
        buffer_writer: BaseBufferWriter,
        publisher: Optional[EventPublisher] = None,
        config: Optional[CoordinatorConfig] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            source_registry: Lookup for source instances
            directory_client: Connector for the external directory
            buffer_writer: Staging store for fetched records
            publisher: Completion event publisher (a new one if None)
            config: Coordinator configuration
            executor: Worker pool (a ScanExecutor is created if None)
        """
        self.source_registry = source_registry
        self.directory_client = directory_client
        self.buffer_writer = buffer_writer
        self.publisher = publisher or EventPublisher()
        self.config = config or CoordinatorConfig()
        self.executor = executor or create_scan_executor(
            max_workers=self.config.max_workers,
            thread_name_prefix=self.config.thread_name_prefix,
        )

        self._lock = threading.Lock()
        self._states: Dict[ScanKind, ScanState] = {kind: ScanState.IDLE for kind in ScanKind}

        self.logger = structlog.get_logger(__name__)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def scan_teams(self, source_inst_id: str, auto_publish: bool = False) -> ScanResult:
        """
        Start a background team scan.

        Args:
            source_inst_id: Source instance to scan
            auto_publish: Publish a completion event when the scan ends

        Returns:
            SUBMITTED, BUSY (a team scan is already running) or NOT_FOUND
        """
        return self._submit(ScanKind.TEAM, source_inst_id, auto_publish)

    def scan_users(
        self,
        source_inst_id: str,
        scan_all: bool = True,
        auto_publish: bool = False,
    ) -> ScanResult:
        """
        Start a background user scan.

        Args:
            source_inst_id: Source instance to scan
            scan_all: Full fetch when True, incremental when False
            auto_publish: Publish a completion event when the scan ends

        Returns:
            SUBMITTED, BUSY (a user scan is already running) or NOT_FOUND
        """
        return self._submit(ScanKind.USER, source_inst_id, auto_publish, scan_all=scan_all)

    def _submit(
        self,
        kind: ScanKind,
        source_inst_id: str,
        auto_publish: bool,
        scan_all: bool = True,
    ) -> ScanResult:
        with self._lock:
            if self._states[kind] is ScanState.RUNNING:
                self.logger.warning(f"{kind.value}_scan_busy", source=source_inst_id)
                return ScanResult(
                    code=InvokeCode.BUSY,
                    message=f"A {kind.value} scan is already running",
                    kind=kind,
                    source_inst_id=source_inst_id,
                )

            instance = self.source_registry.get(source_inst_id)
            if instance is None:
                self.logger.warning("source_not_found", source=source_inst_id, kind=kind.value)
                return ScanResult(
                    code=InvokeCode.NOT_FOUND,
                    message=f"Account source instance not found: {source_inst_id}",
                    kind=kind,
                    source_inst_id=source_inst_id,
                )

            self._states[kind] = ScanState.RUNNING
            try:
                future = self.executor.submit(self._run_scan, kind, instance, auto_publish, scan_all)
            except Exception:
                self._states[kind] = ScanState.IDLE
                raise

        self.logger.info(
            f"{kind.value}_scan_submitted",
            source=source_inst_id,
            auto_publish=auto_publish,
            scan_all=scan_all if kind is ScanKind.USER else None,
        )
        return ScanResult(
            code=InvokeCode.SUBMITTED,
            message=f"{kind.value.capitalize()} scan submitted",
            kind=kind,
            source_inst_id=source_inst_id,
            future=future,
        )

    def _run_scan(
        self,
        kind: ScanKind,
        instance: AccountSourceInstance,
        auto_publish: bool,
        scan_all: bool,
    ):
        """Background task body. Never raises for scan failures."""
        started = time.monotonic()
        self.logger.info(f"{kind.value}_scan_started", source=instance.id)

        try:
            with self.buffer_writer.transaction():
                if kind is ScanKind.TEAM:
                    staged = self._stage_teams(instance)
                else:
                    staged = self._stage_users(instance, scan_all)

            if staged:
                self.logger.info(
                    f"{kind.value}_scan_complete",
                    source=instance.id,
                    staged=staged,
                    duration=f"{time.monotonic() - started:.2f}s",
                )

        except Exception as e:
            self.logger.error(
                f"{kind.value}_scan_failed",
                source=instance.describe(),
                error=str(e),
                exc_info=True,
            )

        finally:
            self._set_state(kind, ScanState.IDLE)
            if auto_publish:
                self.publisher.publish(
                    f"{instance.name or instance.id} {kind.value} scan finished",
                    instance,
                    _SYNC_TYPES[kind],
                )

    def _stage_teams(self, instance: AccountSourceInstance) -> int:
        records = asyncio.run(self.directory_client.fetch_teams(instance))
        self.logger.info("team_scan_fetched", source=instance.id, count=len(records or []))

        teams = self.directory_client.convert_teams(records, instance) if records else []
        if not teams:
            self.logger.error("team_scan_empty", source=instance.id)
            return 0

        self.buffer_writer.write_teams(instance.id, teams)
        return len(teams)

    def _stage_users(self, instance: AccountSourceInstance, scan_all: bool) -> int:
        records = asyncio.run(self.directory_client.fetch_users(instance, scan_all=scan_all))
        self.logger.info("user_scan_fetched", source=instance.id, count=len(records or []))

        users = self.directory_client.convert_users(records, instance) if records else []
        if not users:
            self.logger.error("user_scan_empty", source=instance.id)
            return 0

        self.buffer_writer.write_users(instance.id, users)
        return len(users)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _set_state(self, kind: ScanKind, state: ScanState):
        with self._lock:
            self._states[kind] = state

    def get_state(self, kind: ScanKind) -> ScanState:
        """Current state of a scan kind"""
        with self._lock:
            return self._states[kind]

    def get_status(self) -> Dict[str, Any]:
        """
        Get current coordinator status.

        Returns:
            Status dictionary
        """
        with self._lock:
            states = {kind.value: state.value for kind, state in self._states.items()}

        return {
            "scans": states,
            "max_workers": self.config.max_workers,
            "events_published": self.publisher.published_count,
        }

    # ------------------------------------------------------------------
    # Read-only lookups
    # ------------------------------------------------------------------

    def get_source_user(self, source_inst_id: str, source_user_id: str) -> Optional[UserBuffer]:
        """Fetch one user from the source, or None if unknown"""
        instance = self.source_registry.get(source_inst_id)
        if instance is None:
            return None
        return asyncio.run(self.directory_client.get_source_user(instance, source_user_id))

    def get_team_tree(self, source_inst_id: str, query: Optional[str] = None) -> List[TeamNode]:
        """Team hierarchy of the source, optionally filtered by name"""
        instance = self.source_registry.get(source_inst_id)
        if instance is None:
            return []
        return asyncio.run(self.directory_client.get_team_tree(instance, query))

    def get_source_user_id_by_mobile(self, source_inst_id: str, mobile: str) -> Optional[str]:
        """Source user id for a mobile number, or None"""
        instance = self.source_registry.get(source_inst_id)
        if instance is None:
            return None
        return asyncio.run(self.directory_client.get_source_user_id_by_mobile(instance, mobile))

    def get_user_attrs(self, source_inst_id: str) -> List[AttrInfo]:
        """User attributes the source can supply"""
        instance = self.source_registry.get(source_inst_id)
        if instance is None:
            return []
        return self.directory_client.get_user_attrs(instance)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True):
        """Stop accepting scans and release the worker pool"""
        self.logger.info("stopping_coordinator", wait=wait)
        self.executor.shutdown(wait=wait)

    def __enter__(self) -> "ScanCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)
