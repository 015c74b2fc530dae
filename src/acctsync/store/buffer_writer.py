"""
Buffer Writer - Staging store for scanned teams and users.

Each successful scan replaces the source instance's staged teams (or users)
with the fresh batch. Writes issued inside ``transaction()`` are held back
and applied only when the block exits cleanly; an exception discards them.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple, Union

import structlog

from ..sources.base_source import TeamBuffer, UserBuffer


TEAMS = "teams"
USERS = "users"


class BaseBufferWriter(ABC):
    """
    Abstract staging store.

    Subclasses implement ``_store`` and ``_load``; batching and
    transactions are handled here. Transactions are tracked per thread, so
    team and user scans running side by side never share pending writes.
    """

    def __init__(self):
        self._local = threading.local()
        self.write_count = 0
        self._count_lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

    @contextmanager
    def transaction(self) -> Iterator["BaseBufferWriter"]:
        """
        Group writes so they apply together or not at all.

        Nested calls join the outer transaction.
        """
        if getattr(self._local, "pending", None) is not None:
            yield self
            return

        self._local.pending = []
        try:
            yield self
        except BaseException:
            self.logger.warning(
                "buffer_transaction_rolled_back",
                discarded_writes=len(self._local.pending),
            )
            raise
        else:
            for kind, source_inst_id, records in self._local.pending:
                self._apply(kind, source_inst_id, records)
        finally:
            self._local.pending = None

    def write_teams(self, source_inst_id: str, teams: List[TeamBuffer]):
        """Stage a team batch for a source instance"""
        self._write(TEAMS, source_inst_id, [team.to_dict() for team in teams])

    def write_users(self, source_inst_id: str, users: List[UserBuffer]):
        """Stage a user batch for a source instance"""
        self._write(USERS, source_inst_id, [user.to_dict() for user in users])

    def read_teams(self, source_inst_id: str) -> List[Dict[str, Any]]:
        return self._load(TEAMS, source_inst_id)

    def read_users(self, source_inst_id: str) -> List[Dict[str, Any]]:
        return self._load(USERS, source_inst_id)

    def _write(self, kind: str, source_inst_id: str, records: List[Dict[str, Any]]):
        pending = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append((kind, source_inst_id, records))
        else:
            self._apply(kind, source_inst_id, records)

    def _apply(self, kind: str, source_inst_id: str, records: List[Dict[str, Any]]):
        self._store(kind, source_inst_id, records)
        with self._count_lock:
            self.write_count += 1
        self.logger.info(
            "buffer_written",
            kind=kind,
            source=source_inst_id,
            count=len(records),
        )

    @abstractmethod
    def _store(self, kind: str, source_inst_id: str, records: List[Dict[str, Any]]):
        pass

    @abstractmethod
    def _load(self, kind: str, source_inst_id: str) -> List[Dict[str, Any]]:
        pass


class InMemoryBufferWriter(BaseBufferWriter):
    """Keeps staged records in process memory"""

    def __init__(self):
        super().__init__()
        self._tables: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _store(self, kind: str, source_inst_id: str, records: List[Dict[str, Any]]):
        with self._lock:
            self._tables[(kind, source_inst_id)] = list(records)

    def _load(self, kind: str, source_inst_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._tables.get((kind, source_inst_id), []))


class JsonFileBufferWriter(BaseBufferWriter):
    """
    Writes staged records as JSON files.

    Layout: ``<output_dir>/<source_inst_id>/teams.json`` and ``users.json``.
    Files are replaced atomically.
    """

    def __init__(self, output_dir: Union[str, Path]):
        super().__init__()
        self.output_dir = Path(output_dir)
        self._lock = threading.Lock()

    def _path(self, kind: str, source_inst_id: str) -> Path:
        root = self.output_dir.resolve()
        source_dir = (root / source_inst_id).resolve()
        if source_dir.parent != root:
            raise ValueError(f"Source id {source_inst_id!r} escapes {self.output_dir}")
        return source_dir / f"{kind}.json"

    def _store(self, kind: str, source_inst_id: str, records: List[Dict[str, Any]]):
        path = self._path(kind, source_inst_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2, ensure_ascii=False, default=str)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

    def _load(self, kind: str, source_inst_id: str) -> List[Dict[str, Any]]:
        path = self._path(kind, source_inst_id)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return json.load(f)
