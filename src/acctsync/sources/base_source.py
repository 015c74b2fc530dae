"""
Base Source - Shared data model and interface for directory sources.

This module defines the records every directory source produces (teams and
users shaped for the buffer tables) and the abstract client that a
connector for one external identity provider must implement.

Design Pattern: Strategy Pattern
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


logger = structlog.get_logger(__name__)


class AccountSourceInstance(BaseModel):
    """
    One configured connection to an external directory.

    Loaded once per scan and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    source_type: str = "portal"
    base_url: str
    client_id: str
    client_secret: SecretStr
    config: Dict[str, Any] = Field(default_factory=dict)
    last_synced_at: Optional[datetime] = None

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        # Ids name buffer directories on disk
        if not value or value in (".", "..") or "/" in value or "\\" in value:
            raise ValueError(f"invalid source id: {value!r}")
        return value

    def describe(self) -> Dict[str, Any]:
        """Log-safe summary (no credentials)"""
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type,
            "base_url": self.base_url,
        }


@dataclass
class TeamBuffer:
    """An organizational unit staged for the team buffer table"""
    source_team_id: str
    name: str
    source_inst_id: str
    parent_source_team_id: Optional[str] = None
    sort_order: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "source_team_id": self.source_team_id,
            "name": self.name,
            "source_inst_id": self.source_inst_id,
            "parent_source_team_id": self.parent_source_team_id,
            "sort_order": self.sort_order,
            "raw": self.raw,
        }


@dataclass
class UserBuffer:
    """A user staged for the user buffer table"""
    source_user_id: str
    username: str
    source_inst_id: str
    display_name: Optional[str] = None
    mobile: Optional[str] = None
    email: Optional[str] = None
    team_ids: List[str] = field(default_factory=list)
    status: str = "active"
    attrs: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "source_user_id": self.source_user_id,
            "username": self.username,
            "source_inst_id": self.source_inst_id,
            "display_name": self.display_name,
            "mobile": self.mobile,
            "email": self.email,
            "team_ids": self.team_ids,
            "status": self.status,
            "attrs": self.attrs,
            "raw": self.raw,
        }


@dataclass
class TeamNode:
    """A team with its children, for tree views"""
    team: TeamBuffer
    children: List["TeamNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.team.source_team_id,
            "name": self.team.name,
            "children": [child.to_dict() for child in self.children],
        }


@dataclass
class AttrInfo:
    """A user attribute the source can supply"""
    key: str
    label: str
    source_field: str


class BaseDirectoryClient(ABC):
    """
    Abstract base class for external directory connectors.

    The fetch methods return the provider's raw records; the convert methods
    map them onto buffer records. Keeping the two apart lets the scan
    coordinator log raw counts before any mapping happens.

    Example:
        >>> class PortalDirectoryClient(BaseDirectoryClient):
        ...     async def fetch_teams(self, instance):
        ...         return [{"orgId": "1", "orgName": "HQ"}]

        >>> records = await client.fetch_teams(instance)
        >>> teams = client.convert_teams(records, instance)
    """

    @abstractmethod
    async def fetch_teams(self, instance: AccountSourceInstance) -> List[Dict[str, Any]]:
        """
        Fetch every organizational unit from the source.

        Raises:
            UpstreamFailure: On transport, auth, or parse errors
        """
        pass

    @abstractmethod
    async def fetch_users(
        self,
        instance: AccountSourceInstance,
        scan_all: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Fetch users from the source.

        Args:
            instance: Source to read
            scan_all: Full fetch when True, incremental when False

        Raises:
            UpstreamFailure: On transport, auth, or parse errors
        """
        pass

    @abstractmethod
    def convert_teams(
        self,
        records: List[Dict[str, Any]],
        instance: AccountSourceInstance,
    ) -> List[TeamBuffer]:
        pass

    @abstractmethod
    def convert_users(
        self,
        records: List[Dict[str, Any]],
        instance: AccountSourceInstance,
    ) -> List[UserBuffer]:
        pass

    async def get_source_user(
        self,
        instance: AccountSourceInstance,
        source_user_id: str,
    ) -> Optional[UserBuffer]:
        """Look up a single user by its source id"""
        users = self.convert_users(await self.fetch_users(instance, scan_all=True), instance)
        for user in users:
            if user.source_user_id == source_user_id:
                return user
        return None

    async def get_source_user_id_by_mobile(
        self,
        instance: AccountSourceInstance,
        mobile: str,
    ) -> Optional[str]:
        """Find the source id of the user with this mobile number"""
        users = self.convert_users(await self.fetch_users(instance, scan_all=True), instance)
        for user in users:
            if user.mobile and user.mobile == mobile:
                return user.source_user_id
        return None

    async def get_team_tree(
        self,
        instance: AccountSourceInstance,
        query: Optional[str] = None,
    ) -> List[TeamNode]:
        """
        Build the team hierarchy.

        Args:
            instance: Source to read
            query: Optional case-insensitive name filter; matching teams are
                returned as roots with their subtrees

        Returns:
            Root nodes (empty if the source has no teams)
        """
        teams = self.convert_teams(await self.fetch_teams(instance), instance)
        return build_team_tree(teams, query)

    def get_user_attrs(self, instance: AccountSourceInstance) -> List[AttrInfo]:
        """Attributes this source can supply for users"""
        return []


def build_team_tree(teams: List[TeamBuffer], query: Optional[str] = None) -> List[TeamNode]:
    """
    Arrange flat team records into a forest.

    Teams whose parent is missing from the batch become roots. A parent link
    that would close a loop is dropped and its team becomes a root. With a
    query, the roots are the teams whose name contains it.
    """
    nodes = {team.source_team_id: TeamNode(team=team) for team in teams}
    attached: Dict[str, str] = {}
    roots: List[TeamNode] = []

    for team in teams:
        node = nodes[team.source_team_id]
        parent_id = team.parent_source_team_id
        parent = nodes.get(parent_id) if parent_id else None
        if parent is None:
            roots.append(node)
        elif _is_ancestor(team.source_team_id, parent_id, attached):
            logger.warning(
                "team_tree_cycle",
                team=team.source_team_id,
                parent=parent_id,
                source=team.source_inst_id,
            )
            roots.append(node)
        else:
            parent.children.append(node)
            attached[team.source_team_id] = parent_id

    for node in nodes.values():
        node.children.sort(key=lambda child: (child.team.sort_order, child.team.name))

    if query:
        needle = query.lower()
        return [node for node in nodes.values() if needle in node.team.name.lower()]

    return sorted(roots, key=lambda root: (root.team.sort_order, root.team.name))


def _is_ancestor(team_id: str, start_id: str, attached: Dict[str, str]) -> bool:
    # attached links always form a forest, so the walk ends
    current: Optional[str] = start_id
    while current is not None:
        if current == team_id:
            return True
        current = attached.get(current)
    return False


class SourceError(Exception):
    """Base exception for directory source errors"""
    pass


class UpstreamFailure(SourceError):
    """Raised when the external API fails (transport, auth, or parsing)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(SourceError):
    """Raised when a source profile is invalid"""
    pass
