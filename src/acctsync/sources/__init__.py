"""
Directory sources module.

This package contains the connectors that read teams and users from
external identity providers. Each connector inherits from
BaseDirectoryClient and implements the fetch and convert methods.

Available sources:
- PortalDirectoryClient: OAuth2 client-credentials "digital portal" API
"""

from .base_source import (
    AccountSourceInstance,
    AttrInfo,
    BaseDirectoryClient,
    ConfigError,
    SourceError,
    TeamBuffer,
    TeamNode,
    UpstreamFailure,
    UserBuffer,
    build_team_tree,
)

from .portal_client import PortalConfig, PortalDirectoryClient, TokenProvider


__all__ = [
    # Data model
    "AccountSourceInstance",
    "TeamBuffer",
    "UserBuffer",
    "TeamNode",
    "AttrInfo",
    "build_team_tree",
    # Base classes
    "BaseDirectoryClient",
    # Exceptions
    "SourceError",
    "UpstreamFailure",
    "ConfigError",
    # Sources
    "PortalDirectoryClient",
    "PortalConfig",
    "TokenProvider",
]
