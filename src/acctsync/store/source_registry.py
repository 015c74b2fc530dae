"""
Source Registry - Lookup of configured account source instances.

Instances are usually loaded from a YAML file:

    sources:
      - id: src-1
        name: Digital Portal
        base_url: https://portal.example.com
        client_id: acct-sync
        client_secret: s3cret
        config:
          org_code: "0001"
          page_size: 100
"""

import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from ..sources.base_source import AccountSourceInstance, ConfigError


class SourceRegistry:
    """
    In-process registry of AccountSourceInstance objects keyed by id.

    Example:
        >>> registry = SourceRegistry.from_yaml("sources.yaml")
        >>> instance = registry.get("src-1")
    """

    def __init__(self, instances: Optional[Iterable[AccountSourceInstance]] = None):
        self._instances: Dict[str, AccountSourceInstance] = {}
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(__name__)

        for instance in instances or []:
            self.register(instance)

    def register(self, instance: AccountSourceInstance):
        """
        Add or replace a source instance.

        Args:
            instance: Instance to register
        """
        with self._lock:
            replaced = instance.id in self._instances
            self._instances[instance.id] = instance

        self.logger.debug("source_registered", source=instance.id, replaced=replaced)

    def get(self, source_inst_id: str) -> Optional[AccountSourceInstance]:
        """Return the instance with this id, or None"""
        with self._lock:
            return self._instances.get(source_inst_id)

    def list(self) -> List[AccountSourceInstance]:
        """All registered instances, ordered by id"""
        with self._lock:
            return [self._instances[key] for key in sorted(self._instances)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceRegistry":
        """
        Build a registry from parsed configuration.

        Args:
            data: Mapping with a top-level ``sources`` list

        Raises:
            ConfigError: If the structure or any source is invalid
        """
        if not isinstance(data, dict):
            raise ConfigError("Source configuration must be a mapping")

        entries = data.get("sources") or []
        if not isinstance(entries, list):
            raise ConfigError("'sources' must be a list")

        instances = []
        seen = set()
        for index, entry in enumerate(entries):
            try:
                instance = AccountSourceInstance.model_validate(entry)
            except ValidationError as e:
                raise ConfigError(f"Invalid source at position {index}: {e}") from e

            if instance.id in seen:
                raise ConfigError(f"Duplicate source id: {instance.id}")
            seen.add(instance.id)
            instances.append(instance)

        return cls(instances)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SourceRegistry":
        """
        Load a registry from a YAML file.

        Raises:
            ConfigError: If the file is missing, unparsable or invalid
        """
        path = Path(path)
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read source config {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse source config {path}: {e}") from e

        registry = cls.from_dict(data)
        registry.logger.info("sources_loaded", path=str(path), count=len(registry))
        return registry
