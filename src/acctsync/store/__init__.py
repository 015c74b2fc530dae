"""
Store module - Source profiles and the staging buffer.

- SourceRegistry: Lookup of configured account source instances
- BufferWriter: Staging tables for scanned teams and users
"""

from .source_registry import SourceRegistry
from .buffer_writer import BaseBufferWriter, InMemoryBufferWriter, JsonFileBufferWriter


__all__ = [
    "SourceRegistry",
    "BaseBufferWriter",
    "InMemoryBufferWriter",
    "JsonFileBufferWriter",
]
