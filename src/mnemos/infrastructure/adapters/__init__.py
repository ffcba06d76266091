# Infrastructure Adapters Package
from .invalidation import HttpInvalidationSink, LoggingInvalidationSink, RecordingInvalidationSink
from .memory import (
    MemoryCardCatalog,
    MemoryCardStateStore,
    MemoryReviewLog,
    MemorySettingsProvider,
    MemoryUsageStore,
)
from .sqlite_store import SqliteStore
from .yaml_settings import YamlSettingsProvider

__all__ = [
    "MemoryCardStateStore",
    "MemoryUsageStore",
    "MemoryCardCatalog",
    "MemoryReviewLog",
    "MemorySettingsProvider",
    "SqliteStore",
    "YamlSettingsProvider",
    "LoggingInvalidationSink",
    "RecordingInvalidationSink",
    "HttpInvalidationSink",
]
