"""
Service Factory
Centralizes the logic for selecting adapters from the engine configuration.
"""

import logging

from mnemos.application.config import EngineConfig
from mnemos.application.service import SchedulingService
from mnemos.domain.ports import (
    CardCatalog,
    CardStateStore,
    DailyUsageStore,
    InvalidationSink,
    ReviewLog,
    SettingsProvider,
)
from mnemos.infrastructure.adapters.invalidation import (
    HttpInvalidationSink,
    LoggingInvalidationSink,
)
from mnemos.infrastructure.adapters.memory import (
    MemoryCardCatalog,
    MemoryCardStateStore,
    MemoryReviewLog,
    MemorySettingsProvider,
    MemoryUsageStore,
)
from mnemos.infrastructure.adapters.sqlite_store import SqliteStore
from mnemos.infrastructure.adapters.yaml_settings import YamlSettingsProvider

logger = logging.getLogger(__name__)

Stores = tuple[CardStateStore, CardCatalog, DailyUsageStore, ReviewLog]


def get_stores(config: EngineConfig) -> Stores:
    """
    Returns the state store, card catalog, usage store and review log for the
    configured backend.
    """
    if config.backend == "memory":
        return (
            MemoryCardStateStore(),
            MemoryCardCatalog(),
            MemoryUsageStore(),
            MemoryReviewLog(config.undo_history_limit),
        )

    store = SqliteStore(config.db_path, history_limit=config.undo_history_limit)
    return store, store, store, store


def get_settings_provider(config: EngineConfig) -> SettingsProvider:
    if config.settings_file is not None:
        return YamlSettingsProvider(config.settings_file)
    logger.debug("No settings file configured; every user gets the global defaults")
    return MemorySettingsProvider()


def get_invalidation_sink(config: EngineConfig) -> InvalidationSink:
    if config.invalidation_url:
        return HttpInvalidationSink(config.invalidation_url, timeout=config.invalidation_timeout)
    return LoggingInvalidationSink()


def build_service(config: EngineConfig, stores: Stores | None = None) -> SchedulingService:
    state_store, catalog, usage_store, review_log = stores or get_stores(config)
    return SchedulingService(
        state_store=state_store,
        catalog=catalog,
        settings_provider=get_settings_provider(config),
        usage_store=usage_store,
        invalidation=get_invalidation_sink(config),
        max_write_retries=config.max_write_retries,
        review_log=review_log,
    )
