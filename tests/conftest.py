import random
from datetime import datetime, timezone

import pytest

from mnemos.application.service import SchedulingService
from mnemos.application.settings_resolver import default_settings
from mnemos.domain.models import CardRef, CardSchedulingState, CardState, Rating, ReviewLogEntry
from mnemos.infrastructure.adapters.invalidation import RecordingInvalidationSink
from mnemos.infrastructure.adapters.memory import (
    MemoryCardCatalog,
    MemoryCardStateStore,
    MemoryReviewLog,
    MemorySettingsProvider,
    MemoryUsageStore,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return default_settings()


@pytest.fixture
def make_state(now):
    """Build a CardSchedulingState with sensible defaults for the given lifecycle state."""

    def _make(card_id="c1", state=CardState.NEW, **kwargs):
        defaults = {
            "due": now,
            "interval": 1 if state is CardState.REVIEW else 0,
            "ease": 2.5,
            "created_at": now,
        }
        defaults.update(kwargs)
        return CardSchedulingState(card_id=card_id, state=state, **defaults)

    return _make


@pytest.fixture
def make_entry(make_state, now):
    """Build a ReviewLogEntry whose previous state is a fresh New card."""

    def _make(event_id, card_id="c1", rating=Rating.GOOD, **kwargs):
        previous = kwargs.pop("previous", None) or make_state(card_id)
        return ReviewLogEntry(
            event_id=event_id,
            card_id=card_id,
            rating=rating,
            rated_at=kwargs.pop("rated_at", now),
            day=kwargs.pop("day", now.date()),
            previous=previous,
        )

    return _make


@pytest.fixture
def state_store():
    return MemoryCardStateStore()


@pytest.fixture
def usage_store():
    return MemoryUsageStore()


@pytest.fixture
def catalog():
    return MemoryCardCatalog()


@pytest.fixture
def settings_provider():
    return MemorySettingsProvider()


@pytest.fixture
def review_log():
    return MemoryReviewLog()


@pytest.fixture
def invalidation():
    return RecordingInvalidationSink()


@pytest.fixture
def service(state_store, catalog, settings_provider, usage_store, invalidation, review_log, now):
    """A service over in-memory adapters with a fixed clock and seeded shuffle."""
    return SchedulingService(
        state_store=state_store,
        catalog=catalog,
        settings_provider=settings_provider,
        usage_store=usage_store,
        invalidation=invalidation,
        rng=random.Random(7),
        clock=lambda: now,
        review_log=review_log,
    )


@pytest.fixture
def add_cards(catalog):
    """Register cards with a project: ``await add_cards("alice", "spanish", "c1", "c2")``."""

    async def _add(user_id, project_id, *card_ids, sibling_key=None):
        for card_id in card_ids:
            await catalog.add_card(
                user_id, project_id, CardRef(card_id=card_id, sibling_key=sibling_key)
            )

    return _add


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Mocks Path.home() to point to a temp dir."""
    home = tmp_path / "home"
    home.mkdir()

    # Mocking HOME to a temp directory to isolate config and data files
    monkeypatch.setenv("HOME", str(home))
    return home
