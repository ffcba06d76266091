import asyncio
import sqlite3
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from mnemos.application.service import (
    SchedulingService,
    generate_event_id,
    invalidation_scopes,
)
from mnemos.domain.errors import (
    ConcurrentModificationError,
    InvalidTransitionError,
    InvariantViolation,
    StoreUnavailableError,
    UnknownCardError,
)
from mnemos.domain.models import CardState, Rating
from mnemos.infrastructure.adapters.sqlite_store import SqliteStore

USER = "alice"
PROJECT = "spanish"


def test_event_ids_are_unique_ulids():
    a, b = generate_event_id(), generate_event_id()
    assert a != b
    assert a.startswith("evt_")
    assert len(a) == len("evt_") + 26


def test_invalidation_scopes_for_a_card():
    assert invalidation_scopes("u", "p", "c") == [
        "card-state:u:p:c",
        "project-stats:u:p",
        "daily-usage:u",
        "daily-usage:u:p",
    ]


# --- First access ---


@pytest.mark.asyncio
async def test_first_access_creates_new_state(service, add_cards, state_store, now):
    await add_cards(USER, PROJECT, "c1")

    state = await service.get_card_state(USER, PROJECT, "c1")

    assert state.state is CardState.NEW
    assert state.due == now
    assert state.version == 1
    assert (await state_store.load(USER, PROJECT, ["c1"]))["c1"] == state


@pytest.mark.asyncio
async def test_unknown_card_is_rejected(service, add_cards):
    await add_cards(USER, PROJECT, "c1")
    with pytest.raises(UnknownCardError):
        await service.get_card_state(USER, PROJECT, "missing")
    with pytest.raises(UnknownCardError):
        await service.rate_card(USER, PROJECT, "missing", "good")


# --- Rating ---


@pytest.mark.asyncio
async def test_rating_new_card_updates_state_and_usage(service, add_cards, invalidation):
    await add_cards(USER, PROJECT, "c1")

    state = await service.rate_card(USER, PROJECT, "c1", Rating.GOOD, event_id="evt_1")

    assert state.state is CardState.LEARNING
    assert state.last_event_id == "evt_1"
    usage = await service.get_daily_usage(USER, PROJECT)
    assert usage.project.new_cards_studied == 1
    assert usage.user.new_cards_studied == 1
    assert invalidation.scopes == invalidation_scopes(USER, PROJECT, "c1")


@pytest.mark.asyncio
async def test_rating_review_card_counts_a_review(service, add_cards, now):
    await add_cards(USER, PROJECT, "c1")
    state = await service.rate_card(USER, PROJECT, "c1", "easy")
    assert state.state is CardState.REVIEW

    later = state.due
    await service.rate_card(USER, PROJECT, "c1", "good", now=later)

    usage = await service.get_daily_usage(USER, PROJECT, now=later)
    assert usage.project.reviews_completed == 1
    assert usage.project.new_cards_studied == 0


@pytest.mark.asyncio
async def test_graduation_through_the_service(service, add_cards, now):
    await add_cards(USER, PROJECT, "c1")

    moment = now
    for _ in range(3):
        state = await service.rate_card(USER, PROJECT, "c1", "good", now=moment)
        moment = state.due

    assert state.state is CardState.REVIEW
    assert state.interval == 1
    assert state.ease == 2.5


@pytest.mark.asyncio
async def test_replayed_event_is_applied_once(service, add_cards):
    await add_cards(USER, PROJECT, "c1")

    first = await service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_same")
    second = await service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_same")

    assert second == first
    usage = await service.get_daily_usage(USER, PROJECT)
    assert usage.project.new_cards_studied == 1
    assert usage.project.reviews_completed == 0


@pytest.mark.asyncio
async def test_rating_a_suspended_card_fails(service, add_cards):
    await add_cards(USER, PROJECT, "c1")
    await service.suspend_card(USER, PROJECT, "c1")

    with pytest.raises(InvalidTransitionError):
        await service.rate_card(USER, PROJECT, "c1", "good")


@pytest.mark.asyncio
async def test_unknown_rating_fails_before_any_write(service, add_cards, state_store):
    await add_cards(USER, PROJECT, "c1")
    with pytest.raises(InvalidTransitionError):
        await service.rate_card(USER, PROJECT, "c1", "perfect")
    assert await state_store.load(USER, PROJECT, ["c1"]) == {}


# --- Concurrency ---


@pytest.fixture
def slow_loads(state_store):
    """Make every load yield to the event loop so concurrent callers interleave."""
    real_load = state_store.load

    async def slow_load(*args):
        result = await real_load(*args)
        await asyncio.sleep(0)
        return result

    state_store.load = slow_load


@pytest.mark.asyncio
async def test_concurrent_first_access_creates_one_row(
    service, add_cards, state_store, slow_loads
):
    await add_cards(USER, PROJECT, "c1")

    first, second = await asyncio.gather(
        service.get_card_state(USER, PROJECT, "c1"),
        service.get_card_state(USER, PROJECT, "c1"),
    )

    assert first == second
    assert first.version == 1
    assert (await state_store.load(USER, PROJECT, ["c1"]))["c1"].version == 1


@pytest.mark.asyncio
async def test_concurrent_ratings_are_both_applied(service, add_cards, slow_loads):
    await add_cards(USER, PROJECT, "c1")

    await asyncio.gather(
        service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_a"),
        service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_b"),
    )

    state = await service.get_card_state(USER, PROJECT, "c1")
    assert state.version == 3
    assert state.last_event_id in {"evt_a", "evt_b"}
    usage = await service.get_daily_usage(USER, PROJECT)
    assert usage.project.new_cards_studied == 1



@pytest.mark.asyncio
async def test_concurrent_modification_is_retried(service, add_cards, state_store):
    await add_cards(USER, PROJECT, "c1")
    real_save = state_store.save
    attempts = []

    async def flaky_save(user_id, project_id, state):
        attempts.append(state)
        if len(attempts) == 1:
            raise ConcurrentModificationError("written by another session")
        return await real_save(user_id, project_id, state)

    state_store.save = flaky_save

    state = await service.rate_card(USER, PROJECT, "c1", "good")

    assert len(attempts) == 2
    assert state.state is CardState.LEARNING


@pytest.mark.asyncio
async def test_retries_are_bounded(state_store, catalog, settings_provider, usage_store, add_cards):
    await add_cards(USER, PROJECT, "c1")
    state_store.save = AsyncMock(side_effect=ConcurrentModificationError("always"))
    service = SchedulingService(
        state_store, catalog, settings_provider, usage_store, max_write_retries=2
    )

    with pytest.raises(StoreUnavailableError):
        await service.rate_card(USER, PROJECT, "c1", "good")
    assert state_store.save.await_count == 3


@pytest.mark.asyncio
async def test_stale_version_is_rejected_by_store(service, add_cards, state_store):
    await add_cards(USER, PROJECT, "c1")
    stale = await service.get_card_state(USER, PROJECT, "c1")
    await service.rate_card(USER, PROJECT, "c1", "good")

    with pytest.raises(ConcurrentModificationError):
        await state_store.save(USER, PROJECT, stale)


# --- Settings and quotas ---


@pytest.mark.asyncio
async def test_project_quota_from_settings_provider(service, add_cards, settings_provider):
    settings_provider.project_overrides[(USER, PROJECT)] = {"new_cards_per_day": 1}
    await add_cards(USER, PROJECT, "c1", "c2", "c3")

    first = await service.get_next_card(USER, PROJECT)
    await service.rate_card(USER, PROJECT, first, "again")

    stats = await service.get_due_stats(USER, PROJECT)
    assert stats.available_new_cards == 0
    # The learning card is not due for another minute
    assert await service.get_next_card(USER, PROJECT) is None


@pytest.mark.asyncio
async def test_user_quota_spans_projects(service, add_cards, settings_provider):
    settings_provider.user_defaults[USER] = {"new_cards_per_day": 1}
    await add_cards(USER, PROJECT, "c1")
    await add_cards(USER, "german", "g1")

    await service.rate_card(USER, PROJECT, "c1", "good")

    stats = await service.get_due_stats(USER, "german")
    assert stats.available_new_cards == 0


@pytest.mark.asyncio
async def test_stats_match_selection(service, add_cards, now):
    await add_cards(USER, PROJECT, "c1", "c2")
    await service.rate_card(USER, PROJECT, "c1", "again")

    soon = now + timedelta(minutes=2)
    stats = await service.get_due_stats(USER, PROJECT, now=soon)

    assert stats.due_learning_cards == 1
    assert stats.available_new_cards == 1
    assert await service.get_next_card(USER, PROJECT, now=soon) == "c1"


# --- Leeches and maintenance ---


@pytest.mark.asyncio
async def test_leech_is_suspended_and_can_be_cleared(service, add_cards, settings_provider):
    settings_provider.user_defaults[USER] = {"leech_threshold": 1}
    await add_cards(USER, PROJECT, "c1")
    review = await service.rate_card(USER, PROJECT, "c1", "easy")

    lapsed = await service.rate_card(USER, PROJECT, "c1", "again", now=review.due)

    assert lapsed.is_leech is True
    assert lapsed.state is CardState.SUSPENDED
    assert await service.get_next_card(USER, PROJECT, now=review.due + timedelta(days=9)) is None

    cleared = await service.clear_leech(USER, PROJECT, "c1")
    assert cleared.is_leech is False
    assert cleared.state is CardState.RELEARNING


@pytest.mark.asyncio
async def test_unsuspend_restores_previous_state(service, add_cards):
    await add_cards(USER, PROJECT, "c1")
    await service.rate_card(USER, PROJECT, "c1", "easy")

    suspended = await service.suspend_card(USER, PROJECT, "c1")
    restored = await service.unsuspend_card(USER, PROJECT, "c1")

    assert suspended.state is CardState.SUSPENDED
    assert restored.state is CardState.REVIEW


@pytest.mark.asyncio
async def test_no_op_maintenance_skips_the_write(service, add_cards, invalidation):
    await add_cards(USER, PROJECT, "c1")
    before = await service.get_card_state(USER, PROJECT, "c1")

    after = await service.unsuspend_card(USER, PROJECT, "c1")

    assert after == before
    assert invalidation.scopes == []


@pytest.mark.asyncio
async def test_corrupt_state_is_quarantined_and_resettable(
    service, add_cards, state_store, make_state
):
    await add_cards(USER, PROJECT, "bad", "ok")
    corrupt = make_state("bad", state=CardState.REVIEW, interval=0, ease=0.4)
    await state_store.create_if_absent(USER, PROJECT, corrupt)

    with pytest.raises(InvariantViolation):
        await service.get_card_state(USER, PROJECT, "bad")
    with pytest.raises(InvariantViolation):
        await service.rate_card(USER, PROJECT, "bad", "good")

    stats = await service.get_due_stats(USER, PROJECT)
    assert stats.quarantined_cards == ("bad",)
    assert await service.get_next_card(USER, PROJECT) == "ok"

    repaired = await service.reset_card(USER, PROJECT, "bad")
    assert repaired.state is CardState.NEW
    assert (await service.get_due_stats(USER, PROJECT)).quarantined_cards == ()


# --- Side effects ---


@pytest.mark.asyncio
async def test_invalidation_failure_does_not_fail_the_rating(
    state_store, catalog, settings_provider, usage_store, add_cards
):
    await add_cards(USER, PROJECT, "c1")
    sink = AsyncMock()
    sink.invalidate.side_effect = StoreUnavailableError("cache down")
    service = SchedulingService(state_store, catalog, settings_provider, usage_store, sink)

    state = await service.rate_card(USER, PROJECT, "c1", "good")

    assert state.state is CardState.LEARNING
    assert sink.invalidate.await_count == 4


@pytest.mark.asyncio
async def test_rating_buries_siblings(service, add_cards, settings_provider):
    settings_provider.user_defaults[USER] = {"bury_siblings": True, "new_card_order": "due"}
    await add_cards(USER, PROJECT, "front", "back", sibling_key="note1")
    await add_cards(USER, PROJECT, "other")

    buried: set[str] = set()
    await service.rate_card(USER, PROJECT, "front", "good", buried=buried)

    assert buried == {"back"}
    assert await service.get_next_card(USER, PROJECT, buried=buried) == "other"


@pytest.mark.asyncio
async def test_aclose_closes_the_invalidation_sink(
    state_store, catalog, settings_provider, usage_store
):
    sink = AsyncMock()
    service = SchedulingService(state_store, catalog, settings_provider, usage_store, sink)

    await service.aclose()

    sink.aclose.assert_awaited_once()


# --- Unreadable rows ---


@pytest.mark.asyncio
async def test_unreadable_row_is_isolated_to_its_card(
    tmp_path, catalog, settings_provider, usage_store, add_cards, now
):
    store = SqliteStore(tmp_path / "mnemos.db")
    service = SchedulingService(
        store, catalog, settings_provider, usage_store, clock=lambda: now
    )
    await add_cards(USER, PROJECT, "bad", "good")
    await service.get_due_stats(USER, PROJECT)
    with sqlite3.connect(store.db_path) as conn:
        conn.execute("UPDATE card_states SET state = 'bogus' WHERE card_id = 'bad'")

    stats = await service.get_due_stats(USER, PROJECT)
    assert stats.quarantined_cards == ("bad",)
    assert stats.total_cards == 2
    assert stats.available_new_cards == 1
    assert await service.get_next_card(USER, PROJECT) == "good"

    with pytest.raises(InvariantViolation):
        await service.get_card_state(USER, PROJECT, "bad")
    with pytest.raises(InvariantViolation):
        await service.rate_card(USER, PROJECT, "bad", "good")
    with pytest.raises(InvariantViolation):
        await service.suspend_card(USER, PROJECT, "bad")

    repaired = await service.reset_card(USER, PROJECT, "bad")
    assert repaired.state is CardState.NEW
    assert repaired.version == 2
    assert (await service.get_due_stats(USER, PROJECT)).quarantined_cards == ()


# --- Review counting ---


@pytest.mark.asyncio
async def test_learning_steps_do_not_use_the_review_quota(
    service, add_cards, settings_provider, now
):
    settings_provider.user_defaults[USER] = {"max_reviews_per_day": 3}
    await add_cards(USER, PROJECT, "c1")

    moment = now
    for _ in range(3):
        state = await service.rate_card(USER, PROJECT, "c1", "good", now=moment)
        moment = state.due

    assert state.state is CardState.REVIEW
    usage = await service.get_daily_usage(USER, PROJECT, now=now)
    assert usage.project.new_cards_studied == 1
    assert usage.project.reviews_completed == 0
    assert usage.user.reviews_completed == 0


@pytest.mark.asyncio
async def test_only_the_lapse_of_a_review_card_is_counted(service, add_cards):
    await add_cards(USER, PROJECT, "c1")
    review = await service.rate_card(USER, PROJECT, "c1", "easy")

    lapsed = await service.rate_card(USER, PROJECT, "c1", "again", now=review.due)
    assert lapsed.state is CardState.RELEARNING
    await service.rate_card(USER, PROJECT, "c1", "good", now=lapsed.due)

    usage = await service.get_daily_usage(USER, PROJECT, now=review.due)
    assert usage.project.reviews_completed == 1
    assert usage.project.new_cards_studied == 0


# --- Undo and daily summary ---


@pytest.mark.asyncio
async def test_undo_restores_state_and_counters(service, add_cards, review_log):
    await add_cards(USER, PROJECT, "c1")
    before = await service.get_card_state(USER, PROJECT, "c1")
    await service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_1")

    restored = await service.undo_rating(USER, PROJECT, "c1")

    assert restored.state is CardState.NEW
    assert restored.last_event_id is None
    assert restored.version == 3
    assert replace(restored, version=0) == replace(before, version=0)
    usage = await service.get_daily_usage(USER, PROJECT)
    assert usage.project.new_cards_studied == 0
    assert usage.user.new_cards_studied == 0
    assert await review_log.entries(USER, PROJECT) == []
    assert (await service.get_due_stats(USER, PROJECT)).available_new_cards == 1


@pytest.mark.asyncio
async def test_repeated_undo_walks_back_through_history(service, add_cards, now):
    await add_cards(USER, PROJECT, "c1")
    review = await service.rate_card(USER, PROJECT, "c1", "easy", event_id="evt_1")
    await service.rate_card(USER, PROJECT, "c1", "good", now=review.due, event_id="evt_2")

    first = await service.undo_rating(USER, PROJECT, "c1")
    assert first.state is CardState.REVIEW
    assert first.last_event_id == "evt_1"
    later = await service.get_daily_usage(USER, PROJECT, now=review.due)
    assert later.project.reviews_completed == 0

    second = await service.undo_rating(USER, PROJECT, "c1")
    assert second.state is CardState.NEW
    assert (await service.get_daily_usage(USER, PROJECT, now=now)).project.new_cards_studied == 0

    with pytest.raises(InvalidTransitionError):
        await service.undo_rating(USER, PROJECT, "c1")


@pytest.mark.asyncio
async def test_undo_of_a_superseded_rating_is_refused(service, add_cards):
    await add_cards(USER, PROJECT, "c1")
    first = await service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_1")
    await service.rate_card(USER, PROJECT, "c1", "good", now=first.due, event_id="evt_2")

    with pytest.raises(InvalidTransitionError):
        await service.undo_rating(USER, PROJECT, "c1", event_id="evt_1")
    with pytest.raises(InvalidTransitionError):
        await service.undo_rating(USER, PROJECT, "c1", event_id="evt_unknown")


@pytest.mark.asyncio
async def test_interrupted_undo_can_be_retried(service, add_cards, usage_store):
    await add_cards(USER, PROJECT, "c1")
    await service.rate_card(USER, PROJECT, "c1", "good", event_id="evt_1")
    real_release = usage_store.release
    usage_store.release = AsyncMock(side_effect=StoreUnavailableError("counters down"))

    with pytest.raises(StoreUnavailableError):
        await service.undo_rating(USER, PROJECT, "c1", event_id="evt_1")
    usage_store.release = real_release

    restored = await service.undo_rating(USER, PROJECT, "c1", event_id="evt_1")

    assert restored.state is CardState.NEW
    assert (await service.get_daily_usage(USER, PROJECT)).project.new_cards_studied == 0


@pytest.mark.asyncio
async def test_undo_needs_a_review_log(
    state_store, catalog, settings_provider, usage_store, add_cards
):
    await add_cards(USER, PROJECT, "c1")
    service = SchedulingService(state_store, catalog, settings_provider, usage_store)
    await service.rate_card(USER, PROJECT, "c1", "good")

    with pytest.raises(InvalidTransitionError):
        await service.undo_rating(USER, PROJECT, "c1")


@pytest.mark.asyncio
async def test_review_summary_for_today(service, add_cards, now):
    await add_cards(USER, PROJECT, "c1", "c2")
    await service.rate_card(USER, PROJECT, "c1", "again")
    await service.rate_card(USER, PROJECT, "c2", "good")
    await service.rate_card(USER, PROJECT, "c2", "good", now=now + timedelta(days=1))

    summary = await service.get_review_summary(USER, PROJECT)

    assert summary.day == now.date()
    assert summary.ratings == 2
    assert summary.lapses == 1
    assert summary.accuracy == 50.0
    assert summary.new_cards_studied == 2
    assert summary.reviews_completed == 0
    assert summary.estimated_seconds == 60
