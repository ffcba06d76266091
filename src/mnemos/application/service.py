"""
Scheduling Service: Application layer orchestrator.

Coordinates settings resolution, card state persistence, the scheduler core,
daily quotas and session selection behind the operation set a host calls.

Follows Dependency Inversion: depends on the ports in mnemos.domain.ports,
not on concrete adapters.
"""

import logging
import random
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime

from ulid import ULID

from mnemos.domain.constants import DEFAULT_MAX_WRITE_RETRIES, ESTIMATED_SECONDS_PER_CARD
from mnemos.domain.errors import (
    ConcurrentModificationError,
    CorruptStateError,
    InvalidTransitionError,
    StoreUnavailableError,
    UnknownCardError,
)
from mnemos.domain.invariants import ensure_valid
from mnemos.domain.models import (
    CardRef,
    CardSchedulingState,
    DailyUsage,
    EffectiveSettings,
    QueueStats,
    Rating,
    ReviewLogEntry,
    ReviewSummary,
)
from mnemos.domain.ports import (
    CardCatalog,
    CardStateStore,
    DailyUsageStore,
    InvalidationSink,
    ReviewLog,
    SettingsProvider,
    StoredState,
)
from mnemos.domain.timeutil import ensure_aware, utc_now

from . import scheduler
from .quota import DailyQuotaTracker
from .session_selector import bury_siblings, compute_stats, select_next
from .settings_resolver import resolve_settings

logger = logging.getLogger(__name__)


def generate_event_id() -> str:
    """Generate a unique rating-event id using ULID."""
    return f"evt_{ULID()}"


def invalidation_scopes(user_id: str, project_id: str, card_id: str | None = None) -> list[str]:
    """Cache scopes made stale by a write to one card of a project."""
    scopes = []
    if card_id is not None:
        scopes.append(f"card-state:{user_id}:{project_id}:{card_id}")
    scopes.extend(
        [
            f"project-stats:{user_id}:{project_id}",
            f"daily-usage:{user_id}",
            f"daily-usage:{user_id}:{project_id}",
        ]
    )
    return scopes


def summarize_reviews(
    usage: DailyUsage, entries: Iterable[ReviewLogEntry]
) -> ReviewSummary:
    """Day figures: counters from the usage store, rating mix from the day's log entries."""
    todays = [e for e in entries if e.day == usage.day]
    passed = sum(1 for e in todays if e.rating in (Rating.GOOD, Rating.EASY))
    return ReviewSummary(
        day=usage.day,
        new_cards_studied=usage.project.new_cards_studied,
        reviews_completed=usage.project.reviews_completed,
        ratings=len(todays),
        lapses=sum(1 for e in todays if e.rating is Rating.AGAIN),
        accuracy=passed / len(todays) * 100 if todays else 0.0,
        estimated_seconds=len(todays) * ESTIMATED_SECONDS_PER_CARD,
    )


class SchedulingService:
    """
    Host-facing operations of the scheduling engine.

    Holds no per-user state between calls: settings, card states and daily
    usage are fetched fresh for every decision.
    """

    def __init__(
        self,
        state_store: CardStateStore,
        catalog: CardCatalog,
        settings_provider: SettingsProvider,
        usage_store: DailyUsageStore,
        invalidation: InvalidationSink | None = None,
        max_write_retries: int = DEFAULT_MAX_WRITE_RETRIES,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
        review_log: ReviewLog | None = None,
    ):
        """
        Args:
            state_store: Per-card scheduling state (port).
            catalog: Lists the cards of a project (port).
            settings_provider: Raw user and project settings records (port).
            usage_store: Daily counters (port).
            invalidation: Optional sink told about stale cache scopes.
            max_write_retries: Re-reads allowed after a concurrent modification.
            rng: Random source for the Random new-card order.
            clock: Returns the current time when callers do not pass one.
            review_log: History of applied ratings; without it ratings cannot be undone.
        """
        self._store = state_store
        self._catalog = catalog
        self._settings = settings_provider
        self._quota = DailyQuotaTracker(usage_store)
        self._invalidation = invalidation
        self._max_write_retries = max_write_retries
        self._rng = rng
        self._clock = clock
        self._review_log = review_log

    async def aclose(self) -> None:
        """Release connections held by adapters."""
        if self._invalidation is not None:
            await self._invalidation.aclose()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_settings(self, user_id: str, project_id: str) -> EffectiveSettings:
        project = await self._settings.get_project_overrides(user_id, project_id)
        user = await self._settings.get_user_defaults(user_id)
        return resolve_settings(project, user)

    async def get_card_state(
        self, user_id: str, project_id: str, card_id: str, now: datetime | None = None
    ) -> CardSchedulingState:
        """
        Return the card's state, creating its row on first access.

        Raises:
            UnknownCardError: The card is not in the project.
            InvariantViolation: The stored state is corrupt.
        """
        now = self._now(now)
        settings = await self.get_settings(user_id, project_id)
        ref = await self._card_ref(user_id, project_id, card_id)
        state = await self._ensure_state(user_id, project_id, ref, settings, now)
        return ensure_valid(state, settings)

    async def get_due_stats(
        self,
        user_id: str,
        project_id: str,
        now: datetime | None = None,
        buried: Iterable[str] = (),
    ) -> QueueStats:
        now = self._now(now)
        settings, states, undecodable, usage = await self._snapshot(user_id, project_id, now)
        return compute_stats(states, usage, settings, now, buried, undecodable)

    async def get_next_card(
        self,
        user_id: str,
        project_id: str,
        now: datetime | None = None,
        buried: Iterable[str] = (),
    ) -> str | None:
        now = self._now(now)
        settings, states, _, usage = await self._snapshot(user_id, project_id, now)
        return select_next(states, usage, settings, buried, now, self._rng)

    async def get_daily_usage(
        self, user_id: str, project_id: str, now: datetime | None = None
    ) -> DailyUsage:
        now = self._now(now)
        settings = await self.get_settings(user_id, project_id)
        day = self._quota.study_day(now, settings.timezone)
        return await self._quota.daily_usage(user_id, project_id, day)

    async def get_review_summary(
        self, user_id: str, project_id: str, now: datetime | None = None
    ) -> ReviewSummary:
        """Today's study figures for the project, including lapses and accuracy."""
        usage = await self.get_daily_usage(user_id, project_id, now)
        entries = []
        if self._review_log is not None:
            entries = await self._review_log.entries(user_id, project_id)
        return summarize_reviews(usage, entries)

    # ------------------------------------------------------------------
    # Rating
    # ------------------------------------------------------------------

    async def rate_card(
        self,
        user_id: str,
        project_id: str,
        card_id: str,
        rating: Rating | str | int,
        now: datetime | None = None,
        event_id: str | None = None,
        buried: set[str] | None = None,
    ) -> CardSchedulingState:
        """
        Apply a rating and persist the result.

        Safe to retry with the same ``event_id``: a rating already applied to the
        card is not applied again, and counters are only counted once.

        Args:
            buried: The session's buried set; siblings of the card are added to it
                when bury_siblings is enabled.

        Raises:
            InvalidTransitionError: Unknown rating, or the card is suspended.
            InvariantViolation: The stored state is corrupt.
            StoreUnavailableError: The store failed or kept changing underneath us.
        """
        rating = Rating.parse(rating)
        now = self._now(now)
        event_id = event_id or generate_event_id()
        settings = await self.get_settings(user_id, project_id)
        refs = await self._catalog.list_cards(user_id, project_id)
        ref = self._find_ref(refs, project_id, card_id)
        day = self._quota.study_day(now, settings.timezone)

        for attempt in range(self._max_write_retries + 1):
            current = await self._ensure_state(user_id, project_id, ref, settings, now)
            ensure_valid(current, settings)

            if current.last_event_id == event_id:
                logger.info(f"Rating {event_id} already applied to card {card_id}")
                saved = current
                rated_from = current.last_rated_from
                break

            rated_from = current.state
            updated = scheduler.apply_rating(current, rating, settings, now, event_id)
            if self._review_log is not None:
                entry = ReviewLogEntry(event_id, card_id, rating, now, day, previous=current)
                await self._review_log.record(user_id, project_id, entry)
            try:
                saved = await self._store.save(user_id, project_id, updated)
                break
            except ConcurrentModificationError:
                logger.info(
                    f"Card {card_id} changed during rating (attempt {attempt + 1}); re-reading"
                )
        else:
            raise StoreUnavailableError(
                f"Card {card_id} kept changing; gave up after {self._max_write_retries} retries"
            )

        if rated_from is not None:
            await self._quota.record_rating(user_id, project_id, day, rated_from, event_id)

        if buried is not None:
            bury_siblings(buried, card_id, {r.card_id: r.sibling_key for r in refs}, settings)

        await self._invalidate(invalidation_scopes(user_id, project_id, card_id))
        return saved

    async def undo_rating(
        self,
        user_id: str,
        project_id: str,
        card_id: str,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> CardSchedulingState:
        """
        Revert a rating and give back the daily counters it charged.

        Only the card's latest rating can be undone; undoing repeatedly walks
        back through the kept history. Retrying an undo that already restored
        the card finishes releasing the counters.

        Args:
            event_id: Rating to undo. Defaults to the card's latest rating.

        Raises:
            InvalidTransitionError: There is no review log, the rating is not in
                it, or the card changed after that rating.
            StoreUnavailableError: The store failed or kept changing underneath us.
        """
        if self._review_log is None:
            raise InvalidTransitionError("Ratings cannot be undone without a review log")
        now = self._now(now)
        settings = await self.get_settings(user_id, project_id)
        ref = await self._card_ref(user_id, project_id, card_id)

        for attempt in range(self._max_write_retries + 1):
            current = await self._ensure_state(user_id, project_id, ref, settings, now)
            target = event_id or current.last_event_id
            if target is None:
                raise InvalidTransitionError(f"Card {card_id} has no rating to undo")
            entry = await self._review_log.get(user_id, project_id, target)
            if entry is None or entry.card_id != card_id:
                raise InvalidTransitionError(
                    f"Rating {target} of card {card_id} is not in the review history"
                )

            if current.last_event_id != target:
                if replace(current, version=0) != replace(entry.previous, version=0):
                    raise InvalidTransitionError(
                        f"Card {card_id} changed after rating {target}; undo it first"
                    )
                logger.info(f"Card {card_id} already restored from rating {target}")
                restored = current
                break

            try:
                restored = await self._store.save(
                    user_id, project_id, replace(entry.previous, version=current.version)
                )
                break
            except ConcurrentModificationError:
                logger.info(
                    f"Card {card_id} changed during undo (attempt {attempt + 1}); re-reading"
                )
        else:
            raise StoreUnavailableError(
                f"Card {card_id} kept changing; gave up after {self._max_write_retries} retries"
            )

        await self._quota.release_rating(user_id, project_id, entry.day, entry.rated_from, target)
        await self._review_log.remove(user_id, project_id, target)
        logger.info(f"Undid rating {target} of card {card_id}")

        await self._invalidate(invalidation_scopes(user_id, project_id, card_id))
        return restored

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def clear_leech(
        self, user_id: str, project_id: str, card_id: str, now: datetime | None = None
    ) -> CardSchedulingState:
        now = self._now(now)
        return await self._mutate(
            user_id, project_id, card_id, now, lambda s, _: scheduler.clear_leech(s, now)
        )

    async def suspend_card(
        self, user_id: str, project_id: str, card_id: str, now: datetime | None = None
    ) -> CardSchedulingState:
        now = self._now(now)
        return await self._mutate(
            user_id, project_id, card_id, now, lambda s, _: scheduler.suspend(s)
        )

    async def unsuspend_card(
        self, user_id: str, project_id: str, card_id: str, now: datetime | None = None
    ) -> CardSchedulingState:
        now = self._now(now)
        return await self._mutate(
            user_id, project_id, card_id, now, lambda s, _: scheduler.unsuspend(s, now)
        )

    async def reset_card(
        self, user_id: str, project_id: str, card_id: str, now: datetime | None = None
    ) -> CardSchedulingState:
        """Make the card New again. Also the way out for a quarantined card."""
        now = self._now(now)
        return await self._mutate(
            user_id,
            project_id,
            card_id,
            now,
            lambda s, settings: scheduler.reset_progress(s, settings, now),
            validate=False,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _now(self, now: datetime | None) -> datetime:
        return ensure_aware(now) if now is not None else self._clock()

    async def _mutate(
        self,
        user_id: str,
        project_id: str,
        card_id: str,
        now: datetime,
        change: Callable[[CardSchedulingState, EffectiveSettings], CardSchedulingState],
        validate: bool = True,
    ) -> CardSchedulingState:
        """
        Read-change-save loop for maintenance operations.

        With ``validate`` off, a corrupt row is accepted as input, and a row that
        cannot be decoded at all is replaced by a fresh New state.
        """
        settings = await self.get_settings(user_id, project_id)
        ref = await self._card_ref(user_id, project_id, card_id)

        for attempt in range(self._max_write_retries + 1):
            try:
                current = await self._ensure_state(user_id, project_id, ref, settings, now)
            except CorruptStateError as e:
                if validate:
                    raise
                logger.warning(f"Replacing undecodable state of card {card_id}: {e}")
                current = None
                fresh = scheduler.new_card_state(card_id, settings, now, ref.created_at)
                updated = change(replace(fresh, version=e.version), settings)
            else:
                if validate:
                    ensure_valid(current, settings)
                updated = change(current, settings)
                if updated == current:
                    return current
            try:
                saved = await self._store.save(user_id, project_id, updated)
                break
            except ConcurrentModificationError:
                logger.info(
                    f"Card {card_id} changed during update (attempt {attempt + 1}); re-reading"
                )
        else:
            raise StoreUnavailableError(
                f"Card {card_id} kept changing; gave up after {self._max_write_retries} retries"
            )

        await self._invalidate(invalidation_scopes(user_id, project_id, card_id))
        return saved

    async def _snapshot(
        self, user_id: str, project_id: str, now: datetime
    ) -> tuple[EffectiveSettings, list[CardSchedulingState], list[str], DailyUsage]:
        """Everything one selection decision reads, plus the cards whose rows are unreadable."""
        settings = await self.get_settings(user_id, project_id)
        refs = await self._catalog.list_cards(user_id, project_id)
        loaded = await self._ensure_states(user_id, project_id, refs, settings, now)
        states: list[CardSchedulingState] = []
        undecodable: list[str] = []
        for ref, state in zip(refs, loaded):
            if isinstance(state, CorruptStateError):
                undecodable.append(ref.card_id)
            else:
                states.append(state)
        day = self._quota.study_day(now, settings.timezone)
        usage = await self._quota.daily_usage(user_id, project_id, day)
        return settings, states, undecodable, usage

    async def _card_ref(self, user_id: str, project_id: str, card_id: str) -> CardRef:
        refs = await self._catalog.list_cards(user_id, project_id)
        return self._find_ref(refs, project_id, card_id)

    @staticmethod
    def _find_ref(refs: list[CardRef], project_id: str, card_id: str) -> CardRef:
        for ref in refs:
            if ref.card_id == card_id:
                return ref
        raise UnknownCardError(project_id, card_id)

    async def _ensure_state(
        self,
        user_id: str,
        project_id: str,
        ref: CardRef,
        settings: EffectiveSettings,
        now: datetime,
    ) -> CardSchedulingState:
        """
        Raises:
            CorruptStateError: The card's row cannot be decoded.
        """
        state = (await self._ensure_states(user_id, project_id, [ref], settings, now))[0]
        if isinstance(state, CorruptStateError):
            raise state
        return state

    async def _ensure_states(
        self,
        user_id: str,
        project_id: str,
        refs: list[CardRef],
        settings: EffectiveSettings,
        now: datetime,
    ) -> list[StoredState]:
        """Load the states of the given cards, creating rows for first-time cards."""
        loaded = await self._store.load(user_id, project_id, [r.card_id for r in refs])
        states: list[StoredState] = []
        for ref in refs:
            state = loaded.get(ref.card_id)
            if state is None:
                fresh = scheduler.new_card_state(ref.card_id, settings, now, ref.created_at)
                try:
                    state = await self._store.create_if_absent(user_id, project_id, fresh)
                except CorruptStateError as e:
                    # Another writer created the row between load and insert
                    state = e
                else:
                    logger.debug(f"Created scheduling state for card {ref.card_id}")
            states.append(state)
        return states

    async def _invalidate(self, scopes: list[str]) -> None:
        if self._invalidation is None:
            return
        for scope in scopes:
            try:
                await self._invalidation.invalidate(scope)
            except Exception as e:
                # The write is already committed; a stale cache entry expires on its own
                logger.warning(f"Failed to invalidate cache scope {scope}: {e}")
