"""
Daily quota tracking.

Counts new cards introduced and reviews completed per study day, both for
the user as a whole and for each of the user's projects. The study day is
resolved in the user's time zone, so counters reset at local midnight.
"""

import logging
from datetime import date, datetime

from mnemos.domain.models import (
    CardState,
    DailyUsage,
    EffectiveSettings,
    ScopeKey,
    UsageCounts,
    UsageKind,
)
from mnemos.domain.ports import DailyUsageStore
from mnemos.domain.timeutil import local_day

logger = logging.getLogger(__name__)


def usage_kind(rated_from: CardState) -> UsageKind | None:
    """
    Counter charged by a rating, by the state the card was in when rated.

    Learning and relearning steps are not charged, so they never eat into
    the review quota.
    """
    match rated_from:
        case CardState.NEW:
            return UsageKind.NEW_CARD
        case CardState.REVIEW:
            return UsageKind.REVIEW
        case _:
            return None


def _scopes(user_id: str, project_id: str) -> tuple[ScopeKey, ScopeKey]:
    return ScopeKey(user_id), ScopeKey(user_id, project_id)


def remaining_new_cards(usage: DailyUsage, settings: EffectiveSettings) -> int:
    """New cards still allowed today: the tighter of the project and user caps."""
    project_left = settings.new_cards_per_day - usage.project.new_cards_studied
    user_left = settings.user_new_cards_per_day - usage.user.new_cards_studied
    return max(0, min(project_left, user_left))


def remaining_reviews(usage: DailyUsage, settings: EffectiveSettings) -> int | None:
    """Reviews still allowed today, or None when neither scope caps them."""
    limits: list[int] = []
    if settings.max_reviews_per_day > 0:
        limits.append(settings.max_reviews_per_day - usage.project.reviews_completed)
    if settings.user_max_reviews_per_day > 0:
        limits.append(settings.user_max_reviews_per_day - usage.user.reviews_completed)
    if not limits:
        return None
    return max(0, min(limits))


class DailyQuotaTracker:
    """
    Application service over a DailyUsageStore.

    Holds no counters itself; every read goes to the store so that usage is
    fresh per scheduling decision.
    """

    def __init__(self, usage_store: DailyUsageStore):
        self._store = usage_store

    @staticmethod
    def study_day(now: datetime, timezone: str) -> date:
        return local_day(now, timezone)

    async def get_usage(self, scope: ScopeKey, day: date) -> UsageCounts:
        return await self._store.get_usage(scope, day)

    async def record_new_card(self, scope: ScopeKey, day: date, event_id: str) -> bool:
        counted = await self._store.increment(scope, day, UsageKind.NEW_CARD, event_id)
        if not counted:
            logger.debug(f"New-card event {event_id} already counted for {scope}")
        return counted

    async def record_review(self, scope: ScopeKey, day: date, event_id: str) -> bool:
        counted = await self._store.increment(scope, day, UsageKind.REVIEW, event_id)
        if not counted:
            logger.debug(f"Review event {event_id} already counted for {scope}")
        return counted

    async def record_rating(
        self,
        user_id: str,
        project_id: str,
        day: date,
        rated_from: CardState,
        event_id: str,
    ) -> None:
        """Count one rating against both the user-wide and the project scope."""
        kind = usage_kind(rated_from)
        if kind is None:
            logger.debug(f"Rating {event_id} from {rated_from.value} is not counted")
            return
        record = self.record_new_card if kind is UsageKind.NEW_CARD else self.record_review
        for scope in _scopes(user_id, project_id):
            await record(scope, day, event_id)

    async def release_rating(
        self,
        user_id: str,
        project_id: str,
        day: date,
        rated_from: CardState,
        event_id: str,
    ) -> None:
        """Give back what record_rating counted for the event, in both scopes."""
        kind = usage_kind(rated_from)
        if kind is None:
            return
        for scope in _scopes(user_id, project_id):
            if not await self._store.release(scope, day, kind, event_id):
                logger.debug(f"Event {event_id} was not counted for {scope}")

    async def daily_usage(self, user_id: str, project_id: str, day: date) -> DailyUsage:
        return DailyUsage(
            day=day,
            project=await self._store.get_usage(ScopeKey(user_id, project_id), day),
            user=await self._store.get_usage(ScopeKey(user_id), day),
        )
