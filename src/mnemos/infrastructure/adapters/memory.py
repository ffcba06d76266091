"""
In-memory adapters for every port.

Single-process only. Each store serializes its read-modify-write sections with
an asyncio.Lock, which is enough for concurrent tasks on one event loop.
"""

import asyncio
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import date
from typing import Any

from mnemos.domain.constants import UNDO_HISTORY_LIMIT
from mnemos.domain.errors import ConcurrentModificationError
from mnemos.domain.models import (
    CardRef,
    CardSchedulingState,
    ReviewLogEntry,
    ScopeKey,
    UsageCounts,
    UsageKind,
)
from mnemos.domain.ports import (
    CardCatalog,
    CardStateStore,
    DailyUsageStore,
    ReviewLog,
    SettingsProvider,
)


class MemoryCardStateStore(CardStateStore):
    def __init__(self):
        self._rows: dict[tuple[str, str, str], CardSchedulingState] = {}
        self._lock = asyncio.Lock()

    async def load(
        self, user_id: str, project_id: str, card_ids: Iterable[str]
    ) -> dict[str, CardSchedulingState]:
        result = {}
        for card_id in card_ids:
            state = self._rows.get((user_id, project_id, card_id))
            if state is not None:
                result[card_id] = state
        return result

    async def create_if_absent(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        key = (user_id, project_id, state.card_id)
        async with self._lock:
            existing = self._rows.get(key)
            if existing is not None:
                return existing
            created = replace(state, version=1)
            self._rows[key] = created
            return created

    async def save(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        key = (user_id, project_id, state.card_id)
        async with self._lock:
            stored = self._rows.get(key)
            stored_version = stored.version if stored is not None else 0
            if stored_version != state.version:
                raise ConcurrentModificationError(
                    f"Card {state.card_id}: expected version {state.version}, "
                    f"found {stored_version}"
                )
            saved = replace(state, version=state.version + 1)
            self._rows[key] = saved
            return saved

    async def delete_card(self, user_id: str, project_id: str, card_id: str) -> None:
        """Cascade hook for when the owning card is deleted."""
        self._rows.pop((user_id, project_id, card_id), None)


class MemoryUsageStore(DailyUsageStore):
    def __init__(self):
        self._counts: dict[tuple[ScopeKey, date], dict[UsageKind, int]] = defaultdict(
            lambda: {UsageKind.NEW_CARD: 0, UsageKind.REVIEW: 0}
        )
        self._seen: set[tuple[ScopeKey, str]] = set()
        self._lock = asyncio.Lock()

    async def get_usage(self, scope: ScopeKey, day: date) -> UsageCounts:
        counts = self._counts.get((scope, day))
        if counts is None:
            return UsageCounts()
        return UsageCounts(
            new_cards_studied=counts[UsageKind.NEW_CARD],
            reviews_completed=counts[UsageKind.REVIEW],
        )

    async def increment(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        async with self._lock:
            if (scope, event_id) in self._seen:
                return False
            self._seen.add((scope, event_id))
            self._counts[(scope, day)][kind] += 1
            return True

    async def release(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        async with self._lock:
            if (scope, event_id) not in self._seen:
                return False
            self._seen.discard((scope, event_id))
            counts = self._counts[(scope, day)]
            counts[kind] = max(0, counts[kind] - 1)
            return True


class MemoryReviewLog(ReviewLog):
    def __init__(self, limit: int = UNDO_HISTORY_LIMIT):
        self.limit = limit
        self._entries: dict[tuple[str, str], list[ReviewLogEntry]] = defaultdict(list)

    async def record(self, user_id: str, project_id: str, entry: ReviewLogEntry) -> None:
        entries = [e for e in self._entries[(user_id, project_id)] if e.event_id != entry.event_id]
        entries.append(entry)
        self._entries[(user_id, project_id)] = entries[-self.limit :]

    async def get(self, user_id: str, project_id: str, event_id: str) -> ReviewLogEntry | None:
        for entry in self._entries.get((user_id, project_id), []):
            if entry.event_id == event_id:
                return entry
        return None

    async def remove(self, user_id: str, project_id: str, event_id: str) -> bool:
        entries = self._entries.get((user_id, project_id), [])
        kept = [e for e in entries if e.event_id != event_id]
        self._entries[(user_id, project_id)] = kept
        return len(kept) != len(entries)

    async def entries(self, user_id: str, project_id: str) -> list[ReviewLogEntry]:
        return list(self._entries.get((user_id, project_id), []))


class MemoryCardCatalog(CardCatalog):
    def __init__(self):
        self._cards: dict[tuple[str, str], list[CardRef]] = defaultdict(list)

    async def add_card(self, user_id: str, project_id: str, card: CardRef) -> bool:
        cards = self._cards[(user_id, project_id)]
        if any(c.card_id == card.card_id for c in cards):
            return False
        cards.append(card)
        return True

    async def remove_card(self, user_id: str, project_id: str, card_id: str) -> None:
        key = (user_id, project_id)
        self._cards[key] = [c for c in self._cards[key] if c.card_id != card_id]

    async def list_cards(self, user_id: str, project_id: str) -> list[CardRef]:
        return list(self._cards.get((user_id, project_id), []))


class MemorySettingsProvider(SettingsProvider):
    def __init__(
        self,
        user_defaults: Mapping[str, Mapping[str, Any]] | None = None,
        project_overrides: Mapping[tuple[str, str], Mapping[str, Any]] | None = None,
    ):
        self.user_defaults: dict[str, Mapping[str, Any]] = dict(user_defaults or {})
        self.project_overrides: dict[tuple[str, str], Mapping[str, Any]] = dict(
            project_overrides or {}
        )

    async def get_project_overrides(
        self, user_id: str, project_id: str
    ) -> Mapping[str, Any] | None:
        return self.project_overrides.get((user_id, project_id))

    async def get_user_defaults(self, user_id: str) -> Mapping[str, Any] | None:
        return self.user_defaults.get(user_id)
