"""
Ports (interfaces) for the scheduling engine's collaborators.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from .errors import CorruptStateError
from .models import (
    CardRef,
    CardSchedulingState,
    ReviewLogEntry,
    ScopeKey,
    UsageCounts,
    UsageKind,
)

# A decoded state, or the error describing why its row could not be decoded
StoredState = CardSchedulingState | CorruptStateError


class CardStateStore(ABC):
    """
    Port for persisting per-(user, project, card) scheduling state.

    Implementations:
        - MemoryCardStateStore: In-process dictionary guarded by an asyncio lock.
        - SqliteStore: Single-file SQLite database.
    """

    @abstractmethod
    async def load(
        self, user_id: str, project_id: str, card_ids: Iterable[str]
    ) -> dict[str, StoredState]:
        """
        Fetch the stored states for the given cards.

        Cards without a row are simply absent from the result. A row that cannot
        be decoded is returned as its CorruptStateError so the other cards of the
        batch still load.

        Raises:
            StoreUnavailableError: The backend could not be read.
        """
        pass

    @abstractmethod
    async def create_if_absent(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        """
        Atomically insert the state unless a row already exists.

        Returns:
            The row now stored for the card: the given state on insert,
            otherwise the pre-existing row.

        Raises:
            CorruptStateError: The pre-existing row cannot be decoded.
        """
        pass

    @abstractmethod
    async def save(
        self, user_id: str, project_id: str, state: CardSchedulingState
    ) -> CardSchedulingState:
        """
        Write the state if the stored version still equals ``state.version``.

        Returns:
            The stored state with its version incremented.

        Raises:
            ConcurrentModificationError: The stored version moved on.
            StoreUnavailableError: The backend could not be written.
        """
        pass


class CardCatalog(ABC):
    """Port listing the cards that belong to a project."""

    @abstractmethod
    async def list_cards(self, user_id: str, project_id: str) -> list[CardRef]:
        """Return the project's cards in insertion order."""
        pass


class SettingsProvider(ABC):
    """Port returning raw, unvalidated settings records."""

    @abstractmethod
    async def get_project_overrides(
        self, user_id: str, project_id: str
    ) -> Mapping[str, Any] | None:
        pass

    @abstractmethod
    async def get_user_defaults(self, user_id: str) -> Mapping[str, Any] | None:
        pass


class DailyUsageStore(ABC):
    """Port for per-day study counters."""

    @abstractmethod
    async def get_usage(self, scope: ScopeKey, day: date) -> UsageCounts:
        """Return the counters for the scope and day (zeros if none recorded)."""
        pass

    @abstractmethod
    async def increment(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        """
        Atomically count one event for the scope and day.

        Returns:
            True if counted, False if this event id was already counted for the scope.
        """
        pass

    @abstractmethod
    async def release(
        self, scope: ScopeKey, day: date, kind: UsageKind, event_id: str
    ) -> bool:
        """
        Atomically take back one counted event.

        Returns:
            True if the event was counted and is now released, False otherwise.
        """
        pass


class InvalidationSink(ABC):
    """Port notifying the host's cache layer that a scope is stale."""

    @abstractmethod
    async def invalidate(self, scope: str) -> None:
        pass

    async def aclose(self) -> None:
        """Release any connection held by the sink."""
        pass


class ReviewLog(ABC):
    """
    Port for the bounded history of applied ratings.

    Implementations:
        - MemoryReviewLog: In-process list per project.
        - SqliteStore: ``review_log`` table in the same database file.
    """

    @abstractmethod
    async def record(self, user_id: str, project_id: str, entry: ReviewLogEntry) -> None:
        """
        Store the entry, replacing any entry with the same event id.

        Only the most recent entries of the project are kept.
        """
        pass

    @abstractmethod
    async def get(self, user_id: str, project_id: str, event_id: str) -> ReviewLogEntry | None:
        pass

    @abstractmethod
    async def remove(self, user_id: str, project_id: str, event_id: str) -> bool:
        """Drop the entry. Returns False if there was none."""
        pass

    @abstractmethod
    async def entries(self, user_id: str, project_id: str) -> list[ReviewLogEntry]:
        """Return the kept entries of the project, oldest first."""
        pass
