# Domain Package
from .errors import (
    ConcurrentModificationError,
    CorruptStateError,
    InvalidTransitionError,
    InvariantViolation,
    SchedulingError,
    StoreUnavailableError,
    UnknownCardError,
    ValidationError,
)
from .models import (
    CardRef,
    CardSchedulingState,
    CardState,
    DailyUsage,
    EffectiveSettings,
    LeechAction,
    NewCardOrder,
    QueueStats,
    Rating,
    ReviewLogEntry,
    ReviewSummary,
    ScopeKey,
    UsageCounts,
    UsageKind,
)

__all__ = [
    "CardRef",
    "CardSchedulingState",
    "CardState",
    "DailyUsage",
    "EffectiveSettings",
    "LeechAction",
    "NewCardOrder",
    "QueueStats",
    "Rating",
    "ReviewLogEntry",
    "ReviewSummary",
    "ScopeKey",
    "UsageCounts",
    "UsageKind",
    "SchedulingError",
    "ValidationError",
    "InvalidTransitionError",
    "StoreUnavailableError",
    "ConcurrentModificationError",
    "InvariantViolation",
    "CorruptStateError",
    "UnknownCardError",
]
