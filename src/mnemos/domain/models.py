"""
Domain models for spaced-repetition scheduling.

These are pure data structures with no I/O or external dependencies.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

from .errors import CorruptStateError, InvalidTransitionError


class CardState(str, Enum):
    NEW = "new"
    LEARNING = "learning"
    REVIEW = "review"
    RELEARNING = "relearning"
    SUSPENDED = "suspended"


class Rating(str, Enum):
    """Answer buttons. Numeric aliases follow Anki's 1=Again .. 4=Easy."""

    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"

    @classmethod
    def parse(cls, value: "Rating | str | int") -> "Rating":
        if isinstance(value, Rating):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            by_number = {1: cls.AGAIN, 2: cls.HARD, 3: cls.GOOD, 4: cls.EASY}
            if value in by_number:
                return by_number[value]
        elif isinstance(value, str):
            text = value.strip().lower()
            if text.isdigit():
                return cls.parse(int(text))
            for rating in cls:
                if rating.value == text:
                    return rating
        raise InvalidTransitionError(f"Unknown rating: {value!r}")


class LeechAction(str, Enum):
    SUSPEND = "suspend"
    TAG = "tag"


class NewCardOrder(str, Enum):
    RANDOM = "random"
    DUE = "due"  # insertion order
    CREATED = "created"


class UsageKind(str, Enum):
    NEW_CARD = "new_card"
    REVIEW = "review"


@dataclass(frozen=True)
class CardSchedulingState:
    """
    Scheduling state of one card for one user inside one project.

    Attributes:
        card_id: The card this row belongs to.
        state: Lifecycle state.
        due: When the card becomes eligible again (timezone-aware UTC).
        interval: Days until next review; 0 allowed only outside Review.
        ease: Multiplier applied to Review intervals.
        learning_step: Index into the learning or relearning steps in effect.
        lapses: Times the card was failed from Review/Relearning.
        repetitions: Successful Review ratings.
        is_leech: Sticky leech flag, cleared only by an explicit operation.
        created_at: When the row was first created.
        last_reviewed: Time of the last rating, if any.
        resume_state: State restored when a Suspended card is re-enabled.
        last_rated_from: State the card was in before the last rating.
        last_event_id: Rating event that produced this state.
        version: Optimistic concurrency token, owned by the store.
    """

    card_id: str
    state: CardState
    due: datetime
    interval: int
    ease: float
    learning_step: int = 0
    lapses: int = 0
    repetitions: int = 0
    is_leech: bool = False
    created_at: datetime | None = None
    last_reviewed: datetime | None = None
    resume_state: CardState | None = None
    last_rated_from: CardState | None = None
    last_event_id: str | None = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "card_id": self.card_id,
            "state": self.state.value,
            "due": self.due.isoformat(),
            "interval": self.interval,
            "ease": self.ease,
            "learning_step": self.learning_step,
            "lapses": self.lapses,
            "repetitions": self.repetitions,
            "is_leech": self.is_leech,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_reviewed": self.last_reviewed.isoformat() if self.last_reviewed else None,
            "resume_state": self.resume_state.value if self.resume_state else None,
            "last_rated_from": self.last_rated_from.value if self.last_rated_from else None,
            "last_event_id": self.last_event_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CardSchedulingState":
        """
        Decode a stored record.

        Raises:
            CorruptStateError: A field is missing or cannot be parsed.
        """
        try:
            return cls._decode(data)
        except (KeyError, TypeError, ValueError) as e:
            card_id = str(data.get("card_id", "?"))
            try:
                version = int(data.get("version", 0))
            except (TypeError, ValueError):
                version = 0
            raise CorruptStateError(card_id, [f"undecodable row: {e}"], version) from e

    @classmethod
    def _decode(cls, data: dict) -> "CardSchedulingState":
        def _dt(value):
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        due = _dt(data["due"])
        if due is None:
            raise ValueError("due is missing")
        resume = data.get("resume_state")
        rated_from = data.get("last_rated_from")
        return cls(
            card_id=str(data["card_id"]),
            state=CardState(data["state"]),
            due=due,
            interval=int(data["interval"]),
            ease=float(data["ease"]),
            learning_step=int(data.get("learning_step", 0)),
            lapses=int(data.get("lapses", 0)),
            repetitions=int(data.get("repetitions", 0)),
            is_leech=bool(data.get("is_leech", False)),
            created_at=_dt(data.get("created_at")),
            last_reviewed=_dt(data.get("last_reviewed")),
            resume_state=CardState(resume) if resume else None,
            last_rated_from=CardState(rated_from) if rated_from else None,
            last_event_id=data.get("last_event_id"),
            version=int(data.get("version", 0)),
        )


@dataclass(frozen=True)
class EffectiveSettings:
    """Fully populated, range-validated scheduling configuration."""

    new_cards_per_day: int
    max_reviews_per_day: int  # 0 = unlimited
    learning_steps: tuple[int, ...]  # minutes
    relearning_steps: tuple[int, ...]  # minutes
    graduating_interval: int
    easy_interval: int
    starting_ease: float
    minimum_ease: float
    maximum_ease: float
    easy_bonus: float
    hard_interval_factor: float
    easy_interval_factor: float
    lapse_recovery_factor: float
    lapse_ease_penalty: float
    interval_modifier: float
    leech_threshold: int
    leech_action: LeechAction
    new_card_order: NewCardOrder
    review_ahead: bool
    bury_siblings: bool
    max_interval: int
    timezone: str
    # Caps for the user-wide scope, resolved without the project override
    user_new_cards_per_day: int
    user_max_reviews_per_day: int


@dataclass(frozen=True)
class UsageCounts:
    new_cards_studied: int = 0
    reviews_completed: int = 0


@dataclass(frozen=True)
class ScopeKey:
    """Quota scope: a user alone, or a user inside one project."""

    user_id: str
    project_id: str | None = None

    def __str__(self) -> str:
        if self.project_id is None:
            return f"user:{self.user_id}"
        return f"user:{self.user_id}:project:{self.project_id}"


@dataclass(frozen=True)
class DailyUsage:
    """Counters for one study day, for both the project and the user-wide scope."""

    day: date
    project: UsageCounts = field(default_factory=UsageCounts)
    user: UsageCounts = field(default_factory=UsageCounts)


@dataclass(frozen=True)
class QueueStats:
    available_new_cards: int
    due_learning_cards: int
    due_review_cards: int
    total_due: int
    total_cards: int = 0
    suspended_cards: int = 0
    leech_cards: int = 0
    quarantined_cards: tuple[str, ...] = ()


@dataclass(frozen=True)
class CardRef:
    """A card as listed by the host's card catalog."""

    card_id: str
    created_at: datetime | None = None
    sibling_key: str | None = None  # cards sharing a key are siblings


@dataclass(frozen=True)
class ReviewLogEntry:
    """
    One applied rating, kept so it can be undone.

    Attributes:
        event_id: Rating event that was applied.
        card_id: Card that was rated.
        rating: Button pressed.
        rated_at: When the rating was applied.
        day: Study day the counters were charged to.
        previous: Card state immediately before the rating.
    """

    event_id: str
    card_id: str
    rating: Rating
    rated_at: datetime
    day: date
    previous: CardSchedulingState

    @property
    def rated_from(self) -> CardState:
        return self.previous.state


@dataclass(frozen=True)
class ReviewSummary:
    """Study figures for one day, derived from the counters and the review log."""

    day: date
    new_cards_studied: int
    reviews_completed: int
    ratings: int
    lapses: int  # Again presses
    accuracy: float  # percentage of Good/Easy presses
    estimated_seconds: int
