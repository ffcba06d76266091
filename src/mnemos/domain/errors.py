"""
Error taxonomy for the scheduling engine.

Adapters translate backend failures into these types so application services
and hosts only ever handle domain errors.
"""


class SchedulingError(Exception):
    """Base class for every error raised by mnemos."""


class ValidationError(SchedulingError):
    """A settings value is out of range. Recovered inside the settings resolver."""

    def __init__(self, field: str, value: object, reason: str):
        super().__init__(f"Invalid value for {field}: {value!r} ({reason})")
        self.field = field
        self.value = value
        self.reason = reason


class InvalidTransitionError(SchedulingError):
    """A rating cannot be applied to the card in its current state."""


class StoreUnavailableError(SchedulingError):
    """The backing store failed. The operation may be retried."""


class ConcurrentModificationError(StoreUnavailableError):
    """The card was written by someone else between read and write."""


class InvariantViolation(SchedulingError):
    """A loaded scheduling state does not satisfy its own invariants."""

    def __init__(self, card_id: str, problems: list[str]):
        super().__init__(f"Card {card_id} violates invariants: {'; '.join(problems)}")
        self.card_id = card_id
        self.problems = problems


class UnknownCardError(SchedulingError):
    """The card id is not part of the project's catalog."""

    def __init__(self, project_id: str, card_id: str):
        super().__init__(f"Card {card_id} not found in project {project_id}")
        self.project_id = project_id
        self.card_id = card_id


class CorruptStateError(InvariantViolation):
    """A stored row could not be decoded into a scheduling state at all."""

    def __init__(self, card_id: str, problems: list[str], version: int = 0):
        super().__init__(card_id, problems)
        self.version = version
