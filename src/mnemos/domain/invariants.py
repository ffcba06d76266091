"""Invariant checks for persisted scheduling state."""

from .constants import EASE_TOLERANCE
from .errors import InvariantViolation
from .models import CardSchedulingState, CardState, EffectiveSettings


def find_violations(state: CardSchedulingState, settings: EffectiveSettings) -> list[str]:
    """
    List every invariant the state breaks under the given settings.

    An empty list means the state is sound. Step indexes beyond the current
    step list are not violations: the scheduler clamps them when the list
    has been shortened since the card was last graded.
    """
    problems: list[str] = []

    if not isinstance(state.state, CardState):
        problems.append(f"unknown state {state.state!r}")
    if state.interval < 0:
        problems.append(f"negative interval {state.interval}")
    if state.state is CardState.REVIEW and state.interval < 1:
        problems.append(f"review interval {state.interval} < 1")
    if not (
        settings.minimum_ease - EASE_TOLERANCE
        <= state.ease
        <= settings.maximum_ease + EASE_TOLERANCE
    ):
        problems.append(
            f"ease {state.ease} outside [{settings.minimum_ease}, {settings.maximum_ease}]"
        )
    if state.learning_step < 0:
        problems.append(f"negative learning step {state.learning_step}")
    if state.lapses < 0:
        problems.append(f"negative lapses {state.lapses}")
    if state.repetitions < 0:
        problems.append(f"negative repetitions {state.repetitions}")
    if state.due.tzinfo is None:
        problems.append("due is not timezone-aware")
    if state.resume_state is CardState.SUSPENDED:
        problems.append("resume state cannot be suspended")

    return problems


def ensure_valid(state: CardSchedulingState, settings: EffectiveSettings) -> CardSchedulingState:
    problems = find_violations(state, settings)
    if problems:
        raise InvariantViolation(state.card_id, problems)
    return state
