"""
Scheduler core: SM-2 style state transitions for a single card.

Pure computation module with no I/O. Every function takes a state value and
returns a new one; inputs are never mutated.

State machine:
    New -> Learning (Again/Hard/Good) | Review (Easy)
    Learning -> Learning (steps) | Review (graduation)
    Review -> Review (Hard/Good/Easy) | Relearning (Again, lapse)
    Relearning -> Relearning (steps, Again is a lapse) | Review (graduation)
    Suspended -> rejects ratings
"""

import logging
import math
from dataclasses import replace
from datetime import datetime

from mnemos.domain.constants import EASY_EASE_INCREMENT
from mnemos.domain.errors import InvalidTransitionError
from mnemos.domain.models import (
    CardSchedulingState,
    CardState,
    EffectiveSettings,
    Rating,
)
from mnemos.domain.timeutil import add_days, add_minutes, ensure_aware

from .leech import apply_leech_action, check_leech

logger = logging.getLogger(__name__)

# Guards floor() against products like 12.999999999 for an exact 13
_FLOOR_EPSILON = 1e-9


def new_card_state(
    card_id: str,
    settings: EffectiveSettings,
    now: datetime,
    created_at: datetime | None = None,
) -> CardSchedulingState:
    """The row created on a card's first scheduling access."""
    now = ensure_aware(now)
    return CardSchedulingState(
        card_id=card_id,
        state=CardState.NEW,
        due=now,
        interval=0,
        ease=settings.starting_ease,
        created_at=ensure_aware(created_at) if created_at else now,
    )


def apply_rating(
    state: CardSchedulingState,
    rating: Rating | str | int,
    settings: EffectiveSettings,
    now: datetime,
    event_id: str | None = None,
) -> CardSchedulingState:
    """
    Compute the card's next state after a rating.

    Args:
        state: Current state (validated by the caller).
        rating: Again/Hard/Good/Easy, or a name/number that parses to one.
        settings: Effective settings for the card's project.
        now: Time of the rating.
        event_id: Identifier of the rating event, recorded on the result.

    Raises:
        InvalidTransitionError: The card is suspended, or the rating/state is unknown.
    """
    rating = Rating.parse(rating)
    now = ensure_aware(now)

    match state.state:
        case CardState.NEW:
            result = _rate_new(state, rating, settings, now)
        case CardState.LEARNING:
            result = _rate_steps(state, rating, settings, now, relearning=False)
        case CardState.RELEARNING:
            result = _rate_steps(state, rating, settings, now, relearning=True)
        case CardState.REVIEW:
            result = _rate_review(state, rating, settings, now)
        case CardState.SUSPENDED:
            raise InvalidTransitionError(
                f"Card {state.card_id} is suspended; unsuspend it before rating"
            )
        case _:
            raise InvalidTransitionError(f"Card {state.card_id} has unknown state {state.state!r}")

    logger.debug(
        f"Card {state.card_id}: {state.state.value} --{rating.value}--> {result.state.value} "
        f"interval={result.interval} ease={result.ease:.2f} due={result.due.isoformat()}"
    )
    return replace(
        result, last_reviewed=now, last_event_id=event_id, last_rated_from=state.state
    )


# ---------------------------------------------------------------------------
# New
# ---------------------------------------------------------------------------


def _rate_new(
    state: CardSchedulingState, rating: Rating, settings: EffectiveSettings, now: datetime
) -> CardSchedulingState:
    match rating:
        case Rating.AGAIN | Rating.HARD | Rating.GOOD:
            return replace(
                state,
                state=CardState.LEARNING,
                learning_step=0,
                interval=0,
                ease=settings.starting_ease,
                due=add_minutes(now, settings.learning_steps[0]),
            )
        case Rating.EASY:
            interval = _clamp_interval(
                _floor_days(settings.easy_interval * settings.interval_modifier), settings
            )
            return replace(
                state,
                state=CardState.REVIEW,
                learning_step=0,
                interval=interval,
                ease=settings.starting_ease,
                due=add_days(now, interval),
            )
        case _:
            raise InvalidTransitionError(f"Unknown rating {rating!r}")


# ---------------------------------------------------------------------------
# Learning / Relearning
# ---------------------------------------------------------------------------


def _rate_steps(
    state: CardSchedulingState,
    rating: Rating,
    settings: EffectiveSettings,
    now: datetime,
    relearning: bool,
) -> CardSchedulingState:
    steps = settings.relearning_steps if relearning else settings.learning_steps
    # The step list may have been shortened since the card was last graded
    step = min(state.learning_step, len(steps) - 1)

    match rating:
        case Rating.AGAIN:
            result = replace(state, learning_step=0, due=add_minutes(now, steps[0]))
            if relearning:
                result = _record_lapse(result, settings)
            return result
        case Rating.HARD:
            return replace(state, learning_step=step, due=add_minutes(now, steps[step]))
        case Rating.GOOD:
            next_step = step + 1
            if next_step < len(steps):
                return replace(
                    state, learning_step=next_step, due=add_minutes(now, steps[next_step])
                )
            return _graduate(state, rating, settings, now, relearning)
        case Rating.EASY:
            return _graduate(state, rating, settings, now, relearning)
        case _:
            raise InvalidTransitionError(f"Unknown rating {rating!r}")


def _graduate(
    state: CardSchedulingState,
    rating: Rating,
    settings: EffectiveSettings,
    now: datetime,
    relearning: bool,
) -> CardSchedulingState:
    if relearning:
        # Back to Review on the post-lapse interval; ease keeps the lapse penalty
        base = max(1, state.interval)
        if rating is Rating.EASY:
            interval = max(base + 1, _floor_days(base * settings.easy_interval_factor))
        else:
            interval = base
        ease = state.ease
    else:
        days = settings.easy_interval if rating is Rating.EASY else settings.graduating_interval
        interval = _floor_days(days * settings.interval_modifier)
        ease = settings.starting_ease

    interval = _clamp_interval(interval, settings)
    return replace(
        state,
        state=CardState.REVIEW,
        learning_step=0,
        interval=interval,
        ease=_clamp_ease(ease, settings),
        due=add_days(now, interval),
    )


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def review_intervals(
    state: CardSchedulingState, settings: EffectiveSettings
) -> dict[Rating, int]:
    """
    Intervals a Review card would get for Hard, Good and Easy.

    Good is never shorter than Hard and Easy never shorter than Good, so the
    buttons stay ordered even for low ease values.
    """
    interval = max(1, state.interval)
    modifier = settings.interval_modifier

    hard = max(interval + 1, _floor_days(interval * settings.hard_interval_factor * modifier))
    good = max(hard, _floor_days(interval * state.ease * modifier))
    easy = max(good, _floor_days(interval * state.ease * settings.easy_bonus * modifier))

    return {
        Rating.HARD: _clamp_interval(hard, settings),
        Rating.GOOD: _clamp_interval(good, settings),
        Rating.EASY: _clamp_interval(easy, settings),
    }


def _rate_review(
    state: CardSchedulingState, rating: Rating, settings: EffectiveSettings, now: datetime
) -> CardSchedulingState:
    match rating:
        case Rating.AGAIN:
            interval = _clamp_interval(
                max(1, _floor_days(state.interval * settings.lapse_recovery_factor)), settings
            )
            result = replace(
                state,
                state=CardState.RELEARNING,
                learning_step=0,
                interval=interval,
                ease=_clamp_ease(state.ease - settings.lapse_ease_penalty, settings),
                due=add_minutes(now, settings.relearning_steps[0]),
            )
            return _record_lapse(result, settings)
        case Rating.HARD | Rating.GOOD | Rating.EASY:
            interval = review_intervals(state, settings)[rating]
            ease = state.ease
            if rating is Rating.EASY:
                ease = state.ease + EASY_EASE_INCREMENT
            return replace(
                state,
                interval=interval,
                ease=_clamp_ease(ease, settings),
                repetitions=state.repetitions + 1,
                due=add_days(now, interval),
            )
        case _:
            raise InvalidTransitionError(f"Unknown rating {rating!r}")


def _record_lapse(state: CardSchedulingState, settings: EffectiveSettings) -> CardSchedulingState:
    lapsed = replace(state, lapses=state.lapses + 1)
    if check_leech(lapsed.lapses, settings.leech_threshold):
        return apply_leech_action(lapsed, settings.leech_action)
    return lapsed


# ---------------------------------------------------------------------------
# Maintenance operations
# ---------------------------------------------------------------------------


def suspend(state: CardSchedulingState) -> CardSchedulingState:
    if state.state is CardState.SUSPENDED:
        return state
    return replace(state, state=CardState.SUSPENDED, resume_state=state.state)


def unsuspend(state: CardSchedulingState, now: datetime) -> CardSchedulingState:
    """Restore the state the card had before suspension; it is due immediately."""
    if state.state is not CardState.SUSPENDED:
        return state
    resume = state.resume_state or CardState.NEW
    return replace(state, state=resume, resume_state=None, due=ensure_aware(now))


def clear_leech(state: CardSchedulingState, now: datetime) -> CardSchedulingState:
    """Clear the leech flag; a card suspended as a leech is re-enabled too."""
    if state.is_leech and state.state is CardState.SUSPENDED:
        state = unsuspend(state, now)
    return replace(state, is_leech=False)


def reset_progress(
    state: CardSchedulingState, settings: EffectiveSettings, now: datetime
) -> CardSchedulingState:
    """Forget all learning progress and make the card New again."""
    return replace(
        state,
        state=CardState.NEW,
        due=ensure_aware(now),
        interval=0,
        ease=settings.starting_ease,
        learning_step=0,
        lapses=0,
        repetitions=0,
        is_leech=False,
        last_reviewed=None,
        resume_state=None,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _floor_days(value: float) -> int:
    return math.floor(value + _FLOOR_EPSILON)


def _clamp_interval(days: int, settings: EffectiveSettings) -> int:
    return max(1, min(days, settings.max_interval))


def _clamp_ease(ease: float, settings: EffectiveSettings) -> float:
    return min(max(ease, settings.minimum_ease), settings.maximum_ease)
