"""
Leech handling for chronically failed cards.

Bundled into the scheduler's lapse path; kept separate so it can be tested
on its own.
"""

import logging
from dataclasses import replace

from mnemos.domain.errors import InvalidTransitionError
from mnemos.domain.models import CardSchedulingState, CardState, LeechAction

logger = logging.getLogger(__name__)


def check_leech(lapses: int, threshold: int) -> bool:
    """True once the lapse count reaches the threshold."""
    return lapses >= threshold


def apply_leech_action(state: CardSchedulingState, action: LeechAction) -> CardSchedulingState:
    """
    Flag the card as a leech and apply the configured action.

    SUSPEND moves the card to Suspended whatever state it was just given and
    remembers that state for when the card is re-enabled. TAG only sets the flag.
    """
    match action:
        case LeechAction.SUSPEND:
            if state.state is CardState.SUSPENDED:
                return replace(state, is_leech=True)
            logger.info(
                f"Card {state.card_id} became a leech after {state.lapses} lapses; suspending"
            )
            return replace(
                state,
                is_leech=True,
                state=CardState.SUSPENDED,
                resume_state=state.state,
            )
        case LeechAction.TAG:
            logger.info(f"Card {state.card_id} became a leech after {state.lapses} lapses; tagged")
            return replace(state, is_leech=True)
        case _:
            raise InvalidTransitionError(f"Unknown leech action: {action!r}")
