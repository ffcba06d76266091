"""
Session selector: which card to show next, and how many are waiting.

Selection and statistics are both derived from one queue construction,
so the numbers shown to the user always match what selection will return.

Priority:
1. Learning/Relearning cards that are due, earliest due first
2. Review cards that are due (within the review quota), earliest due first;
   with review_ahead, the earliest not-yet-due Review card if none is due
3. New cards within the tighter of the project and user new-card quotas
"""

import logging
import random
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from mnemos.domain.invariants import find_violations
from mnemos.domain.models import (
    CardSchedulingState,
    CardState,
    DailyUsage,
    EffectiveSettings,
    NewCardOrder,
    QueueStats,
)
from mnemos.domain.timeutil import ensure_aware

from .quota import remaining_new_cards, remaining_reviews

logger = logging.getLogger(__name__)


@dataclass
class SessionQueues:
    """Eligible cards per queue, already ordered and cut to the day's quotas."""

    learning: list[CardSchedulingState] = field(default_factory=list)
    review: list[CardSchedulingState] = field(default_factory=list)
    new: list[CardSchedulingState] = field(default_factory=list)
    total_cards: int = 0
    suspended_cards: int = 0
    leech_cards: int = 0
    quarantined: list[str] = field(default_factory=list)


def build_queues(
    states: Sequence[CardSchedulingState],
    usage: DailyUsage,
    settings: EffectiveSettings,
    now: datetime,
    buried: Iterable[str] = (),
    rng: random.Random | None = None,
    order_new: bool = True,
    undecodable: Iterable[str] = (),
) -> SessionQueues:
    """
    Sort every card into its queue.

    Args:
        states: All card states of the project, in insertion order.
        usage: Today's counters for the project and the user.
        settings: Effective settings for the project.
        now: Current time.
        buried: Card ids excluded for the rest of the session.
        rng: Random source for the Random new-card order.
        order_new: Skip new-card ordering when only counts are needed.
        undecodable: Cards whose stored rows could not be read; quarantined.
    """
    now = ensure_aware(now)
    buried_ids = set(buried)
    queues = SessionQueues(quarantined=list(undecodable))
    queues.total_cards = len(states) + len(queues.quarantined)

    new_pool: list[tuple[int, CardSchedulingState]] = []
    learning: list[tuple[int, CardSchedulingState]] = []
    review_due: list[tuple[int, CardSchedulingState]] = []
    review_future: list[tuple[int, CardSchedulingState]] = []

    for position, state in enumerate(states):
        problems = find_violations(state, settings)
        if problems:
            # One corrupt row must not empty the whole queue
            logger.warning(f"Quarantining card {state.card_id}: {'; '.join(problems)}")
            queues.quarantined.append(state.card_id)
            continue

        if state.is_leech:
            queues.leech_cards += 1
        if state.state is CardState.SUSPENDED:
            queues.suspended_cards += 1
            continue
        if state.card_id in buried_ids:
            continue

        match state.state:
            case CardState.NEW:
                new_pool.append((position, state))
            case CardState.LEARNING | CardState.RELEARNING:
                if state.due <= now:
                    learning.append((position, state))
            case CardState.REVIEW:
                if state.due <= now:
                    review_due.append((position, state))
                else:
                    review_future.append((position, state))

    def by_due(item: tuple[int, CardSchedulingState]):
        position, state = item
        return (state.due, position)

    queues.learning = [s for _, s in sorted(learning, key=by_due)]

    reviews_left = remaining_reviews(usage, settings)
    review = [s for _, s in sorted(review_due, key=by_due)]
    if reviews_left is not None:
        review = review[:reviews_left]
    if (
        settings.review_ahead
        and not review
        and review_future
        and (reviews_left is None or reviews_left > 0)
    ):
        review = [min(review_future, key=by_due)[1]]
    queues.review = review

    new_left = remaining_new_cards(usage, settings)
    if order_new:
        new_cards = _order_new_cards(new_pool, settings.new_card_order, rng)
    else:
        new_cards = [s for _, s in new_pool]
    queues.new = new_cards[:new_left]

    return queues


def _order_new_cards(
    pool: list[tuple[int, CardSchedulingState]],
    order: NewCardOrder,
    rng: random.Random | None,
) -> list[CardSchedulingState]:
    match order:
        case NewCardOrder.RANDOM:
            cards = [s for _, s in pool]
            (rng or random.Random()).shuffle(cards)
            return cards
        case NewCardOrder.DUE:
            return [s for _, s in pool]
        case NewCardOrder.CREATED:
            # Cards without a creation time keep their insertion position at the end
            return [
                s
                for _, s in sorted(
                    pool,
                    key=lambda item: (
                        item[1].created_at is None,
                        item[1].created_at or datetime.min,
                        item[0],
                    ),
                )
            ]
        case _:
            raise ValueError(f"Unknown new card order: {order!r}")


def select_next(
    states: Sequence[CardSchedulingState],
    usage: DailyUsage,
    settings: EffectiveSettings,
    buried: Iterable[str],
    now: datetime,
    rng: random.Random | None = None,
) -> str | None:
    """
    Pick the next card to show.

    Returns:
        The card id, or None when nothing is eligible (a normal end of session).
    """
    queues = build_queues(states, usage, settings, now, buried, rng)
    for queue_name, queue in (
        ("learning", queues.learning),
        ("review", queues.review),
        ("new", queues.new),
    ):
        if queue:
            logger.debug(
                f"Selected {queue[0].card_id} from {queue_name} queue ({len(queue)} waiting)"
            )
            return queue[0].card_id

    logger.debug("No card eligible for study")
    return None


def compute_stats(
    states: Sequence[CardSchedulingState],
    usage: DailyUsage,
    settings: EffectiveSettings,
    now: datetime,
    buried: Iterable[str] = (),
    undecodable: Iterable[str] = (),
) -> QueueStats:
    """Queue sizes, computed from exactly the queues select_next draws from."""
    queues = build_queues(
        states, usage, settings, now, buried, order_new=False, undecodable=undecodable
    )
    return QueueStats(
        available_new_cards=len(queues.new),
        due_learning_cards=len(queues.learning),
        due_review_cards=len(queues.review),
        total_due=len(queues.learning) + len(queues.review),
        total_cards=queues.total_cards,
        suspended_cards=queues.suspended_cards,
        leech_cards=queues.leech_cards,
        quarantined_cards=tuple(queues.quarantined),
    )


def bury_siblings(
    buried: set[str],
    graded_card_id: str,
    sibling_keys: Mapping[str, str | None],
    settings: EffectiveSettings,
) -> set[str]:
    """
    Add the graded card's siblings to ``buried`` when sibling burying is on.

    Args:
        buried: The session's buried set; updated in place.
        graded_card_id: Card that was just graded.
        sibling_keys: card id -> grouping key, supplied by the caller.
        settings: Effective settings.

    Returns:
        The same set, for chaining.
    """
    if not settings.bury_siblings:
        return buried

    key = sibling_keys.get(graded_card_id)
    if key is None:
        return buried

    siblings = {
        card_id
        for card_id, other_key in sibling_keys.items()
        if other_key == key and card_id != graded_card_id
    }
    if siblings:
        logger.debug(f"Burying {len(siblings)} siblings of {graded_card_id}")
    buried.update(siblings)
    return buried
