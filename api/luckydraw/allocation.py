"""Prize selection.

``select_prize`` is a pure decision over a stock snapshot: it never touches
the database. The redemption coordinator applies the result.
"""

import random
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from .errors import ProbabilityOverflow
from .models import LotteryStrategy

EPSILON = 1e-9

_system_random = random.SystemRandom()


class Stocked(Protocol):
    remaining_quantity: int
    probability: Any
    sort_order: int


@dataclass(frozen=True)
class Entry:
    prize: Any
    probability: float
    cumulative: float


def _in_stock(prizes: Sequence[Stocked]) -> list:
    stocked = [p for p in prizes if (p.remaining_quantity or 0) > 0]
    # sorted() is stable, so equal sort_order keeps the caller's order
    return sorted(stocked, key=lambda p: p.sort_order or 0)


def weighted_by_stock(prizes: Sequence[Stocked], rng: random.Random) -> Optional[Any]:
    """Guaranteed mode: every unit of remaining stock is one equal chance."""
    stocked = _in_stock(prizes)
    total = sum(p.remaining_quantity for p in stocked)
    if total <= 0:
        return None

    r = rng.random() * total
    cumulative = 0
    for prize in stocked:
        cumulative += prize.remaining_quantity
        if r <= cumulative:
            return prize
    return stocked[-1]


def probability_table(prizes: Sequence[Stocked]) -> list[Entry]:
    """Cumulative probability table: explicit prizes first, then implicit ones.

    Implicit prizes (probability 0) split ``1 - sum(explicit)`` in proportion
    to their remaining stock. When no implicit prize has stock the remainder
    stays unassigned and shows up as a no-win.
    """
    stocked = _in_stock(prizes)
    explicit = [(p, float(p.probability)) for p in stocked if p.probability and float(p.probability) > 0]
    implicit = [p for p in stocked if not p.probability or float(p.probability) <= 0]

    explicit_total = sum(prob for _, prob in explicit)
    if explicit_total > 1 + EPSILON:
        raise ProbabilityOverflow(explicit_total)

    weighted = list(explicit)
    remainder = max(0.0, 1.0 - explicit_total)
    implicit_stock = sum(p.remaining_quantity for p in implicit)
    if remainder > EPSILON and implicit_stock > 0:
        weighted.extend((p, remainder * p.remaining_quantity / implicit_stock) for p in implicit)

    table = []
    cumulative = 0.0
    for prize, prob in weighted:
        cumulative += prob
        table.append(Entry(prize=prize, probability=prob, cumulative=cumulative))

    if table and abs(table[-1].cumulative - 1.0) <= EPSILON:
        last = table[-1]
        table[-1] = Entry(prize=last.prize, probability=last.probability, cumulative=1.0)
    return table


def weighted_by_probability(prizes: Sequence[Stocked], rng: random.Random) -> Optional[Any]:
    table = probability_table(prizes)
    if not table:
        return None

    r = rng.random()
    if r > table[-1].cumulative:
        return None
    for entry in table:
        if r <= entry.cumulative:
            return entry.prize
    return None


def select_prize(
    prizes: Sequence[Stocked],
    strategy: LotteryStrategy | str,
    rng: random.Random | None = None,
) -> Optional[Any]:
    """Pick a prize from ``prizes`` under ``strategy``, or None for no prize.

    ``rng`` defaults to the OS entropy source; pass a seeded
    ``random.Random`` to make draws reproducible.
    """
    rng = rng or _system_random
    if LotteryStrategy(strategy) == LotteryStrategy.GUARANTEED:
        return weighted_by_stock(prizes, rng)
    return weighted_by_probability(prizes, rng)
