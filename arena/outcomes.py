"""
Prize tiers and outcome weights for the spin game.

A wager maps to an ascending set of integer payouts ("tiers") and one
percentage per tier. The percentages come from one of two strategies:

* ``template``: hand-tuned tables for the canonical wagers 10 and 20.
* ``formula``: a scoring rule that favours payouts near and above the wager.

Both strategies feed the same caps and normalisation, so every tier keeps a
strictly positive chance and the percentages always sum to 100.
"""
import math
import random
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Tuple

JACKPOT_BASE_PROBABILITY = 0.001
EPSILON_PERCENT = 0.01
WEIGHT_SCALE = 10
ABOVE_BET_BOOST = 1.25

LOW_TIER_CAP = 1.0          # percent, each of the two lowest tiers
LOW_TIER_CAP_ABOVE_BET = 10
SMALL_PRIZE_LIMIT = 20      # tiers below this value are "small"
SMALL_PRIZE_CAP = 1.0       # percent, all small tiers together
SMALL_PRIZE_CAP_FROM_BET = 50

# (lowest bet, highest bet, tiers)
PRESET_TIERS: Tuple[Tuple[int, int, Tuple[int, ...]], ...] = (
    (9, 11, (0, 3, 5, 7, 8, 10, 15, 20, 50, 80, 100)),
    (18, 22, (0, 5, 10, 14, 17, 20, 40, 80, 100, 150, 200)),
    (28, 32, (0, 5, 10, 15, 20, 25, 30, 40, 60, 100, 150, 300)),
    (65, 75, (10, 15, 30, 40, 55, 70, 80, 120, 200, 250, 700)),
)

# canonical bet -> (tolerance, percent per tier). Tiers a table names but the
# tier set lacks are ignored.
TEMPLATES: Dict[int, Tuple[int, Dict[int, float]]] = {
    10: (1, {0: 10.26, 3: 10.26, 5: 10.26, 7: 20.53, 8: 25.66, 10: 15.40,
             15: 3.18, 20: 2.12, 50: 1.69, 80: 0.51, 100: 0.10}),
    20: (2, {0: 20.0, 5: 60.0, 20: 10.0, 30: 3.2, 40: 3.0, 60: 2.8,
             100: 1.5, 150: 0.7, 180: 0.4, 200: 0.1}),
}

# upper bet bound (inclusive) -> percent for the two lowest tiers
LOW_TIER_SHARES: Tuple[Tuple[int, Tuple[float, float]], ...] = (
    (10, (20.0, 60.0)),
    (20, (3.0, 6.0)),
    (49, (1.0, 1.0)),
)
LOW_TIER_SHARES_DEFAULT = (0.5, 0.5)

PercentStrategy = Callable[[List[int], int], Dict[int, float]]

_rng = random.SystemRandom()


@dataclass(frozen=True)
class Distribution:
    bet: int
    tiers: List[int]
    percents: Dict[int, float]
    weights: List[float]
    strategy: str

    @property
    def jackpot(self) -> int:
        return self.tiers[-1]


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def prize_tiers(bet: int) -> List[int]:
    bet = max(1, _round(bet))
    for low, high, tiers in PRESET_TIERS:
        if low <= bet <= high:
            return list(tiers)
    if bet < 50:
        candidates = [
            0, 3, 5, max(5, _round(bet * 0.6)), _round(bet * 0.85),
            _round(bet * 0.5), _round(bet * 0.75), bet,
            bet * 2, bet * 4, bet * 8,
        ]
    else:
        candidates = [
            0, 5, _round(bet * 0.2), _round(bet * 0.5), _round(bet * 0.8),
            bet, _round(bet * 1.5), bet * 2,
            bet * 3, bet * 5, _round(bet * 7.5),
        ]
    return sorted(set(candidates))


def template_percents(tiers: List[int], bet: int, template: Dict[int, float]) -> Dict[int, float]:
    percents = {tier: EPSILON_PERCENT for tier in tiers}
    present = [tier for tier in template if tier in percents]
    used = 0.0
    for tier in present:
        percents[tier] = template[tier]
        used += template[tier]
    if used > 0 and abs(used - 100) > 1e-4:
        scale = 100 / used
        for tier in present:
            percents[tier] *= scale
    return percents


def _low_tier_shares(bet: int) -> Tuple[float, float]:
    for upper, shares in LOW_TIER_SHARES:
        if bet <= upper:
            return shares
    return LOW_TIER_SHARES_DEFAULT


def _closeness(tier: int, bet: int) -> float:
    distance = max(1, abs(tier - bet))
    boost = ABOVE_BET_BOOST if tier >= bet else 1.0
    return boost / (1 + math.log10(1 + distance))


def formula_percents(
    tiers: List[int],
    bet: int,
    jackpot_probability: float = JACKPOT_BASE_PROBABILITY,
) -> Dict[int, float]:
    """
    Generic weighting: fixed shares for the two lowest tiers and the jackpot,
    the remainder split across the middle tiers by closeness to the bet.
    """
    percents = {tier: EPSILON_PERCENT for tier in tiers}
    lowest = tiers[:2]
    jackpot = tiers[-1]
    for tier, share in zip(lowest, _low_tier_shares(bet)):
        percents[tier] = share
    percents[jackpot] = max(EPSILON_PERCENT, jackpot_probability * 100)

    middle = [tier for tier in tiers if tier not in lowest and tier != jackpot]
    if middle:
        scores = {tier: _closeness(tier, bet) for tier in middle}
        total_score = sum(scores.values()) or 1.0
        used = sum(percents[tier] for tier in lowest) + percents[jackpot]
        remaining = max(1e-4, 100 - used)
        for tier, score in scores.items():
            percents[tier] = max(EPSILON_PERCENT, score / total_score * remaining)
    return percents


def select_strategy(bet: int, jackpot_probability: float = JACKPOT_BASE_PROBABILITY) -> Tuple[str, PercentStrategy]:
    for canonical in sorted(TEMPLATES):
        tolerance, table = TEMPLATES[canonical]
        if abs(bet - canonical) <= tolerance:
            return f"template:{canonical}", partial(template_percents, template=table)
    return "formula", partial(formula_percents, jackpot_probability=jackpot_probability)


def apply_caps(tiers: List[int], bet: int, percents: Dict[int, float]) -> Dict[int, float]:
    if bet > LOW_TIER_CAP_ABOVE_BET:
        for tier in tiers[:2]:
            percents[tier] = min(percents[tier], LOW_TIER_CAP)
    if bet >= SMALL_PRIZE_CAP_FROM_BET:
        smalls = [tier for tier in tiers if tier < SMALL_PRIZE_LIMIT]
        total = sum(percents[tier] for tier in smalls)
        if total > SMALL_PRIZE_CAP:
            factor = SMALL_PRIZE_CAP / total
            for tier in smalls:
                percents[tier] *= factor
    return percents


def normalize(tiers: List[int], percents: Dict[int, float]) -> Dict[int, float]:
    floored = {}
    for tier in tiers:
        value = percents.get(tier, 0.0)
        floored[tier] = value if math.isfinite(value) and value >= EPSILON_PERCENT else EPSILON_PERCENT
    total = sum(floored.values()) or 1.0
    return {tier: value * 100 / total for tier, value in floored.items()}


def outcome_distribution(bet: int, jackpot_probability: float = JACKPOT_BASE_PROBABILITY) -> Distribution:
    bet = max(1, _round(bet))
    tiers = prize_tiers(bet)
    tag, strategy = select_strategy(bet, jackpot_probability)
    percents = normalize(tiers, apply_caps(tiers, bet, strategy(tiers, bet)))
    weights = [max(1e-4, percents[tier] * WEIGHT_SCALE) for tier in tiers]
    return Distribution(bet=bet, tiers=tiers, percents=percents, weights=weights, strategy=tag)


def weighted_pick(
    values: Sequence[int],
    weights: Sequence[float],
    rng: Optional[random.Random] = None,
) -> Optional[int]:
    """
    Return the first value whose cumulative weight reaches a uniform draw over
    the total weight. Falls back to a uniform choice when no weight is positive.
    """
    rng = rng or _rng
    if not values:
        return None
    count = min(len(values), len(weights))
    cleaned = [w if math.isfinite(w) and w > 0 else 0.0 for w in weights[:count]]
    total = sum(cleaned)
    if total <= 0:
        return rng.choice(list(values))
    point = rng.random() * total
    cumulative = 0.0
    for value, weight in zip(values, cleaned):
        cumulative += weight
        if weight > 0 and cumulative >= point:
            return value
    return values[count - 1]
