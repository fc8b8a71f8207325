# Overview: The one canonical offer scoring function and ETA parsing.

"""
Offer scoring.

Every component is a bounded 0-100 transform:
- price: quote relative to the order total, lower is better
- eta: hours until delivery, sooner is better
- reliability: 70% reliability_score + 30% completion rate
- rating: average_rating on a 0-5 scale
- stock_confirmed: 100 or 0

The total is the weighted sum rounded to 4 decimals. Weights come from
Config.SCORING_WEIGHTS and must sum to 1.0.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

from ..errors import ValidationError


DEFAULT_WEIGHTS = {
    "price": 0.40,
    "eta": 0.25,
    "reliability": 0.20,
    "rating": 0.10,
    "stock_confirmed": 0.05,
}

_ETA_RE = re.compile(
    r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>h|hr|hrs|hour|hours|d|day|days|m|min|mins|minute|minutes)?\s*$",
    re.IGNORECASE,
)


def parse_eta(value) -> float:
    """
    Normalize an ETA to hours.

    Accepts a non-negative number (hours) or strings like "2H", "3 hours",
    "1D", "45 min". Anything else is a ValidationError.
    """
    if isinstance(value, bool):
        raise ValidationError("eta must be a number of hours or a duration string")
    if isinstance(value, (int, float)):
        hours = float(value)
    elif isinstance(value, str):
        match = _ETA_RE.match(value)
        if not match:
            raise ValidationError(f"Unrecognized ETA '{value}'")
        amount = float(match.group("value"))
        unit = (match.group("unit") or "h").lower()
        if unit.startswith("d"):
            hours = amount * 24
        elif unit.startswith("m"):
            hours = amount / 60
        else:
            hours = amount
    else:
        raise ValidationError("eta must be a number of hours or a duration string")

    if math.isnan(hours) or math.isinf(hours) or hours < 0:
        raise ValidationError("eta must be a non-negative finite number of hours")
    return hours


def price_component(price_cents: int, reference_cents: int | None) -> float:
    reference = reference_cents if reference_cents else price_cents * 1.2
    if reference <= 0:
        return 100.0
    ratio = price_cents / reference
    if ratio <= 0.9:
        return 100.0
    if ratio <= 1.0:
        return 75 + (1.0 - ratio) * 250
    if ratio <= 1.1:
        return 50 + (1.1 - ratio) * 250
    if ratio <= 1.2:
        return 25 + (1.2 - ratio) * 250
    return max(0.0, 25 - (ratio - 1.2) * 125)


def eta_component(hours: float) -> float:
    if hours <= 2:
        return 100.0
    if hours <= 6:
        return 100 - (hours - 2) * 2.5
    if hours <= 12:
        return 90 - (hours - 6) * (20 / 6)
    if hours <= 24:
        return 70 - (hours - 12) * (20 / 12)
    if hours <= 48:
        return 50 - (hours - 24) * (20 / 24)
    return max(0.0, 30 - (hours - 48) * 0.5)


def reliability_component(wholesaler) -> float:
    if wholesaler is None:
        return 50.0
    total = wholesaler.total_orders or 0
    completed = wholesaler.completed_orders or 0
    completion_rate = completed / total if total > 0 else 0.5
    score = (wholesaler.reliability_score or 0) * 0.7 + completion_rate * 100 * 0.3
    return min(100.0, max(0.0, score))


def rating_component(wholesaler) -> float:
    if wholesaler is None:
        return 50.0
    return min(100.0, max(0.0, (wholesaler.average_rating or 0) / 5 * 100))


@dataclass(frozen=True)
class ScoreBreakdown:
    total: float
    components: dict = field(default_factory=dict)
    weights: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"total": self.total, "components": dict(self.components), "weights": dict(self.weights)}


class OfferScorer:
    def __init__(self, weights: dict | None = None):
        weights = dict(weights or DEFAULT_WEIGHTS)
        missing = set(DEFAULT_WEIGHTS) - set(weights)
        if missing:
            raise ValueError(f"Scoring weights missing: {', '.join(sorted(missing))}")
        if abs(sum(weights[k] for k in DEFAULT_WEIGHTS) - 1.0) > 1e-6:
            raise ValueError("Scoring weights must sum to 1.0")
        self.weights = {k: float(weights[k]) for k in DEFAULT_WEIGHTS}

    def score(
        self,
        *,
        price_cents: int,
        eta_hours: float,
        stock_confirmed: bool,
        wholesaler,
        reference_cents: int | None,
    ) -> ScoreBreakdown:
        components = {
            "price": price_component(price_cents, reference_cents),
            "eta": eta_component(eta_hours),
            "reliability": reliability_component(wholesaler),
            "rating": rating_component(wholesaler),
            "stock_confirmed": 100.0 if stock_confirmed else 0.0,
        }
        total = sum(components[k] * self.weights[k] for k in components)
        return ScoreBreakdown(
            total=round(total, 4),
            components={k: round(v, 4) for k, v in components.items()},
            weights=dict(self.weights),
        )

    def score_offer(self, offer, order) -> ScoreBreakdown:
        return self.score(
            price_cents=offer.price_quote_cents,
            eta_hours=offer.eta_hours,
            stock_confirmed=offer.stock_confirmed,
            wholesaler=offer.wholesaler,
            reference_cents=order.total_cents,
        )
