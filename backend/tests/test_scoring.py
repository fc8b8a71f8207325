from types import SimpleNamespace

import pytest

from tradeflow.errors import ValidationError
from tradeflow.services.scoring_service import (
    DEFAULT_WEIGHTS,
    OfferScorer,
    eta_component,
    parse_eta,
    price_component,
    reliability_component,
)


@pytest.mark.parametrize("raw,hours", [
    (4, 4.0),
    (1.5, 1.5),
    ("2H", 2.0),
    ("3 hours", 3.0),
    ("1D", 24.0),
    ("2 days", 48.0),
    ("45 min", 0.75),
    ("6", 6.0),
])
def test_parse_eta(raw, hours):
    assert parse_eta(raw) == pytest.approx(hours)


@pytest.mark.parametrize("raw", ["soon", "", "-2h", True, None, float("nan"), -1])
def test_parse_eta_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        parse_eta(raw)


def test_price_component_bands():
    assert price_component(800, 1000) == 100.0
    assert price_component(1000, 1000) == pytest.approx(75.0)
    assert price_component(1100, 1000) == pytest.approx(50.0)
    assert price_component(1200, 1000) == pytest.approx(25.0)
    assert price_component(5000, 1000) == 0.0


def test_eta_component_is_monotonic():
    values = [eta_component(h) for h in (1, 2, 4, 6, 12, 24, 48, 72, 200)]
    assert values[0] == values[1] == 100.0
    assert values == sorted(values, reverse=True)
    assert eta_component(200) == 0.0


def test_reliability_uses_completion_rate():
    veteran = SimpleNamespace(reliability_score=80.0, total_orders=10, completed_orders=10)
    newcomer = SimpleNamespace(reliability_score=80.0, total_orders=0, completed_orders=0)
    assert reliability_component(veteran) == pytest.approx(86.0)
    assert reliability_component(newcomer) == pytest.approx(71.0)


def test_weights_must_sum_to_one():
    with pytest.raises(ValueError):
        OfferScorer({**DEFAULT_WEIGHTS, "price": 0.9})
    with pytest.raises(ValueError):
        OfferScorer({"price": 1.0})


def test_cheaper_faster_offer_scores_higher():
    scorer = OfferScorer()
    wholesaler = SimpleNamespace(reliability_score=70.0, average_rating=4.0, total_orders=0, completed_orders=0)
    good = scorer.score(price_cents=900, eta_hours=2, stock_confirmed=True, wholesaler=wholesaler, reference_cents=1000)
    bad = scorer.score(price_cents=1300, eta_hours=30, stock_confirmed=False, wholesaler=wholesaler, reference_cents=1000)

    assert good.total > bad.total
    assert set(good.components) == set(DEFAULT_WEIGHTS)
    assert 0 <= bad.total <= 100
    assert good.to_dict()["weights"] == DEFAULT_WEIGHTS
