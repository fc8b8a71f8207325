from datetime import timedelta

import pytest

from tradeflow.errors import (
    BiddingClosedError,
    ConcurrentTransitionError,
    NoOffersError,
    ValidationError,
    VendorNotEligibleError,
)
from tradeflow.models import CreditAccount, VendorOffer
from tradeflow.time_utils import utcnow


def _open_order(services, market, *, quantity=10, expires_in_minutes=30):
    return services.orders.create_order(
        market["retailer_id"],
        [{"product_id": market["rice"], "quantity": quantity, "unit_price_cents": 150}],
        expires_at=utcnow() + timedelta(minutes=expires_in_minutes),
    ).order


def test_offer_is_scored_and_upserted(services, market, db_session, gateway):
    order = _open_order(services, market)

    first = services.bidding.ingest_offer(order.id, market["w1"], 1450, "4H")
    assert first.score is not None
    assert first.eta_hours == 4.0

    second = services.bidding.ingest_offer(order.id, market["w1"], 1400, "1 day", stock_confirmed=True)
    assert second.id == first.id
    assert second.price_quote_cents == 1400
    assert second.eta_hours == 24.0
    assert db_session.query(VendorOffer).filter_by(order_id=order.id).count() == 1
    assert len(gateway.to(f"retailer:{market['retailer_id']}")) == 2


def test_each_offer_bumps_order_version(services, market):
    order = _open_order(services, market)
    before = order.version
    services.bidding.ingest_offer(order.id, market["w1"], 1450, 4)
    assert services.orders.get_order(order.id).version == before + 1


def test_offer_validation(services, market, seed):
    order = _open_order(services, market)
    with pytest.raises(ValidationError):
        services.bidding.ingest_offer(order.id, market["w1"], 0, "2H")
    with pytest.raises(ValidationError):
        services.bidding.ingest_offer(order.id, market["w1"], 100, "whenever")
    inactive = seed.wholesaler(active=False)
    with pytest.raises(VendorNotEligibleError):
        services.bidding.ingest_offer(order.id, inactive.id, 100, "2H")


def test_bidding_closed_after_expiry_or_acceptance(services, market):
    order = _open_order(services, market)
    with pytest.raises(BiddingClosedError):
        services.bidding.ingest_offer(order.id, market["w1"], 1400, 2, now=utcnow() + timedelta(hours=1))

    services.bidding.ingest_offer(order.id, market["w1"], 1400, 2)
    services.bidding.auto_select_winner(order.id)
    with pytest.raises(BiddingClosedError):
        services.bidding.ingest_offer(order.id, market["w2"], 1300, 2)


def test_ranking_prefers_higher_score(services, market):
    order = _open_order(services, market)
    services.bidding.ingest_offer(order.id, market["w2"], 1700, "30h")
    services.bidding.ingest_offer(order.id, market["w1"], 1350, "2h", stock_confirmed=True)

    ranked = services.bidding.get_offers_with_scores(order.id)
    assert [o["wholesaler_id"] for o in ranked] == [market["w1"], market["w2"]]
    assert [o["rank"] for o in ranked] == [1, 2]
    assert ranked[0]["score_breakdown"]["total"] > ranked[1]["score_breakdown"]["total"]
    assert ranked[0]["wholesaler"]["business_name"] == "Alpha Traders"


def test_auto_select_awards_best_offer(services, market, db_session, gateway):
    r = market["retailer_id"]
    order = _open_order(services, market)
    services.bidding.ingest_offer(order.id, market["w2"], 1700, "30h")
    services.bidding.ingest_offer(order.id, market["w1"], 1350, "2h", stock_confirmed=True)

    result = services.bidding.auto_select_winner(order.id)

    assert result.order.status == "WHOLESALER_ACCEPTED"
    assert result.order.wholesaler_id == market["w1"]
    assert result.order.total_cents == 1350
    statuses = {o.wholesaler_id: o.status for o in db_session.query(VendorOffer).filter_by(order_id=order.id)}
    assert statuses == {market["w1"]: "ACCEPTED", market["w2"]: "REJECTED"}
    assert services.ledger.calculate_balance(r, market["w1"]) == 1350
    assert services.stock.reservations_for_order(order.id)[0].status == "ACTIVE"
    assert gateway.to(f"wholesaler:{market['w1']}")
    assert any("another wholesaler" in t for t in gateway.to(f"wholesaler:{market['w2']}"))


def test_auto_select_without_offers(services, market):
    order = _open_order(services, market)
    with pytest.raises(NoOffersError):
        services.bidding.auto_select_winner(order.id)


def test_assign_specific_offer(services, market):
    order = _open_order(services, market)
    services.bidding.ingest_offer(order.id, market["w1"], 1350, "2h")
    losing = services.bidding.ingest_offer(order.id, market["w2"], 1700, "30h")

    result = services.bidding.assign_winner(order.id, losing.id)
    assert result.order.wholesaler_id == market["w2"]
    assert result.order.total_cents == 1700


def test_stale_version_is_skipped(services, market):
    order = _open_order(services, market)
    services.bidding.ingest_offer(order.id, market["w1"], 1400, 2)
    seen = services.orders.get_order(order.id).version
    services.bidding.ingest_offer(order.id, market["w2"], 1300, 2)

    with pytest.raises(ConcurrentTransitionError):
        services.bidding.auto_select_winner(order.id, expected_version=seen)
    assert services.orders.get_order(order.id).status == "CREATED"


def test_expiry_sweep_awards_and_skips_changed_orders(services, market):
    expired = _open_order(services, market, expires_in_minutes=-1)
    still_open = _open_order(services, market, expires_in_minutes=30)

    # Seed an offer on the expired order while its window was open
    services.bidding.ingest_offer(expired.id, market["w1"], 1400, 2, now=utcnow() - timedelta(minutes=5))
    services.bidding.ingest_offer(still_open.id, market["w1"], 1400, 2)

    candidates = services.sweeps.expired_bid_candidates(utcnow())
    assert [c[0] for c in candidates] == [expired.id]

    stale = [(expired.id, candidates[0][1] - 1)]
    assert services.sweeps.resolve_expired_bids(stale, utcnow()) == [{"order_id": expired.id, "outcome": "SKIPPED"}]

    results = services.sweeps.expire_bids()
    assert results == [{"order_id": expired.id, "outcome": "AWARDED", "wholesaler_id": market["w1"]}]
    assert services.orders.get_order(still_open.id).status == "CREATED"


def test_expiry_sweep_falls_back_when_winner_lacks_credit(services, market, db_session):
    order = _open_order(services, market, expires_in_minutes=-1)
    past = utcnow() - timedelta(minutes=5)
    services.bidding.ingest_offer(order.id, market["w1"], 1300, "2h", stock_confirmed=True, now=past)
    services.bidding.ingest_offer(order.id, market["w2"], 1500, "10h", now=past)

    account = db_session.query(CreditAccount).filter_by(
        retailer_id=market["retailer_id"], wholesaler_id=market["w1"]
    ).one()
    account.credit_limit_cents = 100
    db_session.commit()

    results = services.sweeps.expire_bids()

    assert results[0]["outcome"] == "AWARDED"
    assert results[0]["wholesaler_id"] == market["w2"]
    offers = {o.wholesaler_id: o.status for o in db_session.query(VendorOffer).filter_by(order_id=order.id)}
    assert offers == {market["w1"]: "REJECTED", market["w2"]: "ACCEPTED"}


def test_expiry_sweep_fails_order_without_offers(services, market):
    order = _open_order(services, market, expires_in_minutes=-1)
    results = services.sweeps.expire_bids()
    assert results == [{"order_id": order.id, "outcome": "FAILED"}]
    assert services.orders.get_order(order.id).status == "FAILED"


def test_expiry_sweep_leaves_directed_orders_alone(services, market, db_session):
    order = services.orders.create_order(
        market["retailer_id"],
        [{"product_id": market["rice"], "quantity": 10, "unit_price_cents": 150}],
        wholesaler_id=market["w1"],
    ).order
    services.orders.approve_credit(order.id)
    services.orders.reserve_stock(order.id)

    later = utcnow() + timedelta(minutes=31)
    assert services.sweeps.expired_bid_candidates(later) == []
    assert services.sweeps.expire_bids(later) == []

    assert services.orders.get_order(order.id).status == "STOCK_RESERVED"
    reservations = services.stock.reservations_for_order(order.id, "ACTIVE")
    assert [r.quantity for r in reservations] == [10]
