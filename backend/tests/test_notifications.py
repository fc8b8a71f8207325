import logging

import pytest

from tradeflow.errors import NotificationError
from tradeflow.models import NotificationOutbox
from tradeflow.services.notification_service import DisabledGateway, LoggingGateway, build_gateway


def _order(services, market):
    return services.orders.create_order(
        market["retailer_id"],
        [{"product_id": market["rice"], "quantity": 2, "unit_price_cents": 150}],
        wholesaler_id=market["w1"],
    ).order


def test_gateway_outage_does_not_undo_business_write(services, market, gateway, db_session):
    gateway.fail = True
    order = _order(services, market)
    services.orders.approve_credit(order.id)
    services.orders.reserve_stock(order.id)

    result = services.orders.accept_at_wholesaler(order.id)

    assert result.order.status == "WHOLESALER_ACCEPTED"
    rows = services.notifier.list_for_order(order.id)
    assert rows
    for row in rows:
        db_session.refresh(row)
        assert row.status == "PENDING"
        assert row.attempts == 1
        assert row.last_error == "gateway down"


def test_pending_rows_are_redelivered(services, market, gateway):
    gateway.fail = True
    order = _order(services, market)
    services.orders.approve_credit(order.id)
    services.orders.reserve_stock(order.id)
    services.orders.accept_at_wholesaler(order.id)
    assert gateway.sent == []

    gateway.fail = False
    summary = services.sweeps.dispatch_notifications()

    assert summary["sent"] >= 1
    assert summary["failed"] == 0
    assert gateway.to(f"retailer:{market['retailer_id']}")
    assert services.notifier.dispatch_pending() == {"sent": 0, "failed": 0, "retry": 0, "skipped": 0}


def test_row_fails_after_max_attempts(services, market, gateway, db_session):
    gateway.fail = True
    row = services.notifier.queue("retailer:1", "Ping")
    db_session.commit()

    for _ in range(services.notifier.max_attempts - 1):
        assert services.notifier.dispatch_pending()["retry"] == 1
    assert services.notifier.dispatch_pending()["failed"] == 1

    db_session.refresh(row)
    assert row.status == "FAILED"
    assert row.attempts == services.notifier.max_attempts
    assert db_session.query(NotificationOutbox).filter_by(status="PENDING").count() == 0


def test_sent_rows_are_stamped(services, gateway, db_session):
    row = services.notifier.queue("wholesaler:9", "Hello")
    db_session.commit()

    assert services.notifier.dispatch_pending()["sent"] == 1
    db_session.refresh(row)
    assert row.status == "SENT"
    assert row.sent_at is not None
    assert gateway.sent == [("wholesaler:9", "Hello")]


def test_build_gateway():
    logger = logging.getLogger("tradeflow.test")
    assert isinstance(build_gateway("log", logger), LoggingGateway)
    disabled = build_gateway("DISABLED", logger)
    assert isinstance(disabled, DisabledGateway)
    with pytest.raises(NotificationError):
        disabled.send("retailer:1", "hi")
    with pytest.raises(ValueError):
        build_gateway("carrier-pigeon", logger)


def test_request_dispatch_only_sends_its_own_order(services, market, gateway, db_session):
    other = _order(services, market)
    backlog = NotificationOutbox(recipient_id="retailer:77", message="Old news", order_id=other.id, status="PENDING", attempts=0)
    loose = NotificationOutbox(recipient_id="retailer:78", message="No order attached", status="PENDING", attempts=0)
    db_session.add_all([backlog, loose])
    db_session.commit()

    order = _order(services, market)
    services.orders.approve_credit(order.id)
    services.orders.reserve_stock(order.id)
    services.orders.accept_at_wholesaler(order.id)

    assert gateway.to(f"retailer:{market['retailer_id']}")
    assert gateway.to("retailer:77") == []
    assert gateway.to("retailer:78") == []
    for row in (backlog, loose):
        db_session.refresh(row)
        assert row.status == "PENDING"
        assert row.attempts == 0

    assert services.sweeps.dispatch_notifications()["sent"] == 2
