# Overview: Periodic sweeps run from the CLI: bid expiry, routing timeouts, redelivery, suspension.

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import exists, or_
from sqlalchemy.orm import Session

from ..errors import TradeflowError
from ..models import Order, OrderRouting, VendorOffer
from tradeflow.time_utils import utcnow
from .credit_service import CreditService
from .notification_service import NotificationService
from .offer_service import BiddingService
from .order_state_machine import OPEN_FOR_BIDS
from .routing_service import ROUTING_PENDING, RoutingService


class SweepService:
    """
    Each sweep reads its candidates first, then resolves every candidate in
    its own unit of work. One bad row is logged and reported; it never stops
    the rest of the pass.
    """

    def __init__(
        self,
        session: Session,
        bidding: BiddingService,
        routing: RoutingService,
        credit: CreditService,
        notifier: NotificationService,
        *,
        logger: logging.Logger | None = None,
    ):
        self.session = session
        self.bidding = bidding
        self.routing = routing
        self.credit = credit
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

    def expired_bid_candidates(self, now: datetime) -> list[tuple[int, int]]:
        """
        (order_id, version) for expired orders still awaiting bids.

        An order is in the bidding flow when it was opened without a wholesaler
        or has received an offer; directed orders are left alone.
        """
        routed = exists().where(
            OrderRouting.order_id == Order.id,
            OrderRouting.status == ROUTING_PENDING,
        )
        has_offers = exists().where(VendorOffer.order_id == Order.id)
        rows = (
            self.session.query(Order.id, Order.version)
            .filter(
                Order.status.in_([s.value for s in OPEN_FOR_BIDS]),
                Order.expires_at.isnot(None),
                Order.expires_at <= now,
                ~routed,
                or_(Order.wholesaler_id.is_(None), has_offers),
            )
            .order_by(Order.expires_at, Order.id)
            .all()
        )
        return [(row[0], row[1]) for row in rows]

    def expire_bids(self, now: datetime | None = None) -> list[dict]:
        now = now or utcnow()
        candidates = self.expired_bid_candidates(now)
        self.session.rollback()
        return self.resolve_expired_bids(candidates, now)

    def resolve_expired_bids(self, candidates: list[tuple[int, int]], now: datetime) -> list[dict]:
        results = []
        for order_id, version in candidates:
            try:
                outcome = self.bidding.resolve_expired(order_id, version, now=now)
            except TradeflowError as exc:
                self.logger.warning("Bid expiry for order %s failed: %s", order_id, exc)
                outcome = {"order_id": order_id, "outcome": "ERROR", "error": exc.to_dict()}
            results.append(outcome)
        return results

    def timeout_routings(self, now: datetime | None = None) -> list[dict]:
        now = now or utcnow()
        routing_ids = self.routing.expired_routings(now)
        self.session.rollback()

        results = []
        for routing_id in routing_ids:
            try:
                result = self.routing.timeout(routing_id, now=now)
                results.append({
                    "routing_id": routing_id,
                    "timed_out": result["timed_out"],
                    "no_winner": result["no_winner"],
                })
            except TradeflowError as exc:
                self.logger.warning("Routing timeout for %s failed: %s", routing_id, exc)
                results.append({"routing_id": routing_id, "error": exc.to_dict()})
        return results

    def dispatch_notifications(self, limit: int = 500) -> dict:
        return self.notifier.dispatch_pending(limit=limit)

    def suspend_overdue(self, now: datetime | None = None) -> list[dict]:
        return self.credit.suspend_overdue_accounts(now or utcnow())
