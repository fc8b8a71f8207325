# Overview: Competitive bidding: offer ingestion, ranking and winner selection.

"""
Bidding Rules (authoritative)

- One offer per (order, wholesaler). Re-submission updates the PENDING row.
- Offers are accepted only while the order is open for bids (CREATED,
  CREDIT_APPROVED, STOCK_RESERVED) and not past expires_at. Each ingestion
  bumps Order.version with a conditional UPDATE, so a sweep that read the
  order before the bid landed loses its compare-and-set.
- Ranking: score desc, then price asc, then submitted earlier, then lower
  wholesaler id. Scores are recomputed from current wholesaler stats.
- Awarding an offer marks it ACCEPTED, every other PENDING offer REJECTED,
  sets the order total to the quoted price and drives the order to
  WHOLESALER_ACCEPTED in the same unit of work.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import (
    BiddingClosedError,
    ConcurrentTransitionError,
    InsufficientCreditError,
    InsufficientStockError,
    NoOffersError,
    NotFoundError,
    ValidationError,
    VendorNotEligibleError,
)
from ..models import Order, VendorOffer, Wholesaler
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set, run_in_transaction
from .notification_service import NotificationService, retailer_recipient, wholesaler_recipient
from .order_state_machine import OPEN_FOR_BIDS, OrderStateMachine, OrderStatus, TransitionResult
from .scoring_service import OfferScorer, parse_eta


OFFER_PENDING = "PENDING"
OFFER_ACCEPTED = "ACCEPTED"
OFFER_REJECTED = "REJECTED"


class BiddingService:
    def __init__(
        self,
        session: Session,
        state_machine: OrderStateMachine,
        scorer: OfferScorer,
        notifier: NotificationService,
        *,
        logger: logging.Logger | None = None,
        retry_attempts: int = 3,
    ):
        self.session = session
        self.state_machine = state_machine
        self.scorer = scorer
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self.retry_attempts = retry_attempts

    def _is_open(self, order: Order, now: datetime) -> bool:
        return (
            OrderStatus(order.status) in OPEN_FOR_BIDS
            and (order.expires_at is None or order.expires_at > now)
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_offer(
        self,
        order_id: int,
        wholesaler_id: int,
        price_quote_cents: int,
        eta,
        *,
        stock_confirmed: bool = False,
        now: datetime | None = None,
    ) -> VendorOffer:
        if isinstance(price_quote_cents, bool) or not isinstance(price_quote_cents, int) or price_quote_cents <= 0:
            raise ValidationError("price_quote_cents must be a positive integer")
        eta_hours = parse_eta(eta)

        def _op():
            current = now or utcnow()
            order = self.state_machine.load_locked(order_id)
            wholesaler = self.session.get(Wholesaler, wholesaler_id)
            if wholesaler is None or not wholesaler.is_active:
                raise VendorNotEligibleError(
                    "Wholesaler cannot bid", details={"wholesaler_id": wholesaler_id}
                )
            if not self._is_open(order, current):
                raise BiddingClosedError(
                    "Order is not open for bids",
                    details={"order_id": order.id, "status": order.status},
                )

            ok = compare_and_set(
                self.session,
                Order,
                [
                    Order.id == order.id,
                    Order.status == order.status,
                    Order.version == order.version,
                    or_(Order.expires_at.is_(None), Order.expires_at > current),
                ],
                {"version": order.version + 1, "updated_at": current},
            )
            if not ok:
                raise ConcurrentTransitionError("Order changed while bidding", details={"order_id": order.id})
            self.session.refresh(order)

            offer = (
                self.session.query(VendorOffer)
                .filter_by(order_id=order.id, wholesaler_id=wholesaler_id)
                .first()
            )
            if offer is not None and offer.status != OFFER_PENDING:
                raise BiddingClosedError(
                    "Offer already decided", details={"offer_id": offer.id, "status": offer.status}
                )
            if offer is None:
                offer = VendorOffer(order_id=order.id, wholesaler_id=wholesaler_id, created_at=current)
                self.session.add(offer)
            offer.price_quote_cents = price_quote_cents
            offer.eta_hours = eta_hours
            offer.stock_confirmed = bool(stock_confirmed)
            offer.status = OFFER_PENDING
            offer.updated_at = current
            offer.wholesaler = wholesaler
            offer.score = self.scorer.score_offer(offer, order).total
            self.session.flush()

            self.notifier.queue(
                retailer_recipient(order.retailer_id),
                f"New offer on order #{order.id}: {price_quote_cents / 100:.2f}, ETA {eta_hours:g}h.",
                order_id=order.id,
            )
            return offer

        offer = run_in_transaction(
            self.session,
            _op,
            attempts=self.retry_attempts,
            retry_on=(IntegrityError, ConcurrentTransitionError),
        )
        self.notifier.dispatch_after_commit()
        return offer

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _ranked(self, order: Order, status: str | None = OFFER_PENDING) -> list[tuple[VendorOffer, dict]]:
        q = self.session.query(VendorOffer).filter_by(order_id=order.id)
        if status is not None:
            q = q.filter_by(status=status)
        scored = [(offer, self.scorer.score_offer(offer, order).to_dict()) for offer in q.all()]
        scored.sort(key=lambda pair: (
            -pair[1]["total"],
            pair[0].price_quote_cents,
            pair[0].created_at,
            pair[0].wholesaler_id,
        ))
        return scored

    def get_offers_with_scores(self, order_id: int) -> list[dict]:
        order = self.state_machine.get_order(order_id)
        rows = []
        for rank, (offer, breakdown) in enumerate(self._ranked(order, status=None), start=1):
            data = offer.to_dict()
            data["rank"] = rank
            data["score_breakdown"] = breakdown
            data["wholesaler"] = offer.wholesaler.to_dict() if offer.wholesaler else None
            rows.append(data)
        return rows

    # ------------------------------------------------------------------
    # Awarding
    # ------------------------------------------------------------------

    def award_locked(self, order: Order, offer: VendorOffer, *, actor: str, now: datetime) -> TransitionResult:
        """Accept `offer` and drive `order` to WHOLESALER_ACCEPTED. Caller owns the unit of work."""
        won = compare_and_set(
            self.session,
            VendorOffer,
            [VendorOffer.id == offer.id, VendorOffer.status == OFFER_PENDING],
            {"status": OFFER_ACCEPTED, "updated_at": now},
        )
        if not won:
            raise BiddingClosedError("Offer is no longer pending", details={"offer_id": offer.id})
        compare_and_set(
            self.session,
            VendorOffer,
            [
                VendorOffer.order_id == order.id,
                VendorOffer.id != offer.id,
                VendorOffer.status == OFFER_PENDING,
            ],
            {"status": OFFER_REJECTED, "updated_at": now},
        )

        winner = offer.wholesaler_id
        agreed = offer.price_quote_cents
        context = {"wholesaler_id": winner, "agreed_total_cents": agreed}

        if order.status == OrderStatus.CREATED.value:
            self.state_machine.transition_locked(
                order, OrderStatus.CREDIT_APPROVED, context, actor=actor, reason="Offer selected", now=now
            )
        if order.status == OrderStatus.CREDIT_APPROVED.value:
            self.state_machine.transition_locked(
                order, OrderStatus.STOCK_RESERVED, context, actor=actor, reason="Offer selected", now=now
            )
        result = self.state_machine.transition_locked(
            order, OrderStatus.WHOLESALER_ACCEPTED, context, actor=actor, reason=f"Offer {offer.id} selected", now=now
        )

        self.notifier.queue(
            wholesaler_recipient(winner),
            f"Your offer on order #{order.id} was selected.",
            order_id=order.id,
        )
        losers = (
            self.session.query(VendorOffer.wholesaler_id)
            .filter(VendorOffer.order_id == order.id, VendorOffer.id != offer.id)
            .all()
        )
        for (loser_id,) in losers:
            self.notifier.queue(
                wholesaler_recipient(loser_id),
                f"Order #{order.id} was awarded to another wholesaler.",
                order_id=order.id,
            )
        return result

    def _best_pending(self, order: Order) -> VendorOffer:
        ranked = self._ranked(order)
        if not ranked:
            raise NoOffersError("No pending offers for order", details={"order_id": order.id})
        return ranked[0][0]

    def auto_select_winner(
        self,
        order_id: int,
        *,
        actor: str = "SYSTEM",
        now: datetime | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """
        Award the highest-ranked PENDING offer.

        With expected_version, the order must not have changed since the
        caller looked at it; a mismatch raises ConcurrentTransitionError.
        """
        def _op():
            current = now or utcnow()
            order = self.state_machine.load_locked(order_id)
            if expected_version is not None and order.version != expected_version:
                raise ConcurrentTransitionError(
                    "Order changed since it was read",
                    details={"order_id": order_id, "expected_version": expected_version, "version": order.version},
                )
            return self.award_locked(order, self._best_pending(order), actor=actor, now=current)

        result = run_in_transaction(self.session, _op, attempts=self.retry_attempts)
        self.notifier.dispatch_after_commit()
        return result

    def assign_winner(self, order_id: int, offer_id: int, *, actor: str = "SYSTEM") -> TransitionResult:
        def _op():
            order = self.state_machine.load_locked(order_id)
            offer = self.session.get(VendorOffer, offer_id)
            if offer is None or offer.order_id != order.id:
                raise NotFoundError("Offer not found for order", details={"order_id": order_id, "offer_id": offer_id})
            if offer.status != OFFER_PENDING:
                raise BiddingClosedError("Offer is no longer pending", details={"offer_id": offer_id, "status": offer.status})
            return self.award_locked(order, offer, actor=actor, now=utcnow())

        result = run_in_transaction(self.session, _op, attempts=self.retry_attempts)
        self.notifier.dispatch_after_commit()
        return result

    def reject_offer(self, offer_id: int, *, reason: str | None = None) -> VendorOffer:
        """Take one offer out of contention (used when awarding it failed on credit or stock)."""
        def _op():
            compare_and_set(
                self.session,
                VendorOffer,
                [VendorOffer.id == offer_id, VendorOffer.status == OFFER_PENDING],
                {"status": OFFER_REJECTED, "updated_at": utcnow()},
            )
            offer = self.session.get(VendorOffer, offer_id)
            self.session.refresh(offer)
            return offer

        offer = run_in_transaction(self.session, _op, attempts=self.retry_attempts)
        self.logger.info("Offer %s rejected: %s", offer_id, reason or "no reason given")
        return offer

    def resolve_expired(self, order_id: int, seen_version: int, *, now: datetime) -> dict:
        """
        Resolve one expired order for the bid-expiry sweep.

        Tries pending offers best-first; an offer whose wholesaler lacks credit
        or stock is rejected and the next one is tried. With nothing left the
        order is failed. A version mismatch means a bid landed after the sweep
        read the order: the order is skipped for this pass.
        """
        while True:
            try:
                result = self.auto_select_winner(
                    order_id, actor="SWEEP", now=now, expected_version=seen_version
                )
                return {"order_id": order_id, "outcome": "AWARDED", "wholesaler_id": result.order.wholesaler_id}
            except ConcurrentTransitionError:
                return {"order_id": order_id, "outcome": "SKIPPED"}
            except NoOffersError:
                break
            except (InsufficientCreditError, InsufficientStockError, VendorNotEligibleError) as exc:
                order = self.state_machine.get_order(order_id)
                ranked = self._ranked(order)
                self.session.rollback()
                if not ranked:
                    break
                self.reject_offer(ranked[0][0].id, reason=exc.code)

        def _fail():
            order = self.state_machine.load_locked(order_id)
            if order.version != seen_version:
                raise ConcurrentTransitionError("Order changed since it was read", details={"order_id": order_id})
            return self.state_machine.transition_locked(
                order, OrderStatus.FAILED, actor="SWEEP", reason="Bidding window expired without a winner", now=now
            )

        try:
            run_in_transaction(self.session, _fail, attempts=self.retry_attempts)
        except ConcurrentTransitionError:
            return {"order_id": order_id, "outcome": "SKIPPED"}
        self.notifier.dispatch_after_commit()
        return {"order_id": order_id, "outcome": "FAILED"}
