# Overview: Vendor routing: broadcast to candidates and race-safe single-winner acceptance.

"""
Routing Rules (authoritative)

- One open (PENDING_RESPONSES) routing per order.
- The winner is written exactly once by
      UPDATE order_routings SET winner = ?, status = 'VENDOR_ACCEPTED'
      WHERE id = ? AND winner IS NULL AND status = 'PENDING_RESPONSES'
  in the same unit of work that drives the order to WHOLESALER_ACCEPTED.
  rowcount 0 means another vendor won: the caller gets AlreadyAcceptedError
  and a LOST response row is recorded in a separate unit.
- Repeating the winning accept returns the same result without writing.
- Vendors that rejected or timed out cannot accept later (LateResponseError).
- When every candidate has rejected or timed out the routing resolves to
  NO_WINNER and the order is transitioned to FAILED explicitly.
- Cancellation notices to losing candidates are queued with the win and sent
  after commit; a failed send never undoes the win.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import (
    AlreadyAcceptedError,
    LateResponseError,
    NoEligibleVendorsError,
    PersistenceError,
    RoutingNotFoundError,
    ValidationError,
    VendorNotEligibleError,
)
from ..models import OrderRouting, OrderTransition, VendorResponse, Wholesaler, WholesalerProduct
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set, lock_for_update, run_in_transaction
from .notification_service import NotificationService, retailer_recipient, wholesaler_recipient
from .order_state_machine import TERMINAL_STATES, OrderStateMachine, OrderStatus
from .stock_service import merge_items


ROUTING_PENDING = "PENDING_RESPONSES"
ROUTING_ACCEPTED = "VENDOR_ACCEPTED"
ROUTING_NO_WINNER = "NO_WINNER"

RESPONSE_ACCEPT = "ACCEPT"
RESPONSE_REJECT = "REJECT"
RESPONSE_TIMEOUT = "TIMEOUT"
RESPONSE_LOST = "LOST"
NEGATIVE_RESPONSES = {RESPONSE_REJECT, RESPONSE_TIMEOUT}


class RoutingService:
    def __init__(
        self,
        session: Session,
        state_machine: OrderStateMachine,
        notifier: NotificationService,
        *,
        logger: logging.Logger | None = None,
        timeout_seconds: int = 600,
        max_candidates: int = 10,
        retry_attempts: int = 3,
    ):
        self.session = session
        self.state_machine = state_machine
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self.timeout_seconds = timeout_seconds
        self.max_candidates = max_candidates
        self.retry_attempts = retry_attempts

    def _tx(self, func):
        result = run_in_transaction(self.session, func, attempts=self.retry_attempts)
        self.notifier.dispatch_after_commit()
        return result

    def get_routing(self, routing_id: int, *, lock: bool = False) -> OrderRouting:
        q = self.session.query(OrderRouting).filter_by(id=routing_id)
        if lock:
            q = lock_for_update(q)
        routing = q.populate_existing().first()
        if routing is None:
            raise RoutingNotFoundError("Routing not found", details={"routing_id": routing_id})
        return routing

    def _response(self, routing_id: int, wholesaler_id: int) -> VendorResponse | None:
        return (
            self.session.query(VendorResponse)
            .filter_by(routing_id=routing_id, wholesaler_id=wholesaler_id)
            .first()
        )

    def _record(self, routing_id: int, wholesaler_id: int, response_type: str, reason: str | None = None) -> VendorResponse:
        response = self._response(routing_id, wholesaler_id)
        if response is None:
            response = VendorResponse(routing_id=routing_id, wholesaler_id=wholesaler_id)
            self.session.add(response)
        response.response_type = response_type
        response.reason = reason
        self.session.flush()
        return response

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    def eligible_vendors(self, order) -> list[int]:
        """
        Active wholesalers carrying every ordered product with enough
        available stock, best reliability first. The order's current
        wholesaler is always eligible (its own reservation is already held).
        """
        needed = merge_items(order.items)
        ranked = (
            self.session.query(Wholesaler)
            .filter(Wholesaler.is_active.is_(True))
            .order_by(
                Wholesaler.reliability_score.desc(),
                Wholesaler.completed_orders.desc(),
                Wholesaler.id.asc(),
            )
            .all()
        )
        eligible = []
        for wholesaler in ranked:
            if wholesaler.id == order.wholesaler_id:
                eligible.append(wholesaler.id)
                continue
            positions = {
                p.product_id: p
                for p in self.session.query(WholesalerProduct).filter(
                    WholesalerProduct.wholesaler_id == wholesaler.id,
                    WholesalerProduct.product_id.in_(list(needed)),
                )
            }
            if all(pid in positions and positions[pid].available_stock >= qty for pid, qty in needed.items()):
                eligible.append(wholesaler.id)
        return eligible[: self.max_candidates]

    def route_order(
        self,
        order_id: int,
        candidate_ids: list[int] | None = None,
        *,
        actor: str = "SYSTEM",
        now: datetime | None = None,
    ) -> OrderRouting:
        def _op():
            current = now or utcnow()
            order = self.state_machine.load_locked(order_id)
            if OrderStatus(order.status) != OrderStatus.STOCK_RESERVED:
                raise ValidationError(
                    "Only STOCK_RESERVED orders can be routed",
                    details={"order_id": order.id, "status": order.status},
                )
            existing = (
                self.session.query(OrderRouting)
                .filter_by(order_id=order.id, status=ROUTING_PENDING)
                .first()
            )
            if existing is not None:
                return existing

            if candidate_ids:
                candidates = []
                for wid in dict.fromkeys(candidate_ids):
                    wholesaler = self.session.get(Wholesaler, wid)
                    if wholesaler is None or not wholesaler.is_active:
                        raise VendorNotEligibleError("Candidate is not an active wholesaler", details={"wholesaler_id": wid})
                    candidates.append(wid)
            else:
                candidates = self.eligible_vendors(order)
            if not candidates:
                raise NoEligibleVendorsError("No eligible wholesalers for order", details={"order_id": order.id})

            routing = OrderRouting(
                order_id=order.id,
                candidates=candidates,
                status=ROUTING_PENDING,
                expires_at=current + timedelta(seconds=self.timeout_seconds),
                created_at=current,
            )
            self.session.add(routing)
            self.session.flush()

            for wid in candidates:
                self.notifier.queue(
                    wholesaler_recipient(wid),
                    f"New order #{order.id} ({len(order.items)} items, {order.total_cents / 100:.2f}). "
                    f"Reply ACCEPT or REJECT for routing {routing.id}.",
                    order_id=order.id,
                )
            self.logger.info("Order %s routed to %s candidates by %s", order.id, len(candidates), actor)
            return routing

        return self._tx(_op)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def respond(self, routing_id: int, wholesaler_id: int, response: str, *, reason: str | None = None) -> dict:
        response = (response or "").upper()
        if response == RESPONSE_ACCEPT:
            return self.accept_vendor(routing_id, wholesaler_id)
        if response == RESPONSE_REJECT:
            return self.reject_vendor(routing_id, wholesaler_id, reason=reason)
        raise ValidationError("response must be ACCEPT or REJECT", details={"response": response})

    def _check_candidate(self, routing: OrderRouting, wholesaler_id: int) -> None:
        if wholesaler_id not in (routing.candidates or []):
            raise VendorNotEligibleError(
                "Wholesaler is not a candidate for this routing",
                details={"routing_id": routing.id, "wholesaler_id": wholesaler_id},
            )

    def _winning_result(self, routing: OrderRouting, idempotent: bool) -> dict:
        order = self.state_machine.get_order(routing.order_id)
        transition = (
            self.session.query(OrderTransition)
            .filter_by(order_id=order.id, to_state=OrderStatus.WHOLESALER_ACCEPTED.value)
            .order_by(OrderTransition.id.desc())
            .first()
        )
        return {
            "routing": routing.to_dict(),
            "order": order.to_dict(),
            "transition": transition.to_dict() if transition else None,
            "idempotent": idempotent,
        }

    def accept_vendor(self, routing_id: int, wholesaler_id: int, *, now: datetime | None = None) -> dict:
        def _op():
            current = now or utcnow()
            routing = self.get_routing(routing_id, lock=True)
            self._check_candidate(routing, wholesaler_id)

            if routing.winner_wholesaler_id == wholesaler_id:
                return self._winning_result(routing, idempotent=True)

            prior = self._response(routing.id, wholesaler_id)
            if prior is not None and prior.response_type in NEGATIVE_RESPONSES:
                raise LateResponseError(
                    "Wholesaler already responded",
                    details={"routing_id": routing.id, "wholesaler_id": wholesaler_id, "response": prior.response_type},
                )
            if routing.winner_wholesaler_id is not None:
                raise AlreadyAcceptedError(
                    "Order already accepted by another wholesaler",
                    details={"routing_id": routing.id, "winner_wholesaler_id": routing.winner_wholesaler_id},
                )
            if routing.status != ROUTING_PENDING:
                raise LateResponseError(
                    "Routing is closed", details={"routing_id": routing.id, "status": routing.status}
                )

            won = compare_and_set(
                self.session,
                OrderRouting,
                [
                    OrderRouting.id == routing.id,
                    OrderRouting.winner_wholesaler_id.is_(None),
                    OrderRouting.status == ROUTING_PENDING,
                ],
                {"winner_wholesaler_id": wholesaler_id, "status": ROUTING_ACCEPTED, "resolved_at": current},
            )
            self.session.refresh(routing)
            if not won:
                raise AlreadyAcceptedError(
                    "Order already accepted by another wholesaler",
                    details={"routing_id": routing.id, "winner_wholesaler_id": routing.winner_wholesaler_id},
                )

            self._record(routing.id, wholesaler_id, RESPONSE_ACCEPT)
            order = self.state_machine.load_locked(routing.order_id)
            result = self.state_machine.transition_locked(
                order,
                OrderStatus.WHOLESALER_ACCEPTED,
                {"wholesaler_id": wholesaler_id, "routing_id": routing.id},
                actor=f"wholesaler:{wholesaler_id}",
                reason=f"Accepted via routing {routing.id}",
                now=current,
            )

            for other in routing.candidates or []:
                if other != wholesaler_id:
                    self.notifier.queue(
                        wholesaler_recipient(other),
                        f"Order #{order.id} has been accepted by another wholesaler. No action needed.",
                        order_id=order.id,
                    )
            return {
                "routing": routing.to_dict(),
                "order": result.order.to_dict(),
                "transition": result.transition.to_dict(),
                "idempotent": False,
            }

        try:
            result = self._tx(_op)
        except AlreadyAcceptedError:
            self._record_lost(routing_id, wholesaler_id)
            raise
        self.logger.info("Routing %s won by wholesaler %s", routing_id, wholesaler_id)
        return result

    def _record_lost(self, routing_id: int, wholesaler_id: int) -> None:
        def _op():
            if self._response(routing_id, wholesaler_id) is None:
                self._record(routing_id, wholesaler_id, RESPONSE_LOST, reason="Another wholesaler accepted first")

        try:
            run_in_transaction(self.session, _op, attempts=self.retry_attempts, retry_on=(IntegrityError,))
        except PersistenceError:
            self.logger.warning("Could not record LOST response routing=%s wholesaler=%s", routing_id, wholesaler_id)

    def _resolve_if_exhausted(self, routing: OrderRouting, now: datetime) -> bool:
        """NO_WINNER + FAILED order when every candidate rejected or timed out."""
        responses = {
            r.wholesaler_id: r.response_type
            for r in self.session.query(VendorResponse).filter_by(routing_id=routing.id)
        }
        if not all(responses.get(wid) in NEGATIVE_RESPONSES for wid in routing.candidates or []):
            return False

        closed = compare_and_set(
            self.session,
            OrderRouting,
            [
                OrderRouting.id == routing.id,
                OrderRouting.winner_wholesaler_id.is_(None),
                OrderRouting.status == ROUTING_PENDING,
            ],
            {"status": ROUTING_NO_WINNER, "resolved_at": now},
        )
        self.session.refresh(routing)
        if not closed:
            return False

        order = self.state_machine.load_locked(routing.order_id)
        if OrderStatus(order.status) not in TERMINAL_STATES:
            self.state_machine.transition_locked(
                order,
                OrderStatus.FAILED,
                actor="SYSTEM",
                reason=f"No wholesaler accepted routing {routing.id}",
                now=now,
            )
        self.notifier.queue(
            retailer_recipient(order.retailer_id),
            f"No wholesaler could take order #{order.id}.",
            order_id=order.id,
        )
        self.logger.warning("Routing %s resolved with no winner; order %s failed", routing.id, order.id)
        return True

    def reject_vendor(self, routing_id: int, wholesaler_id: int, *, reason: str | None = None, now: datetime | None = None) -> dict:
        def _op():
            current = now or utcnow()
            routing = self.get_routing(routing_id, lock=True)
            self._check_candidate(routing, wholesaler_id)

            prior = self._response(routing.id, wholesaler_id)
            if prior is not None and prior.response_type != RESPONSE_REJECT:
                raise LateResponseError(
                    "Wholesaler already responded",
                    details={"routing_id": routing.id, "wholesaler_id": wholesaler_id, "response": prior.response_type},
                )
            if prior is None:
                self._record(routing.id, wholesaler_id, RESPONSE_REJECT, reason=reason)

            no_winner = False
            if routing.status == ROUTING_PENDING:
                no_winner = self._resolve_if_exhausted(routing, current)
            return {"routing": routing.to_dict(), "no_winner": no_winner}

        return self._tx(_op)

    def timeout(self, routing_id: int, *, now: datetime | None = None) -> dict:
        """Mark every candidate without a response TIMEOUT and resolve the routing if exhausted."""
        def _op():
            current = now or utcnow()
            routing = self.get_routing(routing_id, lock=True)
            if routing.status != ROUTING_PENDING:
                return {"routing": routing.to_dict(), "timed_out": [], "no_winner": routing.status == ROUTING_NO_WINNER}

            timed_out = []
            for wid in routing.candidates or []:
                if self._response(routing.id, wid) is None:
                    self._record(routing.id, wid, RESPONSE_TIMEOUT, reason="No response before timeout")
                    timed_out.append(wid)
            no_winner = self._resolve_if_exhausted(routing, current)
            return {"routing": routing.to_dict(), "timed_out": timed_out, "no_winner": no_winner}

        return self._tx(_op)

    def get_status(self, routing_id: int) -> dict:
        routing = self.get_routing(routing_id)
        responses = (
            self.session.query(VendorResponse)
            .filter_by(routing_id=routing.id)
            .order_by(VendorResponse.id)
            .all()
        )
        counts = Counter(r.response_type for r in responses)
        responded = {r.wholesaler_id for r in responses}
        return {
            **routing.to_dict(),
            "counts": {
                "candidates": len(routing.candidates or []),
                "accepted": counts.get(RESPONSE_ACCEPT, 0),
                "rejected": counts.get(RESPONSE_REJECT, 0),
                "timed_out": counts.get(RESPONSE_TIMEOUT, 0),
                "lost": counts.get(RESPONSE_LOST, 0),
                "pending": len([w for w in routing.candidates or [] if w not in responded]),
            },
            "responses": [r.to_dict() for r in responses],
        }

    def expired_routings(self, now: datetime) -> list[int]:
        rows = (
            self.session.query(OrderRouting.id)
            .filter(OrderRouting.status == ROUTING_PENDING, OrderRouting.expires_at <= now)
            .order_by(OrderRouting.id)
            .all()
        )
        return [row[0] for row in rows]
