# Overview: Order lifecycle orchestrator with an explicit transition table.

"""
Tradeflow Order Lifecycle (authoritative)

States:
    CREATED -> CREDIT_APPROVED -> STOCK_RESERVED -> WHOLESALER_ACCEPTED
            -> OUT_FOR_DELIVERY -> DELIVERED
    every non-terminal state -> CANCELLED | FAILED
    DELIVERED -> RETURNED

Rules:
- TRANSITIONS is the only source of allowed edges. Each edge names the side
  effect that runs before the status is written.
- Status is written with a conditional UPDATE on (id, status, version). A lost
  compare-and-set raises ConcurrentTransitionError and nothing is kept.
- Side effect, status write, OrderTransition row and queued notifications
  commit together or not at all. A failing side effect leaves the order at its
  last good state; held resources are only released through cancel/fail.
- Terminal orders never change, except DELIVERED -> RETURNED.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.orm import Session

from ..errors import (
    ConcurrentTransitionError,
    DeliveryConfirmationError,
    InvalidTransitionError,
    MissingWholesalerError,
    NoWinnerError,
    NotFoundError,
    OrderNotFoundError,
    TerminalStateError,
    ValidationError,
    VendorNotEligibleError,
)
from ..models import (
    Order,
    OrderItem,
    OrderRouting,
    OrderTransition,
    Product,
    Retailer,
    VendorOffer,
    Wholesaler,
    WholesalerProduct,
)
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set, lock_for_update, run_in_transaction
from .credit_service import CreditService
from .notification_service import NotificationService, retailer_recipient, wholesaler_recipient
from .stock_service import StockService


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    CREDIT_APPROVED = "CREDIT_APPROVED"
    STOCK_RESERVED = "STOCK_RESERVED"
    WHOLESALER_ACCEPTED = "WHOLESALER_ACCEPTED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    RETURNED = "RETURNED"


TERMINAL_STATES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
    OrderStatus.RETURNED,
})

OPEN_FOR_BIDS = frozenset({
    OrderStatus.CREATED,
    OrderStatus.CREDIT_APPROVED,
    OrderStatus.STOCK_RESERVED,
})

PAYMENT_MODES = {"CREDIT", "CASH", "UPI", "BANK_TRANSFER"}

# (from, to) -> side effect method name
TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], str] = {
    (OrderStatus.CREATED, OrderStatus.CREDIT_APPROVED): "_on_credit_approval",
    (OrderStatus.CREDIT_APPROVED, OrderStatus.STOCK_RESERVED): "_on_stock_reservation",
    (OrderStatus.STOCK_RESERVED, OrderStatus.WHOLESALER_ACCEPTED): "_on_wholesaler_acceptance",
    (OrderStatus.WHOLESALER_ACCEPTED, OrderStatus.OUT_FOR_DELIVERY): "_on_dispatch",
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): "_on_delivery",
    (OrderStatus.DELIVERED, OrderStatus.RETURNED): "_on_return",
}
for _state in OrderStatus:
    if _state not in TERMINAL_STATES:
        TRANSITIONS[(_state, OrderStatus.CANCELLED)] = "_on_release"
        TRANSITIONS[(_state, OrderStatus.FAILED)] = "_on_release"
del _state


def allowed_targets(state) -> list[str]:
    state = OrderStatus(state)
    return [to.value for (frm, to) in TRANSITIONS if frm == state]


def is_valid_walk(states: list[str]) -> bool:
    """True when consecutive states are all edges of TRANSITIONS, starting at CREATED."""
    if not states or states[0] != OrderStatus.CREATED.value:
        return False
    for frm, to in zip(states, states[1:]):
        if (OrderStatus(frm), OrderStatus(to)) not in TRANSITIONS:
            return False
    return True


@dataclass
class TransitionResult:
    order: Order
    transition: OrderTransition

    def to_dict(self) -> dict:
        return {"order": self.order.to_dict(), "transition": self.transition.to_dict()}


def _coerce_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown order state '{value}'",
            details={"allowed": [s.value for s in OrderStatus]},
        ) from None


class OrderStateMachine:
    def __init__(
        self,
        session: Session,
        credit: CreditService,
        stock: StockService,
        notifier: NotificationService,
        *,
        logger: logging.Logger | None = None,
        bid_window_minutes: int = 30,
        retry_attempts: int = 3,
    ):
        self.session = session
        self.credit = credit
        self.stock = stock
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self.bid_window_minutes = bid_window_minutes
        self.retry_attempts = retry_attempts

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get_order(self, order_id: int) -> Order:
        order = self.session.get(Order, order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", details={"order_id": order_id})
        return order

    def load_locked(self, order_id: int) -> Order:
        order = (
            lock_for_update(self.session.query(Order).filter_by(id=order_id))
            .populate_existing()
            .first()
        )
        if order is None:
            raise OrderNotFoundError("Order not found", details={"order_id": order_id})
        return order

    def _active_wholesaler(self, wholesaler_id: int) -> Wholesaler:
        wholesaler = self.session.get(Wholesaler, wholesaler_id)
        if wholesaler is None:
            raise NotFoundError("Wholesaler not found", details={"wholesaler_id": wholesaler_id})
        if not wholesaler.is_active:
            raise VendorNotEligibleError("Wholesaler is not active", details={"wholesaler_id": wholesaler_id})
        return wholesaler

    def _run(self, func, *, retry_conflicts: bool = True):
        result = run_in_transaction(
            self.session,
            func,
            attempts=self.retry_attempts,
            retry_on=(ConcurrentTransitionError,) if retry_conflicts else (),
        )
        self.notifier.dispatch_after_commit()
        return result

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_order(
        self,
        retailer_id: int,
        items: list[dict],
        *,
        payment_mode: str = "CREDIT",
        wholesaler_id: int | None = None,
        expires_at: datetime | None = None,
        actor: str = "SYSTEM",
        now: datetime | None = None,
    ) -> TransitionResult:
        """
        Create an order in CREATED.

        items: [{"product_id", "quantity", "unit_price_cents"}]. The unit price
        may be omitted when the wholesaler lists the product with a price.
        """
        if payment_mode not in PAYMENT_MODES:
            raise ValidationError(
                f"Invalid payment_mode '{payment_mode}'. Must be one of: {', '.join(sorted(PAYMENT_MODES))}"
            )
        if not items:
            raise ValidationError("Order must contain at least one item")

        def _op():
            current = now or utcnow()
            retailer = self.session.get(Retailer, retailer_id)
            if retailer is None or not retailer.is_active:
                raise NotFoundError("Retailer not found or inactive", details={"retailer_id": retailer_id})
            if wholesaler_id is not None:
                self._active_wholesaler(wholesaler_id)

            lines = []
            for raw in items:
                product_id = raw.get("product_id")
                quantity = raw.get("quantity")
                unit_price = raw.get("unit_price_cents")
                if self.session.get(Product, product_id) is None:
                    raise NotFoundError("Product not found", details={"product_id": product_id})
                if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                    raise ValidationError(
                        "quantity must be a positive integer",
                        details={"product_id": product_id, "quantity": quantity},
                    )
                if unit_price is None and wholesaler_id is not None:
                    listing = (
                        self.session.query(WholesalerProduct)
                        .filter_by(wholesaler_id=wholesaler_id, product_id=product_id)
                        .first()
                    )
                    unit_price = listing.price_cents if listing is not None else None
                if isinstance(unit_price, bool) or not isinstance(unit_price, int) or unit_price < 0:
                    raise ValidationError(
                        "unit_price_cents must be a non-negative integer",
                        details={"product_id": product_id, "unit_price_cents": unit_price},
                    )
                lines.append(OrderItem(
                    product_id=product_id,
                    quantity=quantity,
                    unit_price_cents=unit_price,
                    line_total_cents=quantity * unit_price,
                ))

            order = Order(
                retailer_id=retailer_id,
                wholesaler_id=wholesaler_id,
                status=OrderStatus.CREATED.value,
                payment_mode=payment_mode,
                total_cents=sum(line.line_total_cents for line in lines),
                expires_at=expires_at or current + timedelta(minutes=self.bid_window_minutes),
                delivery_token=f"{secrets.randbelow(10 ** 6):06d}",
                version=1,
                created_at=current,
                updated_at=current,
            )
            order.items = lines
            self.session.add(order)
            self.session.flush()

            transition = OrderTransition(
                order_id=order.id,
                from_state=None,
                to_state=OrderStatus.CREATED.value,
                actor=actor,
                created_at=current,
            )
            self.session.add(transition)
            self.session.flush()
            return TransitionResult(order, transition)

        result = self._run(_op)
        self.logger.info("Order %s created retailer=%s total=%s", result.order.id, retailer_id, result.order.total_cents)
        return result

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    def transition_locked(
        self,
        order: Order,
        target,
        context: dict | None = None,
        *,
        actor: str = "SYSTEM",
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Validate, run the side effect and CAS the status. Caller owns the unit of work."""
        context = context or {}
        now = now or utcnow()
        target = _coerce_status(target)
        current = OrderStatus(order.status)

        handler_name = TRANSITIONS.get((current, target))
        if handler_name is None:
            details = {
                "order_id": order.id,
                "current": current.value,
                "attempted": target.value,
                "allowed": allowed_targets(current),
            }
            if current in TERMINAL_STATES:
                raise TerminalStateError(f"Order is in terminal state {current.value}", details=details)
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {target.value}", details=details
            )

        seen_version = order.version
        getattr(self, handler_name)(order, target, context, actor, now)

        ok = compare_and_set(
            self.session,
            Order,
            [Order.id == order.id, Order.status == current.value, Order.version == seen_version],
            {
                "status": target.value,
                "version": seen_version + 1,
                "updated_at": now,
                "status_reason": reason,
            },
        )
        if not ok:
            raise ConcurrentTransitionError(
                "Order changed concurrently",
                details={"order_id": order.id, "expected_status": current.value, "expected_version": seen_version},
            )
        self.session.refresh(order)

        transition = OrderTransition(
            order_id=order.id,
            from_state=current.value,
            to_state=target.value,
            actor=actor,
            reason=reason,
            created_at=now,
        )
        self.session.add(transition)
        self.session.flush()
        self.logger.info("Order %s %s -> %s by %s", order.id, current.value, target.value, actor)
        return TransitionResult(order, transition)

    def transition(
        self,
        order_id: int,
        target,
        context: dict | None = None,
        *,
        actor: str = "SYSTEM",
        reason: str | None = None,
    ) -> TransitionResult:
        return self._run(
            lambda: self.transition_locked(
                self.load_locked(order_id), target, context, actor=actor, reason=reason
            )
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _assign_wholesaler(self, order: Order, wholesaler_id: int) -> None:
        self._active_wholesaler(wholesaler_id)
        order.wholesaler_id = wholesaler_id
        self.session.flush()

    def rehome_locked(self, order: Order, wholesaler_id: int, total_cents: int, *, actor: str) -> None:
        """
        Move the order's held resources to another wholesaler and/or total.

        Holds placed in the current state are released and placed again
        against the new wholesaler; a shortfall there aborts the whole unit.
        """
        status = OrderStatus(order.status)
        holds_credit = status in (OrderStatus.CREDIT_APPROVED, OrderStatus.STOCK_RESERVED)
        holds_stock = status == OrderStatus.STOCK_RESERVED
        previous = order.wholesaler_id

        if holds_stock:
            self.stock.release_stock_locked(order.id, note="Order rerouted")
        if holds_credit:
            self.credit.release_hold_locked(order, actor=actor, note=f"Order {order.id} rerouted")

        self._assign_wholesaler(order, wholesaler_id)
        order.total_cents = total_cents
        self.session.flush()

        if holds_credit:
            self.credit.hold_credit_locked(order, actor=actor)
        if holds_stock:
            self.stock.reserve_stock_locked(order.id, wholesaler_id, order.items)
        if previous is not None and previous != wholesaler_id:
            self.notifier.queue(
                wholesaler_recipient(previous),
                f"Order #{order.id} has been assigned to another wholesaler.",
                order_id=order.id,
            )
        self.logger.info("Order %s rehomed %s -> %s", order.id, previous, wholesaler_id)

    def _on_credit_approval(self, order, target, context, actor, now):
        wholesaler_id = context.get("wholesaler_id") or order.wholesaler_id
        if wholesaler_id is None:
            raise MissingWholesalerError(
                "Order has no wholesaler to approve credit against", details={"order_id": order.id}
            )
        if wholesaler_id != order.wholesaler_id:
            self._assign_wholesaler(order, wholesaler_id)
        else:
            self._active_wholesaler(wholesaler_id)
        if context.get("agreed_total_cents") is not None:
            order.total_cents = context["agreed_total_cents"]
            self.session.flush()
        self.credit.hold_credit_locked(order, actor=actor)

    def _on_stock_reservation(self, order, target, context, actor, now):
        wholesaler_id = context.get("wholesaler_id") or order.wholesaler_id
        if wholesaler_id != order.wholesaler_id:
            self.rehome_locked(order, wholesaler_id, order.total_cents, actor=actor)
        self.stock.reserve_stock_locked(order.id, order.wholesaler_id, order.items)

    def _open_routing(self, order_id: int) -> OrderRouting | None:
        return (
            self.session.query(OrderRouting)
            .filter_by(order_id=order_id, status="PENDING_RESPONSES")
            .first()
        )

    def _on_wholesaler_acceptance(self, order, target, context, actor, now):
        wholesaler_id = context.get("wholesaler_id")
        if wholesaler_id is None:
            latest = (
                self.session.query(OrderRouting)
                .filter_by(order_id=order.id)
                .order_by(OrderRouting.id.desc())
                .first()
            )
            if latest is not None and latest.status == "NO_WINNER":
                raise NoWinnerError("No wholesaler accepted the order", details={"order_id": order.id, "routing_id": latest.id})
            wholesaler_id = order.wholesaler_id
        if wholesaler_id is None:
            raise MissingWholesalerError("Order has no wholesaler to accept it", details={"order_id": order.id})

        routing = self._open_routing(order.id)
        if routing is not None and context.get("routing_id") != routing.id:
            raise InvalidTransitionError(
                "Order is being routed; acceptance must go through the routing",
                details={"order_id": order.id, "routing_id": routing.id},
            )

        total = context.get("agreed_total_cents")
        total = order.total_cents if total is None else total
        if wholesaler_id != order.wholesaler_id or total != order.total_cents:
            self.rehome_locked(order, wholesaler_id, total, actor=actor)
        else:
            self._active_wholesaler(wholesaler_id)

        compare_and_set(
            self.session,
            Wholesaler,
            [Wholesaler.id == wholesaler_id],
            {"total_orders": Wholesaler.total_orders + 1},
        )
        self.notifier.queue(
            retailer_recipient(order.retailer_id),
            f"Order #{order.id} accepted by wholesaler {wholesaler_id}.",
            order_id=order.id,
        )

    def _on_dispatch(self, order, target, context, actor, now):
        self.notifier.queue(
            retailer_recipient(order.retailer_id),
            f"Order #{order.id} is out for delivery. Share code {order.delivery_token} with the driver.",
            order_id=order.id,
        )

    def _on_delivery(self, order, target, context, actor, now):
        token = context.get("delivery_token")
        if order.delivery_token and str(token or "") != order.delivery_token:
            raise DeliveryConfirmationError("Delivery token does not match", details={"order_id": order.id})

        quantities = context.get("delivered_quantities") or {}
        quantities = {int(k): v for k, v in quantities.items()}
        self.stock.deduct_stock_locked(order.id, quantities)

        # Quantities are per product; lines sharing a product draw from one pool in line order
        remaining = dict(quantities)
        ordered_value = 0
        delivered_value = 0
        for item in order.items:
            if item.product_id in remaining:
                delivered = min(item.quantity, remaining[item.product_id])
                remaining[item.product_id] -= delivered
            else:
                delivered = item.quantity
            item.delivered_quantity = delivered
            ordered_value += item.line_total_cents
            delivered_value += delivered * item.unit_price_cents

        if ordered_value and delivered_value != ordered_value:
            amount = (order.total_cents * delivered_value + ordered_value // 2) // ordered_value
        else:
            amount = order.total_cents

        order.delivered_at = now
        self.session.flush()
        self.credit.settle_order_locked(order, amount, actor=actor, now=now)

        compare_and_set(
            self.session,
            Wholesaler,
            [Wholesaler.id == order.wholesaler_id],
            {"completed_orders": Wholesaler.completed_orders + 1},
        )
        self.notifier.queue(
            retailer_recipient(order.retailer_id), f"Order #{order.id} delivered.", order_id=order.id
        )
        self.notifier.queue(
            wholesaler_recipient(order.wholesaler_id),
            f"Order #{order.id} confirmed delivered. Amount due {amount / 100:.2f}.",
            order_id=order.id,
        )

    def _on_release(self, order, target, context, actor, now):
        self.stock.release_stock_locked(order.id, note=f"Order {target.value.lower()}")
        self.credit.release_hold_locked(order, actor=actor)

        compare_and_set(
            self.session,
            VendorOffer,
            [VendorOffer.order_id == order.id, VendorOffer.status == "PENDING"],
            {"status": "REJECTED", "updated_at": now},
        )
        routing = self._open_routing(order.id)
        if routing is not None:
            compare_and_set(
                self.session,
                OrderRouting,
                [
                    OrderRouting.id == routing.id,
                    OrderRouting.status == "PENDING_RESPONSES",
                    OrderRouting.winner_wholesaler_id.is_(None),
                ],
                {"status": "NO_WINNER", "resolved_at": now},
            )

        word = "cancelled" if target == OrderStatus.CANCELLED else "failed"
        self.notifier.queue(
            retailer_recipient(order.retailer_id), f"Order #{order.id} {word}.", order_id=order.id
        )
        if order.wholesaler_id is not None:
            self.notifier.queue(
                wholesaler_recipient(order.wholesaler_id), f"Order #{order.id} {word}.", order_id=order.id
            )

    def _on_return(self, order, target, context, actor, now):
        self.stock.restock_returned_locked(order.id)
        self.credit.reverse_settlement_locked(order, actor=actor)
        self.notifier.queue(
            wholesaler_recipient(order.wholesaler_id), f"Order #{order.id} returned.", order_id=order.id
        )

    # ------------------------------------------------------------------
    # Convenience operations
    # ------------------------------------------------------------------

    def approve_credit(self, order_id: int, *, wholesaler_id: int | None = None, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.CREDIT_APPROVED, {"wholesaler_id": wholesaler_id}, actor=actor)

    def reserve_stock(self, order_id: int, *, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.STOCK_RESERVED, actor=actor)

    def accept_at_wholesaler(
        self,
        order_id: int,
        *,
        wholesaler_id: int | None = None,
        agreed_total_cents: int | None = None,
        actor: str = "SYSTEM",
    ) -> TransitionResult:
        context = {"wholesaler_id": wholesaler_id, "agreed_total_cents": agreed_total_cents}
        return self.transition(order_id, OrderStatus.WHOLESALER_ACCEPTED, context, actor=actor)

    def start_delivery(self, order_id: int, *, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.OUT_FOR_DELIVERY, actor=actor)

    def complete_delivery(
        self,
        order_id: int,
        *,
        delivery_token: str | None,
        delivered_quantities: dict | None = None,
        actor: str = "SYSTEM",
    ) -> TransitionResult:
        context = {"delivery_token": delivery_token, "delivered_quantities": delivered_quantities}
        return self.transition(order_id, OrderStatus.DELIVERED, context, actor=actor)

    def fail(self, order_id: int, *, reason: str, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.FAILED, actor=actor, reason=reason)

    def cancel(self, order_id: int, *, reason: str | None = None, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.CANCELLED, actor=actor, reason=reason)

    def mark_returned(self, order_id: int, *, reason: str | None = None, actor: str = "SYSTEM") -> TransitionResult:
        return self.transition(order_id, OrderStatus.RETURNED, actor=actor, reason=reason)

    def get_history(self, order_id: int) -> list[OrderTransition]:
        self.get_order(order_id)
        return (
            self.session.query(OrderTransition)
            .filter_by(order_id=order_id)
            .order_by(OrderTransition.created_at.asc(), OrderTransition.id.asc())
            .all()
        )

    def allowed_transitions(self, order_id: int) -> list[str]:
        return allowed_targets(self.get_order(order_id).status)
