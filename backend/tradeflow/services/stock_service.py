# Overview: Per-wholesaler stock positions, reservations, receipts, counts and diagnostics.

"""
Tradeflow Stock Invariants (authoritative)

Model:
- WholesalerProduct.stock is physical on hand; reserved_stock is the sum of
  ACTIVE StockReservation quantities; available = stock - reserved_stock.
- Counters change only through conditional UPDATEs:
    reserve:  reserved += q            WHERE stock - reserved >= q
    release:  reserved -= q            WHERE reserved >= q
    deduct:   stock -= f, reserved -= q WHERE reserved >= q AND stock >= f
  so neither counter can go negative and available never goes below zero.

Reservations:
- A multi-item reservation is all-or-nothing. Any shortfall raises
  InsufficientStockError and the caller's unit of work rolls back every line.
- Quantities for the same product within one request are merged.

Audit:
- Every counter change appends a StockMovement in the same transaction.
- Reconciliation since the last physical count (COUNT movement):
    stock + deducted == last_counted + received + returned
  detect_negative_stock() reports any position where this, or the counter
  bounds, do not hold.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import InsufficientStockError, NotFoundError, PersistenceError, ValidationError
from ..models import StockMovement, StockReservation, WholesalerProduct
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set, lock_for_update, run_in_transaction


RESERVATION_ACTIVE = "ACTIVE"
RESERVATION_RELEASED = "RELEASED"
RESERVATION_FULFILLED = "FULFILLED"


def merge_items(items) -> "OrderedDict[int, int]":
    """
    Collapse [{"product_id", "quantity"}, ...] into {product_id: total}.

    Sorted by product id so concurrent reservations touch rows in one order.
    """
    merged: dict[int, int] = {}
    for item in items:
        product_id = item.get("product_id") if isinstance(item, dict) else item.product_id
        quantity = item.get("quantity") if isinstance(item, dict) else item.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(
                "quantity must be a positive integer",
                details={"product_id": product_id, "quantity": quantity},
            )
        merged[product_id] = merged.get(product_id, 0) + quantity
    return OrderedDict(sorted(merged.items()))


class StockService:
    def __init__(self, session: Session, *, logger: logging.Logger | None = None, retry_attempts: int = 3):
        self.session = session
        self.logger = logger or logging.getLogger(__name__)
        self.retry_attempts = retry_attempts

    def _tx(self, func_):
        return run_in_transaction(self.session, func_, attempts=self.retry_attempts)

    def _position(self, wholesaler_id: int, product_id: int, *, lock: bool = False) -> WholesalerProduct | None:
        q = self.session.query(WholesalerProduct).filter_by(
            wholesaler_id=wholesaler_id, product_id=product_id
        )
        if lock:
            q = lock_for_update(q)
        return q.populate_existing().first()

    def _require_position(self, wholesaler_id: int, product_id: int, *, lock: bool = False) -> WholesalerProduct:
        pos = self._position(wholesaler_id, product_id, lock=lock)
        if pos is None:
            raise NotFoundError(
                "Product not stocked by wholesaler",
                details={"wholesaler_id": wholesaler_id, "product_id": product_id},
            )
        return pos

    def _movement(self, pos_id: int, movement_type: str, quantity: int, *, order_id=None, note=None) -> StockMovement:
        movement = StockMovement(
            wholesaler_product_id=pos_id,
            movement_type=movement_type,
            quantity=quantity,
            order_id=order_id,
            note=note,
        )
        self.session.add(movement)
        return movement

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def check_availability(self, wholesaler_id: int, items) -> dict:
        lines = []
        for product_id, requested in merge_items(items).items():
            pos = self._position(wholesaler_id, product_id)
            available = pos.available_stock if pos is not None else 0
            lines.append({
                "product_id": product_id,
                "requested": requested,
                "available": available,
                "shortfall": max(0, requested - available),
            })
        return {
            "wholesaler_id": wholesaler_id,
            "available": all(line["shortfall"] == 0 for line in lines),
            "items": lines,
        }

    def get_status(self, wholesaler_id: int, product_id: int) -> dict:
        pos = self._require_position(wholesaler_id, product_id)
        data = pos.to_dict()
        data["active_reserved"] = self._active_reserved(pos.id)
        data["reconciliation"] = self.reconcile(pos)
        return data

    def get_audit_trail(self, wholesaler_id: int, product_id: int, *, limit: int = 200) -> list[dict]:
        pos = self._require_position(wholesaler_id, product_id)
        rows = (
            self.session.query(StockMovement)
            .filter_by(wholesaler_product_id=pos.id)
            .order_by(StockMovement.id.desc())
            .limit(limit)
            .all()
        )
        return [row.to_dict() for row in rows]

    def reservations_for_order(self, order_id: int, status: str | None = None) -> list[StockReservation]:
        q = self.session.query(StockReservation).filter_by(order_id=order_id)
        if status is not None:
            q = q.filter_by(status=status)
        return q.order_by(StockReservation.id).all()

    def _active_reserved(self, pos_id: int) -> int:
        total = (
            self.session.query(func.coalesce(func.sum(StockReservation.quantity), 0))
            .filter(
                StockReservation.wholesaler_product_id == pos_id,
                StockReservation.status == RESERVATION_ACTIVE,
            )
            .scalar()
        )
        return int(total or 0)

    def reconcile(self, pos: WholesalerProduct) -> dict:
        last_count_id = (
            self.session.query(func.max(StockMovement.id))
            .filter(
                StockMovement.wholesaler_product_id == pos.id,
                StockMovement.movement_type == "COUNT",
            )
            .scalar()
        ) or 0

        sums = dict(
            self.session.query(StockMovement.movement_type, func.sum(StockMovement.quantity))
            .filter(
                StockMovement.wholesaler_product_id == pos.id,
                StockMovement.id > last_count_id,
            )
            .group_by(StockMovement.movement_type)
            .all()
        )
        received = int(sums.get("RECEIVE") or 0)
        deducted = int(sums.get("DEDUCT") or 0)
        returned = int(sums.get("RETURN") or 0)

        expected = pos.last_counted_stock + received + returned - deducted
        return {
            "baseline": pos.last_counted_stock,
            "received_since_count": received,
            "deducted_since_count": deducted,
            "returned_since_count": returned,
            "expected_stock": expected,
            "balanced": expected == pos.stock,
        }

    def detect_negative_stock(self) -> list[dict]:
        findings = []
        for pos in self.session.query(WholesalerProduct).order_by(WholesalerProduct.id).all():
            problems = []
            if pos.stock < 0:
                problems.append("NEGATIVE_STOCK")
            if pos.reserved_stock < 0:
                problems.append("NEGATIVE_RESERVED")
            if pos.reserved_stock > pos.stock:
                problems.append("RESERVED_EXCEEDS_STOCK")
            if pos.reserved_stock != self._active_reserved(pos.id):
                problems.append("RESERVED_MISMATCH")
            recon = self.reconcile(pos)
            if not recon["balanced"]:
                problems.append("RECONCILIATION_FAILED")
            if problems:
                findings.append({**pos.to_dict(), "problems": problems, "reconciliation": recon})
        if findings:
            self.logger.warning("Stock diagnostics found %s inconsistent positions", len(findings))
        return findings

    # ------------------------------------------------------------------
    # Reservation lifecycle (caller holds the unit of work)
    # ------------------------------------------------------------------

    def reserve_stock_locked(self, order_id: int, wholesaler_id: int, items) -> list[StockReservation]:
        merged = merge_items(items)
        shortfalls = []
        reserved_positions = []

        for product_id, quantity in merged.items():
            pos = self._position(wholesaler_id, product_id, lock=True)
            if pos is None:
                shortfalls.append({
                    "product_id": product_id, "requested": quantity, "available": 0, "shortfall": quantity,
                })
                continue
            ok = compare_and_set(
                self.session,
                WholesalerProduct,
                [
                    WholesalerProduct.id == pos.id,
                    WholesalerProduct.stock - WholesalerProduct.reserved_stock >= quantity,
                ],
                {"reserved_stock": WholesalerProduct.reserved_stock + quantity},
            )
            self.session.refresh(pos)
            if not ok:
                shortfalls.append({
                    "product_id": product_id,
                    "requested": quantity,
                    "available": pos.available_stock,
                    "shortfall": quantity - pos.available_stock,
                })
                continue
            reserved_positions.append((pos, quantity))

        if shortfalls:
            raise InsufficientStockError(
                "Insufficient stock to reserve order",
                details={"order_id": order_id, "wholesaler_id": wholesaler_id, "items": shortfalls},
            )

        reservations = []
        for pos, quantity in reserved_positions:
            reservation = StockReservation(
                wholesaler_product_id=pos.id,
                order_id=order_id,
                quantity=quantity,
                status=RESERVATION_ACTIVE,
            )
            self.session.add(reservation)
            self._movement(pos.id, "RESERVE", quantity, order_id=order_id)
            reservations.append(reservation)
        self.session.flush()
        return reservations

    def _close_reservation(self, reservation: StockReservation, status: str, fulfilled: int | None, now) -> bool:
        ok = compare_and_set(
            self.session,
            StockReservation,
            [StockReservation.id == reservation.id, StockReservation.status == RESERVATION_ACTIVE],
            {"status": status, "fulfilled_quantity": fulfilled, "closed_at": now},
        )
        self.session.refresh(reservation)
        return ok

    def release_stock_locked(self, order_id: int, *, note: str | None = None) -> list[StockReservation]:
        now = utcnow()
        released = []
        for reservation in self.reservations_for_order(order_id, RESERVATION_ACTIVE):
            if not self._close_reservation(reservation, RESERVATION_RELEASED, None, now):
                continue
            ok = compare_and_set(
                self.session,
                WholesalerProduct,
                [
                    WholesalerProduct.id == reservation.wholesaler_product_id,
                    WholesalerProduct.reserved_stock >= reservation.quantity,
                ],
                {"reserved_stock": WholesalerProduct.reserved_stock - reservation.quantity},
            )
            if not ok:
                raise PersistenceError(
                    "Reserved stock counter underflow",
                    details={"reservation_id": reservation.id, "order_id": order_id},
                )
            self._movement(
                reservation.wholesaler_product_id, "RELEASE", reservation.quantity, order_id=order_id, note=note,
            )
            released.append(reservation)
        self.session.flush()
        return released

    def deduct_stock_locked(self, order_id: int, quantities: dict | None = None) -> list[StockReservation]:
        """
        Convert ACTIVE reservations into physical decrements.

        `quantities` maps product_id -> delivered quantity for partial
        fulfillment; products not listed are fulfilled in full.
        """
        now = utcnow()
        quantities = {int(k): v for k, v in (quantities or {}).items()}
        fulfilled_rows = []

        for reservation in self.reservations_for_order(order_id, RESERVATION_ACTIVE):
            product_id = reservation.wholesaler_product.product_id
            fulfilled = quantities.get(product_id, reservation.quantity)
            if isinstance(fulfilled, bool) or not isinstance(fulfilled, int) or not 0 <= fulfilled <= reservation.quantity:
                raise ValidationError(
                    "Delivered quantity must be between 0 and the reserved quantity",
                    details={"product_id": product_id, "reserved": reservation.quantity, "delivered": fulfilled},
                )

            if not self._close_reservation(reservation, RESERVATION_FULFILLED, fulfilled, now):
                continue
            ok = compare_and_set(
                self.session,
                WholesalerProduct,
                [
                    WholesalerProduct.id == reservation.wholesaler_product_id,
                    WholesalerProduct.reserved_stock >= reservation.quantity,
                    WholesalerProduct.stock >= fulfilled,
                ],
                {
                    "stock": WholesalerProduct.stock - fulfilled,
                    "reserved_stock": WholesalerProduct.reserved_stock - reservation.quantity,
                },
            )
            if not ok:
                raise PersistenceError(
                    "Stock counters out of bounds on deduction",
                    details={"reservation_id": reservation.id, "order_id": order_id},
                )
            if fulfilled:
                self._movement(reservation.wholesaler_product_id, "DEDUCT", fulfilled, order_id=order_id)
            remainder = reservation.quantity - fulfilled
            if remainder:
                self._movement(
                    reservation.wholesaler_product_id, "RELEASE", remainder, order_id=order_id,
                    note="Undelivered remainder",
                )
            fulfilled_rows.append(reservation)

        self.session.flush()
        return fulfilled_rows

    def restock_returned_locked(self, order_id: int) -> list[StockReservation]:
        restocked = []
        for reservation in self.reservations_for_order(order_id, RESERVATION_FULFILLED):
            quantity = reservation.fulfilled_quantity or 0
            if quantity <= 0:
                continue
            compare_and_set(
                self.session,
                WholesalerProduct,
                [WholesalerProduct.id == reservation.wholesaler_product_id],
                {"stock": WholesalerProduct.stock + quantity},
            )
            self._movement(reservation.wholesaler_product_id, "RETURN", quantity, order_id=order_id)
            restocked.append(reservation)
        self.session.flush()
        return restocked

    # ------------------------------------------------------------------
    # Public units of work
    # ------------------------------------------------------------------

    def reserve_stock(self, order_id: int, wholesaler_id: int, items) -> list[StockReservation]:
        return self._tx(lambda: self.reserve_stock_locked(order_id, wholesaler_id, items))

    def release_stock(self, order_id: int) -> list[StockReservation]:
        return self._tx(lambda: self.release_stock_locked(order_id))

    def deduct_stock(self, order_id: int, quantities: dict | None = None) -> list[StockReservation]:
        return self._tx(lambda: self.deduct_stock_locked(order_id, quantities))

    def receive_stock(
        self,
        wholesaler_id: int,
        product_id: int,
        quantity: int,
        *,
        price_cents: int | None = None,
        note: str | None = None,
    ) -> WholesalerProduct:
        """Add physical stock. Creates the position on first receipt."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer")
        if price_cents is not None and (not isinstance(price_cents, int) or price_cents < 0):
            raise ValidationError("price_cents must be a non-negative integer")

        def _op():
            pos = self._position(wholesaler_id, product_id, lock=True)
            if pos is None:
                pos = WholesalerProduct(
                    wholesaler_id=wholesaler_id,
                    product_id=product_id,
                    stock=0,
                    reserved_stock=0,
                    last_counted_stock=0,
                    last_counted_at=utcnow(),
                )
                self.session.add(pos)
                self.session.flush()
            compare_and_set(
                self.session,
                WholesalerProduct,
                [WholesalerProduct.id == pos.id],
                {"stock": WholesalerProduct.stock + quantity},
            )
            if price_cents is not None:
                pos.price_cents = price_cents
            self._movement(pos.id, "RECEIVE", quantity, note=note)
            self.session.flush()
            self.session.refresh(pos)
            return pos

        return self._tx(_op)

    def record_physical_count(
        self,
        wholesaler_id: int,
        product_id: int,
        counted: int,
        *,
        note: str | None = None,
    ) -> dict:
        """
        Set on-hand to the counted figure and reset the reconciliation baseline.

        The count may not drop below what is currently reserved.
        """
        if isinstance(counted, bool) or not isinstance(counted, int) or counted < 0:
            raise ValidationError("counted must be a non-negative integer")

        def _op():
            pos = self._require_position(wholesaler_id, product_id, lock=True)
            previous = pos.stock
            now = utcnow()
            ok = compare_and_set(
                self.session,
                WholesalerProduct,
                [WholesalerProduct.id == pos.id, WholesalerProduct.reserved_stock <= counted],
                {"stock": counted, "last_counted_stock": counted, "last_counted_at": now},
            )
            if not ok:
                self.session.refresh(pos)
                raise ValidationError(
                    "Counted quantity is below reserved stock",
                    details={"counted": counted, "reserved_stock": pos.reserved_stock},
                )
            self._movement(pos.id, "COUNT", counted, note=note)
            self.session.flush()
            self.session.refresh(pos)
            return {"position": pos.to_dict(), "previous_stock": previous, "variance": counted - previous}

        result = self._tx(_op)
        if result["variance"]:
            self.logger.info(
                "Physical count variance wholesaler=%s product=%s variance=%s",
                wholesaler_id, product_id, result["variance"],
            )
        return result
