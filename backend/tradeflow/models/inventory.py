from __future__ import annotations

from ..extensions import db
from tradeflow.time_utils import to_utc_z, utcnow


class WholesalerProduct(db.Model):
    """
    Stock position of one product at one wholesaler.

    stock is physical on hand; reserved_stock is held for ACTIVE reservations.
    available = stock - reserved_stock. Both counters are only changed with
    conditional UPDATE statements (see services/stock_service.py) so neither
    can be driven negative by concurrent requests.

    last_counted_stock / last_counted_at are the physical-count baseline the
    reconciliation check runs against.
    """
    __tablename__ = "wholesaler_products"
    __table_args__ = (
        db.UniqueConstraint("wholesaler_id", "product_id", name="uq_wholesaler_products_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    price_cents = db.Column(db.Integer, nullable=True)

    stock = db.Column(db.Integer, nullable=False, default=0)
    reserved_stock = db.Column(db.Integer, nullable=False, default=0)

    last_counted_stock = db.Column(db.Integer, nullable=False, default=0)
    last_counted_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    wholesaler = db.relationship("Wholesaler")
    product = db.relationship("Product")

    @property
    def available_stock(self) -> int:
        return self.stock - self.reserved_stock

    def __repr__(self) -> str:
        return (
            f"<WholesalerProduct id={self.id} wholesaler_id={self.wholesaler_id} "
            f"product_id={self.product_id} stock={self.stock} reserved={self.reserved_stock}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wholesaler_id": self.wholesaler_id,
            "product_id": self.product_id,
            "price_cents": self.price_cents,
            "stock": self.stock,
            "reserved_stock": self.reserved_stock,
            "available_stock": self.available_stock,
            "last_counted_stock": self.last_counted_stock,
            "last_counted_at": to_utc_z(self.last_counted_at),
        }


class StockReservation(db.Model):
    """
    Temporary hold on stock for one order line.

    STATUS:
    - ACTIVE: quantity counted in reserved_stock
    - RELEASED: returned to available (cancel / fail / reroute)
    - FULFILLED: converted into a physical decrement of fulfilled_quantity
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        db.Index("ix_stock_reservations_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_product_id = db.Column(
        db.Integer, db.ForeignKey("wholesaler_products.id"), nullable=False, index=True
    )
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    fulfilled_quantity = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)

    wholesaler_product = db.relationship("WholesalerProduct")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wholesaler_product_id": self.wholesaler_product_id,
            "order_id": self.order_id,
            "quantity": self.quantity,
            "fulfilled_quantity": self.fulfilled_quantity,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "closed_at": to_utc_z(self.closed_at),
        }


class StockMovement(db.Model):
    """
    Append-only audit trail of every change to a stock position.

    movement_type: RECEIVE | COUNT | RESERVE | RELEASE | DEDUCT | RETURN
    quantity is always positive; for COUNT it is the counted on-hand figure.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_position_created", "wholesaler_product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    wholesaler_product_id = db.Column(
        db.Integer, db.ForeignKey("wholesaler_products.id"), nullable=False
    )
    movement_type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wholesaler_product_id": self.wholesaler_product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "order_id": self.order_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
