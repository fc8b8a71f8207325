from __future__ import annotations

from ..extensions import db
from tradeflow.time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    Retailer order driven through the fulfillment lifecycle.

    WHY: status is only ever written by the order state machine through a
    conditional update on (id, status, version). Nothing else may assign it.

    LIFECYCLE (see services/order_state_machine.py):
        CREATED -> CREDIT_APPROVED -> STOCK_RESERVED -> WHOLESALER_ACCEPTED
                -> OUT_FOR_DELIVERY -> DELIVERED [-> RETURNED]
        any non-terminal -> CANCELLED | FAILED
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    retailer_id = db.Column(db.Integer, db.ForeignKey("retailers.id"), nullable=False, index=True)

    # Nullable until credit approval / routing assigns a fulfiller
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=True, index=True)

    status = db.Column(db.String(32), nullable=False, default="CREATED", index=True)

    # CREDIT | CASH | UPI | BANK_TRANSFER
    payment_mode = db.Column(db.String(16), nullable=False, default="CREDIT")

    total_cents = db.Column(db.Integer, nullable=False, default=0)

    expires_at = db.Column(db.DateTime, nullable=True)
    delivery_token = db.Column(db.String(16), nullable=True)

    # Bumped by every conditional write against this row
    version = db.Column(db.Integer, nullable=False, default=1)

    status_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    delivered_at = db.Column(db.DateTime, nullable=True)

    retailer = db.relationship("Retailer")
    wholesaler = db.relationship("Wholesaler")
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} wholesaler_id={self.wholesaler_id}>"

    def to_dict(self, include_token: bool = False) -> dict:
        data = {
            "id": self.id,
            "retailer_id": self.retailer_id,
            "wholesaler_id": self.wholesaler_id,
            "status": self.status,
            "payment_mode": self.payment_mode,
            "total_cents": self.total_cents,
            "expires_at": to_utc_z(self.expires_at),
            "version": self.version,
            "status_reason": self.status_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "delivered_at": to_utc_z(self.delivered_at),
            "items": [item.to_dict() for item in self.items],
        }
        if include_token:
            data["delivery_token"] = self.delivery_token
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    # Set on delivery; may be lower than quantity for partial fulfillment
    delivered_quantity = db.Column(db.Integer, nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "delivered_quantity": self.delivered_quantity,
        }


class OrderTransition(db.Model):
    """
    Append-only audit row, one per accepted state change.

    Never updated or deleted. The ordered list of rows for an order is the
    only source of transition history.
    """
    __tablename__ = "order_transitions"
    __table_args__ = (
        db.Index("ix_order_transitions_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)

    # None only for the creation row
    from_state = db.Column(db.String(32), nullable=True)
    to_state = db.Column(db.String(32), nullable=False)

    actor = db.Column(db.String(64), nullable=False, default="SYSTEM")
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor": self.actor,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
