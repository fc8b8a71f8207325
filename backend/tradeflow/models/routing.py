from __future__ import annotations

from ..extensions import db
from tradeflow.time_utils import to_utc_z, utcnow


class OrderRouting(db.Model):
    """
    Broadcast of one order to a set of candidate wholesalers.

    INVARIANT: winner_wholesaler_id moves from NULL to a single value exactly
    once, through the conditional update in routing_service.accept_vendor, and
    is never written again.

    STATUS:
    - PENDING_RESPONSES: broadcast sent, no winner yet
    - VENDOR_ACCEPTED: winner locked in
    - NO_WINNER: every candidate rejected or timed out
    """
    __tablename__ = "order_routings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # JSON list of wholesaler ids, highest ranked first
    candidates = db.Column(db.JSON, nullable=False, default=list)

    winner_wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=True)
    status = db.Column(db.String(24), nullable=False, default="PENDING_RESPONSES", index=True)

    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    resolved_at = db.Column(db.DateTime, nullable=True)

    responses = db.relationship(
        "VendorResponse",
        backref="routing",
        lazy=True,
        order_by="VendorResponse.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "candidates": list(self.candidates or []),
            "winner_wholesaler_id": self.winner_wholesaler_id,
            "status": self.status,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at),
        }


class VendorResponse(db.Model):
    """
    One row per (routing, wholesaler).

    response_type:
    - ACCEPT: won the routing
    - REJECT: vendor declined
    - TIMEOUT: no reply inside the routing window
    - LOST: tried to accept after another vendor won
    """
    __tablename__ = "vendor_responses"
    __table_args__ = (
        db.UniqueConstraint("routing_id", "wholesaler_id", name="uq_vendor_responses_routing_vendor"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    routing_id = db.Column(db.Integer, db.ForeignKey("order_routings.id"), nullable=False, index=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=False)

    response_type = db.Column(db.String(16), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "routing_id": self.routing_id,
            "wholesaler_id": self.wholesaler_id,
            "response_type": self.response_type,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }


class VendorOffer(db.Model):
    """
    Competitive bid on an open order.

    At most one row per (order, wholesaler); a re-submission updates the row.
    """
    __tablename__ = "vendor_offers"
    __table_args__ = (
        db.UniqueConstraint("order_id", "wholesaler_id", name="uq_vendor_offers_order_vendor"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=False)

    price_quote_cents = db.Column(db.Integer, nullable=False)
    eta_hours = db.Column(db.Float, nullable=False)
    stock_confirmed = db.Column(db.Boolean, nullable=False, default=False)

    score = db.Column(db.Float, nullable=True)

    # PENDING | ACCEPTED | REJECTED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    wholesaler = db.relationship("Wholesaler")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "wholesaler_id": self.wholesaler_id,
            "price_quote_cents": self.price_quote_cents,
            "eta_hours": self.eta_hours,
            "stock_confirmed": self.stock_confirmed,
            "score": self.score,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
