from __future__ import annotations

from ..extensions import db
from tradeflow.time_utils import to_utc_z, utcnow


class NotificationOutbox(db.Model):
    """
    Outbound message queued inside a business transaction.

    WHY: a message is written in the same commit as the change it describes
    and sent only after that commit. A gateway failure marks the row FAILED
    (or leaves it PENDING for redelivery) and never touches business state.

    STATUS: PENDING -> SENT | FAILED
    """
    __tablename__ = "notification_outbox"
    __table_args__ = (
        db.Index("ix_notification_outbox_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # "retailer:<id>" | "wholesaler:<id>"
    recipient_id = db.Column(db.String(64), nullable=False)
    message = db.Column(db.Text, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "message": self.message,
            "order_id": self.order_id,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at),
        }
