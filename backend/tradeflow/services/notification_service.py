# Overview: Notification outbox: queue inside business transactions, dispatch after commit.

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import NotificationError, ValidationError
from ..models import NotificationOutbox
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set


STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


def retailer_recipient(retailer_id: int) -> str:
    return f"retailer:{retailer_id}"


def wholesaler_recipient(wholesaler_id: int) -> str:
    return f"wholesaler:{wholesaler_id}"


class MessagingGateway(Protocol):
    def send(self, recipient_id: str, text: str) -> None:
        ...


class LoggingGateway:
    """Writes outbound messages to the application log."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def send(self, recipient_id: str, text: str) -> None:
        self.logger.info("Message to %s: %s", recipient_id, text)


class DisabledGateway:
    def send(self, recipient_id: str, text: str) -> None:
        raise NotificationError("Messaging gateway is disabled", details={"recipient_id": recipient_id})


def build_gateway(name: str, logger: logging.Logger) -> MessagingGateway:
    name = (name or "log").lower()
    if name == "log":
        return LoggingGateway(logger)
    if name == "disabled":
        return DisabledGateway()
    raise ValueError(f"Unknown MESSAGING_GATEWAY '{name}'")


class NotificationService:
    def __init__(
        self,
        session: Session,
        gateway: MessagingGateway,
        *,
        logger: logging.Logger | None = None,
        max_attempts: int = 5,
    ):
        self.session = session
        self.gateway = gateway
        self.logger = logger or logging.getLogger(__name__)
        self.max_attempts = max_attempts
        # Orders with rows queued since the last post-commit dispatch
        self._touched_orders: set[int] = set()

    def queue(self, recipient_id: str, message: str, *, order_id: int | None = None) -> NotificationOutbox:
        """Add a message to the outbox. No commit; it rides on the caller's unit of work."""
        if not recipient_id or not message:
            raise ValidationError("recipient_id and message are required")
        row = NotificationOutbox(
            recipient_id=recipient_id,
            message=message,
            order_id=order_id,
            status=STATUS_PENDING,
            attempts=0,
        )
        self.session.add(row)
        if order_id is not None:
            self._touched_orders.add(order_id)
        return row

    def list_for_order(self, order_id: int) -> list[NotificationOutbox]:
        return (
            self.session.query(NotificationOutbox)
            .filter_by(order_id=order_id)
            .order_by(NotificationOutbox.id)
            .all()
        )

    def _claim(self, row_id: int, attempts: int) -> bool:
        ok = compare_and_set(
            self.session,
            NotificationOutbox,
            [
                NotificationOutbox.id == row_id,
                NotificationOutbox.status == STATUS_PENDING,
                NotificationOutbox.attempts == attempts,
            ],
            {"attempts": attempts + 1},
        )
        self.session.commit()
        return ok

    def dispatch_pending(self, *, limit: int = 100, order_id: int | None = None) -> dict:
        """
        Send PENDING rows through the gateway.

        Each row is claimed (attempts + 1) and committed before the gateway is
        called, so no transaction is open during the send and a crashed
        dispatcher leaves the row for redelivery. Gateway failures are logged;
        the row goes back to PENDING, or FAILED once max_attempts is reached.
        """
        q = self.session.query(NotificationOutbox.id, NotificationOutbox.attempts).filter(
            NotificationOutbox.status == STATUS_PENDING
        )
        if order_id is not None:
            q = q.filter(NotificationOutbox.order_id == order_id)
        pending = q.order_by(NotificationOutbox.id).limit(limit).all()
        self.session.rollback()

        summary = {"sent": 0, "failed": 0, "retry": 0, "skipped": 0}
        for row_id, attempts in pending:
            if not self._claim(row_id, attempts):
                summary["skipped"] += 1
                continue

            row = self.session.get(NotificationOutbox, row_id)
            try:
                self.gateway.send(row.recipient_id, row.message)
            except Exception as exc:
                # Delivery is best-effort; business state is already committed
                self.logger.warning(
                    "Notification %s to %s failed (attempt %s): %s",
                    row_id, row.recipient_id, attempts + 1, exc,
                )
                final = attempts + 1 >= self.max_attempts
                row.status = STATUS_FAILED if final else STATUS_PENDING
                row.last_error = str(exc)[:255]
                summary["failed" if final else "retry"] += 1
            else:
                row.status = STATUS_SENT
                row.sent_at = utcnow()
                row.last_error = None
                summary["sent"] += 1
            self.session.commit()

        return summary

    def dispatch_after_commit(self) -> dict | None:
        """
        Post-commit hook for request paths.

        Only PENDING rows of the orders this unit queued for are sent; other
        orders' backlog and rows without an order wait for
        `flask sweeps dispatch-notifications`.
        An outbox hiccup never fails the caller.
        """
        order_ids = sorted(self._touched_orders)
        self._touched_orders.clear()
        summary = {"sent": 0, "failed": 0, "retry": 0, "skipped": 0}
        try:
            for order_id in order_ids:
                for key, count in self.dispatch_pending(order_id=order_id).items():
                    summary[key] += count
        except SQLAlchemyError:
            self.session.rollback()
            self.logger.exception("Notification dispatch deferred to the next sweep")
            return None
        return summary
