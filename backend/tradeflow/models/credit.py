from __future__ import annotations

from ..extensions import db
from tradeflow.time_utils import to_utc_z, utcnow


class CreditAccount(db.Model):
    """
    Trade credit line between one retailer and one wholesaler.

    WHY: the balance is never stored here. It is derived from LedgerEntry on
    demand. ledger_sequence is bumped with a conditional update on every
    append for the pair, which serializes concurrent appends without ever
    holding an application-level lock.
    """
    __tablename__ = "credit_accounts"
    __table_args__ = (
        db.UniqueConstraint("retailer_id", "wholesaler_id", name="uq_credit_accounts_pair"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    retailer_id = db.Column(db.Integer, db.ForeignKey("retailers.id"), nullable=False, index=True)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=False, index=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    terms_days = db.Column(db.Integer, nullable=False, default=30)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    block_reason = db.Column(db.String(255), nullable=True)

    ledger_sequence = db.Column(db.Integer, nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "retailer_id": self.retailer_id,
            "wholesaler_id": self.wholesaler_id,
            "credit_limit_cents": self.credit_limit_cents,
            "terms_days": self.terms_days,
            "is_active": self.is_active,
            "block_reason": self.block_reason,
            "ledger_sequence": self.ledger_sequence,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LedgerEntry(db.Model):
    """
    Append-only financial entry for a retailer/wholesaler pair.

    Amount sign conventions (cents):
    - DEBIT: positive, increases exposure (order delivered, credit hold)
    - CREDIT: positive, decreases exposure (payment received)
    - ADJUSTMENT: signed, +increases / -decreases exposure
    - REVERSAL: signed, the negated effect of reverses_entry_id

    Balance = SUM(DEBIT) - SUM(CREDIT) + SUM(ADJUSTMENT) + SUM(REVERSAL)

    Rows are never updated or deleted; corrections are new rows.
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_pair_created", "retailer_id", "wholesaler_id", "created_at"),
        # An entry can be reversed at most once
        db.UniqueConstraint("reverses_entry_id", name="uq_ledger_entries_reverses"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    retailer_id = db.Column(db.Integer, db.ForeignKey("retailers.id"), nullable=False)
    wholesaler_id = db.Column(db.Integer, db.ForeignKey("wholesalers.id"), nullable=False)

    entry_type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    reverses_entry_id = db.Column(db.Integer, db.ForeignKey("ledger_entries.id"), nullable=True)

    # HOLD marks the provisional debit placed at credit approval
    purpose = db.Column(db.String(16), nullable=True)

    due_date = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(64), nullable=False, default="SYSTEM")
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "retailer_id": self.retailer_id,
            "wholesaler_id": self.wholesaler_id,
            "entry_type": self.entry_type,
            "amount_cents": self.amount_cents,
            "order_id": self.order_id,
            "reverses_entry_id": self.reverses_entry_id,
            "purpose": self.purpose,
            "due_date": to_utc_z(self.due_date),
            "created_by": self.created_by,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
