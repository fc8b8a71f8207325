# Overview: Append-only ledger store; balances are always derived by summation.

"""
Tradeflow Ledger Invariants (authoritative)

- LedgerEntry rows are append-only. Nothing in this codebase updates or
  deletes one. Corrections are REVERSAL or ADJUSTMENT rows.
- Balance (exposure) for a retailer/wholesaler pair is
      SUM(DEBIT) - SUM(CREDIT) + SUM(ADJUSTMENT) + SUM(REVERSAL)
  over signed amounts, computed on demand. It is never stored.
- Replaying a pair's entries ordered by (created_at, id) reproduces the
  computed balance exactly; audit_pair() checks this.
- This module has no limit or account logic. Appends are serialized per pair
  by credit_service, which owns the account row.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from ..errors import LedgerError, ValidationError
from ..models import LedgerEntry


ENTRY_DEBIT = "DEBIT"
ENTRY_CREDIT = "CREDIT"
ENTRY_ADJUSTMENT = "ADJUSTMENT"
ENTRY_REVERSAL = "REVERSAL"
ENTRY_TYPES = {ENTRY_DEBIT, ENTRY_CREDIT, ENTRY_ADJUSTMENT, ENTRY_REVERSAL}

PURPOSE_HOLD = "HOLD"
PURPOSE_ORDER = "ORDER"
PURPOSE_PAYMENT = "PAYMENT"


def signed_effect(entry_type: str, amount_cents: int) -> int:
    """Effect of one entry on exposure (positive = retailer owes more)."""
    if entry_type == ENTRY_CREDIT:
        return -amount_cents
    return amount_cents


def _effect_expr():
    return case(
        (LedgerEntry.entry_type == ENTRY_CREDIT, -LedgerEntry.amount_cents),
        else_=LedgerEntry.amount_cents,
    )


class LedgerStore:
    def __init__(self, session: Session):
        self.session = session

    def _pair_filter(self, retailer_id: int, wholesaler_id: int):
        return (
            LedgerEntry.retailer_id == retailer_id,
            LedgerEntry.wholesaler_id == wholesaler_id,
        )

    def calculate_balance(
        self,
        retailer_id: int,
        wholesaler_id: int,
        as_of: datetime | None = None,
    ) -> int:
        stmt = select(func.coalesce(func.sum(_effect_expr()), 0)).where(
            *self._pair_filter(retailer_id, wholesaler_id)
        )
        if as_of is not None:
            stmt = stmt.where(LedgerEntry.created_at <= as_of)
        return int(self.session.execute(stmt).scalar() or 0)

    def get(self, entry_id: int) -> LedgerEntry | None:
        return self.session.get(LedgerEntry, entry_id)

    def entries(self, retailer_id: int, wholesaler_id: int, *, limit: int | None = None) -> list[LedgerEntry]:
        q = (
            self.session.query(LedgerEntry)
            .filter(*self._pair_filter(retailer_id, wholesaler_id))
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        )
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def is_reversed(self, entry_id: int) -> bool:
        return (
            self.session.query(LedgerEntry.id)
            .filter(LedgerEntry.reverses_entry_id == entry_id)
            .first()
            is not None
        )

    def find_open_entry(self, order_id: int, purpose: str) -> LedgerEntry | None:
        """Latest DEBIT for the order with the given purpose that has not been reversed."""
        reversed_ids = select(LedgerEntry.reverses_entry_id).where(
            LedgerEntry.reverses_entry_id.isnot(None)
        )
        return (
            self.session.query(LedgerEntry)
            .filter(
                LedgerEntry.order_id == order_id,
                LedgerEntry.entry_type == ENTRY_DEBIT,
                LedgerEntry.purpose == purpose,
                LedgerEntry.id.notin_(reversed_ids),
            )
            .order_by(LedgerEntry.id.desc())
            .first()
        )

    def append(
        self,
        *,
        retailer_id: int,
        wholesaler_id: int,
        entry_type: str,
        amount_cents: int,
        order_id: int | None = None,
        reverses_entry_id: int | None = None,
        purpose: str | None = None,
        due_date: datetime | None = None,
        created_by: str = "SYSTEM",
        note: str | None = None,
    ) -> LedgerEntry:
        """
        Append one entry. No commit; the caller owns the transaction.

        - DEBIT / CREDIT amounts must be positive.
        - ADJUSTMENT must be non-zero (sign is the effect on exposure).
        - REVERSAL must reference the entry it reverses; use reverse().
        """
        if entry_type not in ENTRY_TYPES:
            raise ValidationError(
                f"Invalid entry_type '{entry_type}'. Must be one of: {', '.join(sorted(ENTRY_TYPES))}"
            )
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
            raise ValidationError("amount_cents must be an integer")
        if entry_type in (ENTRY_DEBIT, ENTRY_CREDIT) and amount_cents <= 0:
            raise ValidationError(f"{entry_type} amount must be positive")
        if entry_type == ENTRY_ADJUSTMENT and amount_cents == 0:
            raise ValidationError("ADJUSTMENT amount must be non-zero")
        if entry_type == ENTRY_REVERSAL and reverses_entry_id is None:
            raise ValidationError("REVERSAL requires reverses_entry_id")

        entry = LedgerEntry(
            retailer_id=retailer_id,
            wholesaler_id=wholesaler_id,
            entry_type=entry_type,
            amount_cents=amount_cents,
            order_id=order_id,
            reverses_entry_id=reverses_entry_id,
            purpose=purpose,
            due_date=due_date,
            created_by=created_by,
            note=note,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def reverse(self, entry: LedgerEntry, *, created_by: str = "SYSTEM", note: str | None = None) -> LedgerEntry:
        """Append the REVERSAL of `entry`. An entry can be reversed once."""
        if entry.entry_type == ENTRY_REVERSAL:
            raise LedgerError("Cannot reverse a REVERSAL entry", details={"entry_id": entry.id})
        if self.is_reversed(entry.id):
            raise LedgerError("Entry already reversed", details={"entry_id": entry.id})

        return self.append(
            retailer_id=entry.retailer_id,
            wholesaler_id=entry.wholesaler_id,
            entry_type=ENTRY_REVERSAL,
            amount_cents=-signed_effect(entry.entry_type, entry.amount_cents),
            order_id=entry.order_id,
            reverses_entry_id=entry.id,
            purpose=entry.purpose,
            created_by=created_by,
            note=note or f"Reversal of entry {entry.id}",
        )

    def replay(self, retailer_id: int, wholesaler_id: int) -> list[dict]:
        """Entries in (created_at, id) order with the running balance after each."""
        running = 0
        rows = []
        for entry in self.entries(retailer_id, wholesaler_id):
            running += signed_effect(entry.entry_type, entry.amount_cents)
            row = entry.to_dict()
            row["balance_after_cents"] = running
            rows.append(row)
        return rows

    def audit_pair(self, retailer_id: int, wholesaler_id: int) -> dict:
        replayed = self.replay(retailer_id, wholesaler_id)
        replayed_balance = replayed[-1]["balance_after_cents"] if replayed else 0
        computed = self.calculate_balance(retailer_id, wholesaler_id)
        return {
            "retailer_id": retailer_id,
            "wholesaler_id": wholesaler_id,
            "entry_count": len(replayed),
            "computed_balance_cents": computed,
            "replayed_balance_cents": replayed_balance,
            "consistent": computed == replayed_balance,
        }

    def pairs(self) -> list[tuple[int, int]]:
        rows = (
            self.session.query(LedgerEntry.retailer_id, LedgerEntry.wholesaler_id)
            .distinct()
            .order_by(LedgerEntry.retailer_id, LedgerEntry.wholesaler_id)
            .all()
        )
        return [(r, w) for r, w in rows]

    def overdue_amount(self, retailer_id: int, wholesaler_id: int, now: datetime) -> int:
        """
        Past-due exposure, paying oldest debits first.

        overdue = max(0, unreversed DEBITs due before `now`
                         - (CREDITs + negative ADJUSTMENTs))
        bounded by the current balance.
        """
        reversed_ids = select(LedgerEntry.reverses_entry_id).where(
            LedgerEntry.reverses_entry_id.isnot(None)
        )
        past_due = self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
                *self._pair_filter(retailer_id, wholesaler_id),
                LedgerEntry.entry_type == ENTRY_DEBIT,
                LedgerEntry.due_date.isnot(None),
                LedgerEntry.due_date < now,
                LedgerEntry.id.notin_(reversed_ids),
            )
        ).scalar() or 0

        paid = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (LedgerEntry.entry_type == ENTRY_CREDIT, LedgerEntry.amount_cents),
                            (
                                (LedgerEntry.entry_type == ENTRY_ADJUSTMENT) & (LedgerEntry.amount_cents < 0),
                                -LedgerEntry.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                )
            ).where(*self._pair_filter(retailer_id, wholesaler_id))
        ).scalar() or 0

        balance = self.calculate_balance(retailer_id, wholesaler_id)
        return max(0, min(int(past_due) - int(paid), balance))
