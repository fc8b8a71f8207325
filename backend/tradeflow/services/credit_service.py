# Overview: Credit limits, holds, settlement, payments and account administration.

"""
Tradeflow Credit Rules (authoritative)

- Exposure for a pair comes from ledger_service.calculate_balance; it is never
  cached on the account.
- A credit hold is a DEBIT tagged purpose=HOLD against the order. It is
  released by appending its REVERSAL, or replaced on delivery by the final
  DEBIT (purpose=ORDER) carrying the due date.
- Every append for a pair first bumps CreditAccount.ledger_sequence with a
  conditional UPDATE. The limit check and the append therefore commit against
  the same sequence value or not at all.
- Inactive or blocked accounts reject every new hold regardless of headroom.
  Payments and reversals are always accepted.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..errors import InsufficientCreditError, LedgerError, NotFoundError, ValidationError
from ..models import CreditAccount, Order
from tradeflow.time_utils import utcnow
from .concurrency import compare_and_set, lock_for_update, run_in_transaction
from .ledger_service import (
    ENTRY_CREDIT,
    ENTRY_DEBIT,
    ENTRY_REVERSAL,
    PURPOSE_HOLD,
    PURPOSE_ORDER,
    PURPOSE_PAYMENT,
    LedgerStore,
)


PAYMENT_MODES = {"CASH", "UPI", "BANK_TRANSFER", "CHEQUE"}

REASON_NO_ACCOUNT = "ACCOUNT_NOT_FOUND"
REASON_BLOCKED = "ACCOUNT_BLOCKED"
REASON_LIMIT = "LIMIT_EXCEEDED"


@dataclass(frozen=True)
class CreditDecision:
    approved: bool
    retailer_id: int
    wholesaler_id: int
    requested_cents: int
    balance_cents: int
    limit_cents: int
    available_cents: int
    shortfall_cents: int
    reason: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class CreditService:
    def __init__(
        self,
        session: Session,
        ledger: LedgerStore,
        *,
        logger: logging.Logger | None = None,
        default_terms_days: int = 30,
        retry_attempts: int = 3,
    ):
        self.session = session
        self.ledger = ledger
        self.logger = logger or logging.getLogger(__name__)
        self.default_terms_days = default_terms_days
        self.retry_attempts = retry_attempts

    def _tx(self, func):
        return run_in_transaction(self.session, func, attempts=self.retry_attempts)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_account(self, retailer_id: int, wholesaler_id: int, *, lock: bool = False) -> CreditAccount | None:
        q = self.session.query(CreditAccount).filter_by(
            retailer_id=retailer_id, wholesaler_id=wholesaler_id
        )
        if lock:
            q = lock_for_update(q).populate_existing()
        return q.first()

    def _require_account(self, retailer_id: int, wholesaler_id: int, *, lock: bool = False) -> CreditAccount:
        account = self.get_account(retailer_id, wholesaler_id, lock=lock)
        if account is None:
            raise NotFoundError(
                "Credit account not found",
                details={"retailer_id": retailer_id, "wholesaler_id": wholesaler_id},
            )
        return account

    def get_balance(self, retailer_id: int, wholesaler_id: int) -> int:
        return self.ledger.calculate_balance(retailer_id, wholesaler_id)

    def account_summary(self, retailer_id: int, wholesaler_id: int, now: datetime | None = None) -> dict:
        account = self._require_account(retailer_id, wholesaler_id)
        now = now or utcnow()
        balance = self.get_balance(retailer_id, wholesaler_id)
        data = account.to_dict()
        data.update({
            "balance_cents": balance,
            "available_cents": max(0, account.credit_limit_cents - balance),
            "overdue_cents": self.ledger.overdue_amount(retailer_id, wholesaler_id, now),
        })
        return data

    def _decide(self, retailer_id: int, wholesaler_id: int, account: CreditAccount | None, amount_cents: int) -> CreditDecision:
        balance = self.get_balance(retailer_id, wholesaler_id)
        limit = account.credit_limit_cents if account is not None else 0
        available = max(0, limit - balance)
        shortfall = max(0, balance + amount_cents - limit)

        reason = None
        if account is None:
            reason = REASON_NO_ACCOUNT
        elif not account.is_active or account.block_reason:
            reason = REASON_BLOCKED
        elif balance + amount_cents > limit:
            reason = REASON_LIMIT

        return CreditDecision(
            approved=reason is None,
            retailer_id=retailer_id,
            wholesaler_id=wholesaler_id,
            requested_cents=amount_cents,
            balance_cents=balance,
            limit_cents=limit,
            available_cents=available,
            shortfall_cents=shortfall if reason == REASON_LIMIT else 0,
            reason=reason,
        )

    def check_credit_limit(self, retailer_id: int, wholesaler_id: int, amount_cents: int) -> CreditDecision:
        """Read-only decision; nothing is reserved."""
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 0:
            raise ValidationError("amount_cents must be a non-negative integer")
        account = self.get_account(retailer_id, wholesaler_id)
        return self._decide(retailer_id, wholesaler_id, account, amount_cents)

    def get_overdue(self, retailer_id: int, wholesaler_id: int, now: datetime | None = None) -> int:
        return self.ledger.overdue_amount(retailer_id, wholesaler_id, now or utcnow())

    # ------------------------------------------------------------------
    # Appends (caller holds the unit of work)
    # ------------------------------------------------------------------

    def _claim_sequence(self, account: CreditAccount) -> None:
        seen = account.ledger_sequence
        ok = compare_and_set(
            self.session,
            CreditAccount,
            [CreditAccount.id == account.id, CreditAccount.ledger_sequence == seen],
            {"ledger_sequence": seen + 1},
        )
        if not ok:
            # Another append for this pair committed first; the unit is retried
            raise StaleDataError(f"ledger_sequence moved for credit account {account.id}")
        self.session.expire(account, ["ledger_sequence"])

    def _append_locked(self, account: CreditAccount, **fields):
        self._claim_sequence(account)
        return self.ledger.append(
            retailer_id=account.retailer_id,
            wholesaler_id=account.wholesaler_id,
            **fields,
        )

    def _reverse_locked(self, account: CreditAccount, entry, *, actor: str, note: str | None = None):
        self._claim_sequence(account)
        return self.ledger.reverse(entry, created_by=actor, note=note)

    def active_hold(self, order_id: int):
        return self.ledger.find_open_entry(order_id, PURPOSE_HOLD)

    def hold_credit_locked(self, order: Order, *, actor: str = "SYSTEM"):
        """
        Check the limit and append the hold DEBIT for `order`.

        No-op for non-credit orders. Idempotent: an existing active hold for
        the same pair and amount is returned as-is.
        """
        if order.payment_mode != "CREDIT":
            return None
        if order.wholesaler_id is None:
            raise ValidationError("Order has no wholesaler to extend credit", details={"order_id": order.id})

        existing = self.active_hold(order.id)
        if existing is not None:
            if existing.wholesaler_id == order.wholesaler_id and existing.amount_cents == order.total_cents:
                return existing
            raise LedgerError(
                "Order already holds credit; release it first",
                details={"order_id": order.id, "entry_id": existing.id},
            )

        account = self.get_account(order.retailer_id, order.wholesaler_id, lock=True)
        decision = self._decide(order.retailer_id, order.wholesaler_id, account, order.total_cents)
        if not decision.approved:
            raise InsufficientCreditError(
                "Credit limit check failed",
                details={"order_id": order.id, **decision.to_dict()},
            )

        entry = self._append_locked(
            account,
            entry_type=ENTRY_DEBIT,
            amount_cents=order.total_cents,
            order_id=order.id,
            purpose=PURPOSE_HOLD,
            created_by=actor,
            note=f"Credit hold for order {order.id}",
        )
        self.logger.info(
            "Credit hold placed order=%s retailer=%s wholesaler=%s amount=%s",
            order.id, order.retailer_id, order.wholesaler_id, order.total_cents,
        )
        return entry

    def release_hold_locked(self, order: Order, *, actor: str = "SYSTEM", note: str | None = None):
        """Append the REVERSAL of the order's active hold. None when there is no hold."""
        hold = self.active_hold(order.id)
        if hold is None:
            return None
        account = self._require_account(hold.retailer_id, hold.wholesaler_id, lock=True)
        reversal = self._reverse_locked(
            account, hold, actor=actor, note=note or f"Credit hold released for order {order.id}"
        )
        self.logger.info("Credit hold released order=%s entry=%s", order.id, hold.id)
        return reversal

    def settle_order_locked(self, order: Order, amount_cents: int, *, actor: str = "SYSTEM", now: datetime | None = None):
        """
        Replace the hold with the final DEBIT for what was delivered.

        Returns the final DEBIT entry, or None for non-credit orders.
        """
        if order.payment_mode != "CREDIT":
            return None
        now = now or utcnow()
        self.release_hold_locked(order, actor=actor, note=f"Hold settled on delivery of order {order.id}")
        if amount_cents <= 0:
            return None

        account = self._require_account(order.retailer_id, order.wholesaler_id, lock=True)
        return self._append_locked(
            account,
            entry_type=ENTRY_DEBIT,
            amount_cents=amount_cents,
            order_id=order.id,
            purpose=PURPOSE_ORDER,
            due_date=now + timedelta(days=account.terms_days),
            created_by=actor,
            note=f"Order {order.id} delivered",
        )

    def reverse_settlement_locked(self, order: Order, *, actor: str = "SYSTEM"):
        """Reverse the delivery DEBIT of a returned order."""
        debit = self.ledger.find_open_entry(order.id, PURPOSE_ORDER)
        if debit is None:
            return None
        account = self._require_account(debit.retailer_id, debit.wholesaler_id, lock=True)
        return self._reverse_locked(account, debit, actor=actor, note=f"Order {order.id} returned")

    # ------------------------------------------------------------------
    # Public units of work
    # ------------------------------------------------------------------

    def hold_credit(self, order_id: int, *, actor: str = "SYSTEM"):
        def _op():
            order = self.session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found", details={"order_id": order_id})
            return self.hold_credit_locked(order, actor=actor)

        return self._tx(_op)

    def release_credit_hold(self, order_id: int, *, actor: str = "SYSTEM"):
        def _op():
            order = self.session.get(Order, order_id)
            if order is None:
                raise NotFoundError("Order not found", details={"order_id": order_id})
            return self.release_hold_locked(order, actor=actor)

        return self._tx(_op)

    def create_ledger_entry(
        self,
        retailer_id: int,
        wholesaler_id: int,
        entry_type: str,
        amount_cents: int | None = None,
        *,
        order_id: int | None = None,
        reverses_entry_id: int | None = None,
        due_date: datetime | None = None,
        actor: str = "SYSTEM",
        note: str | None = None,
    ):
        """
        Append a manual entry. REVERSAL derives its amount from the entry it
        reverses; any supplied amount must match it.
        """
        def _op():
            account = self._require_account(retailer_id, wholesaler_id, lock=True)

            if entry_type == ENTRY_REVERSAL:
                if reverses_entry_id is None:
                    raise ValidationError("reverses_entry_id is required for REVERSAL")
                original = self.ledger.get(reverses_entry_id)
                if (
                    original is None
                    or original.retailer_id != retailer_id
                    or original.wholesaler_id != wholesaler_id
                ):
                    raise NotFoundError(
                        "Entry to reverse not found for this account",
                        details={"reverses_entry_id": reverses_entry_id},
                    )
                entry = self._reverse_locked(account, original, actor=actor, note=note)
                if amount_cents is not None and amount_cents != entry.amount_cents:
                    raise ValidationError(
                        "REVERSAL amount must negate the reversed entry",
                        details={"expected": entry.amount_cents, "given": amount_cents},
                    )
                return entry

            if reverses_entry_id is not None:
                raise ValidationError("reverses_entry_id is only valid for REVERSAL")
            if amount_cents is None:
                raise ValidationError("amount_cents is required")

            return self._append_locked(
                account,
                entry_type=entry_type,
                amount_cents=amount_cents,
                order_id=order_id,
                due_date=due_date,
                created_by=actor,
                note=note,
            )

        return self._tx(_op)

    def record_payment(
        self,
        retailer_id: int,
        wholesaler_id: int,
        amount_cents: int,
        *,
        mode: str = "CASH",
        reference: str | None = None,
        actor: str = "SYSTEM",
    ):
        if mode not in PAYMENT_MODES:
            raise ValidationError(
                f"Invalid payment mode '{mode}'. Must be one of: {', '.join(sorted(PAYMENT_MODES))}"
            )

        def _op():
            account = self._require_account(retailer_id, wholesaler_id, lock=True)
            note = f"Payment via {mode}"
            if reference:
                note = f"{note} ref {reference}"
            return self._append_locked(
                account,
                entry_type=ENTRY_CREDIT,
                amount_cents=amount_cents,
                purpose=PURPOSE_PAYMENT,
                created_by=actor,
                note=note,
            )

        entry = self._tx(_op)
        self.logger.info(
            "Payment recorded retailer=%s wholesaler=%s amount=%s mode=%s",
            retailer_id, wholesaler_id, amount_cents, mode,
        )
        return entry

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def upsert_account(
        self,
        retailer_id: int,
        wholesaler_id: int,
        *,
        credit_limit_cents: int,
        terms_days: int | None = None,
        is_active: bool | None = None,
    ) -> CreditAccount:
        if isinstance(credit_limit_cents, bool) or not isinstance(credit_limit_cents, int) or credit_limit_cents < 0:
            raise ValidationError("credit_limit_cents must be a non-negative integer")
        if terms_days is not None and (not isinstance(terms_days, int) or terms_days < 0):
            raise ValidationError("terms_days must be a non-negative integer")

        def _op():
            account = self.get_account(retailer_id, wholesaler_id, lock=True)
            if account is None:
                account = CreditAccount(
                    retailer_id=retailer_id,
                    wholesaler_id=wholesaler_id,
                    terms_days=self.default_terms_days,
                )
                self.session.add(account)
            account.credit_limit_cents = credit_limit_cents
            if terms_days is not None:
                account.terms_days = terms_days
            if is_active is not None:
                account.is_active = is_active
            self.session.flush()
            return account

        return self._tx(_op)

    def block_account(self, retailer_id: int, wholesaler_id: int, reason: str) -> CreditAccount:
        if not reason:
            raise ValidationError("reason is required to block an account")

        def _op():
            account = self._require_account(retailer_id, wholesaler_id, lock=True)
            account.block_reason = reason[:255]
            self.session.flush()
            return account

        account = self._tx(_op)
        self.logger.warning(
            "Credit account blocked retailer=%s wholesaler=%s reason=%s", retailer_id, wholesaler_id, reason
        )
        return account

    def unblock_account(self, retailer_id: int, wholesaler_id: int) -> CreditAccount:
        def _op():
            account = self._require_account(retailer_id, wholesaler_id, lock=True)
            account.block_reason = None
            account.is_active = True
            self.session.flush()
            return account

        return self._tx(_op)

    def suspend_overdue_accounts(self, now: datetime | None = None) -> list[dict]:
        """Block every unblocked account that has an overdue amount. One unit per account."""
        now = now or utcnow()
        candidates = [
            (a.retailer_id, a.wholesaler_id)
            for a in self.session.query(CreditAccount)
            .filter(CreditAccount.is_active.is_(True), CreditAccount.block_reason.is_(None))
            .order_by(CreditAccount.id)
            .all()
        ]
        self.session.rollback()

        suspended = []
        for retailer_id, wholesaler_id in candidates:
            overdue = self.get_overdue(retailer_id, wholesaler_id, now)
            if overdue <= 0:
                continue
            self.block_account(retailer_id, wholesaler_id, f"Overdue balance {overdue} cents")
            suspended.append({
                "retailer_id": retailer_id,
                "wholesaler_id": wholesaler_id,
                "overdue_cents": overdue,
            })
        return suspended
