from datetime import timedelta

import pytest

from tradeflow.errors import LedgerError, NotFoundError, ValidationError
from tradeflow.models import LedgerEntry, Retailer
from tradeflow.services.ledger_service import signed_effect
from tradeflow.time_utils import utcnow


@pytest.fixture
def pair(seed):
    retailer = seed.retailer()
    wholesaler = seed.wholesaler()
    seed.account(retailer, wholesaler, 100_000)
    return retailer.id, wholesaler.id


def test_signed_effect():
    assert signed_effect("DEBIT", 500) == 500
    assert signed_effect("CREDIT", 500) == -500
    assert signed_effect("ADJUSTMENT", -200) == -200
    assert signed_effect("REVERSAL", -500) == -500


def test_balance_is_sum_of_signed_entries(services, pair):
    r, w = pair
    credit = services.credit
    credit.create_ledger_entry(r, w, "DEBIT", 1000)
    credit.create_ledger_entry(r, w, "DEBIT", 500)
    credit.create_ledger_entry(r, w, "CREDIT", 300)
    credit.create_ledger_entry(r, w, "ADJUSTMENT", -50)

    assert services.ledger.calculate_balance(r, w) == 1150


def test_empty_pair_has_zero_balance(services, pair):
    assert services.ledger.calculate_balance(*pair) == 0
    assert services.ledger.replay(*pair) == []


def test_replay_matches_calculated_balance(services, pair):
    r, w = pair
    credit = services.credit
    debit = credit.create_ledger_entry(r, w, "DEBIT", 2500)
    credit.record_payment(r, w, 1000, mode="UPI")
    credit.create_ledger_entry(r, w, "REVERSAL", reverses_entry_id=debit.id)
    credit.create_ledger_entry(r, w, "ADJUSTMENT", 75)

    rows = services.ledger.replay(r, w)
    assert [row["balance_after_cents"] for row in rows] == [2500, 1500, -1000, -925]
    audit = services.ledger.audit_pair(r, w)
    assert audit["consistent"] is True
    assert audit["computed_balance_cents"] == -925
    assert audit["entry_count"] == 4


def test_reversal_negates_original_and_cannot_repeat(services, pair, db_session):
    r, w = pair
    entry = services.credit.create_ledger_entry(r, w, "DEBIT", 800)
    reversal = services.credit.create_ledger_entry(r, w, "REVERSAL", reverses_entry_id=entry.id)

    assert reversal.amount_cents == -800
    assert reversal.reverses_entry_id == entry.id
    assert services.ledger.calculate_balance(r, w) == 0

    with pytest.raises(LedgerError):
        services.credit.create_ledger_entry(r, w, "REVERSAL", reverses_entry_id=entry.id)
    with pytest.raises(LedgerError):
        services.credit.create_ledger_entry(r, w, "REVERSAL", reverses_entry_id=reversal.id)
    assert db_session.query(LedgerEntry).count() == 2


def test_reversal_amount_must_match(services, pair, db_session):
    r, w = pair
    entry = services.credit.create_ledger_entry(r, w, "DEBIT", 800)
    with pytest.raises(ValidationError):
        services.credit.create_ledger_entry(r, w, "REVERSAL", -700, reverses_entry_id=entry.id)
    assert db_session.query(LedgerEntry).count() == 1


def test_reversal_of_other_pair_entry_is_not_found(services, seed, pair, db_session):
    r, w = pair
    other = seed.wholesaler()
    seed.account(db_session.get(Retailer, r), other, 1000)
    entry = services.credit.create_ledger_entry(r, w, "DEBIT", 100)
    with pytest.raises(NotFoundError):
        services.credit.create_ledger_entry(r, other.id, "REVERSAL", reverses_entry_id=entry.id)


@pytest.mark.parametrize("entry_type,amount", [
    ("DEBIT", 0),
    ("DEBIT", -5),
    ("CREDIT", 0),
    ("ADJUSTMENT", 0),
    ("REFUND", 100),
])
def test_invalid_entries_are_rejected(services, pair, db_session, entry_type, amount):
    with pytest.raises(ValidationError):
        services.credit.create_ledger_entry(*pair, entry_type, amount)
    assert db_session.query(LedgerEntry).count() == 0


def test_each_append_advances_ledger_sequence(services, pair):
    r, w = pair
    services.credit.create_ledger_entry(r, w, "DEBIT", 100)
    services.credit.record_payment(r, w, 50)
    account = services.credit.get_account(r, w)
    assert account.ledger_sequence == 2


def test_balance_as_of_excludes_later_entries(services, pair, db_session):
    r, w = pair
    first = services.credit.create_ledger_entry(r, w, "DEBIT", 400)
    cutoff = first.created_at
    later = services.credit.create_ledger_entry(r, w, "DEBIT", 600)
    later.created_at = cutoff + timedelta(seconds=5)
    db_session.commit()

    assert services.ledger.calculate_balance(r, w, as_of=cutoff) == 400
    assert services.ledger.calculate_balance(r, w) == 1000


def test_overdue_counts_only_past_due_debits_net_of_payments(services, pair):
    r, w = pair
    now = utcnow()
    services.credit.create_ledger_entry(r, w, "DEBIT", 1000, due_date=now - timedelta(days=2))
    services.credit.create_ledger_entry(r, w, "DEBIT", 700, due_date=now + timedelta(days=10))
    assert services.credit.get_overdue(r, w, now) == 1000

    services.credit.record_payment(r, w, 400)
    assert services.credit.get_overdue(r, w, now) == 600

    services.credit.record_payment(r, w, 900)
    assert services.credit.get_overdue(r, w, now) == 0
