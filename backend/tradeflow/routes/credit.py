# Overview: Flask API routes for credit accounts and the ledger.

from flask import Blueprint, g, jsonify, request

from ..decorators import get_services, handle_domain_errors, require_actor
from ..errors import ValidationError
from ..time_utils import parse_iso_datetime
from ..validation import get_bool, get_cents, get_int, get_str, json_body

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- as_of filtering is inclusive: created_at <= as_of.
"""

credit_bp = Blueprint("credit", __name__, url_prefix="/api/credit")


def _as_of():
    try:
        return parse_iso_datetime(request.args.get("as_of"))
    except ValueError:
        raise ValidationError("as_of must be an ISO-8601 datetime") from None


@credit_bp.get("/<int:retailer_id>/<int:wholesaler_id>")
@require_actor
@handle_domain_errors
def get_account_route(retailer_id: int, wholesaler_id: int):
    return jsonify({"account": get_services().credit.account_summary(retailer_id, wholesaler_id)})


@credit_bp.put("/<int:retailer_id>/<int:wholesaler_id>")
@require_actor
@handle_domain_errors
def upsert_account_route(retailer_id: int, wholesaler_id: int):
    """Body: {credit_limit_cents, terms_days?, is_active?}"""
    data = json_body()
    account = get_services().credit.upsert_account(
        retailer_id,
        wholesaler_id,
        credit_limit_cents=get_cents(data, "credit_limit_cents", allow_zero=True),
        terms_days=get_int(data, "terms_days", required=False, minimum=0, maximum=365),
        is_active=get_bool(data, "is_active") if "is_active" in data else None,
    )
    return jsonify({"account": account.to_dict()})


@credit_bp.get("/<int:retailer_id>/<int:wholesaler_id>/balance")
@require_actor
@handle_domain_errors
def balance_route(retailer_id: int, wholesaler_id: int):
    as_of = _as_of()
    balance = get_services().ledger.calculate_balance(retailer_id, wholesaler_id, as_of=as_of)
    return jsonify({
        "retailer_id": retailer_id,
        "wholesaler_id": wholesaler_id,
        "balance_cents": balance,
        "as_of": request.args.get("as_of"),
    })


@credit_bp.post("/<int:retailer_id>/<int:wholesaler_id>/check")
@require_actor
@handle_domain_errors
def check_route(retailer_id: int, wholesaler_id: int):
    data = json_body()
    decision = get_services().credit.check_credit_limit(
        retailer_id, wholesaler_id, get_cents(data, "amount_cents", allow_zero=True)
    )
    return jsonify({"decision": decision.to_dict()})


@credit_bp.get("/<int:retailer_id>/<int:wholesaler_id>/entries")
@require_actor
@handle_domain_errors
def list_entries_route(retailer_id: int, wholesaler_id: int):
    """Entries in replay order with the running balance after each."""
    services = get_services()
    rows = services.ledger.replay(retailer_id, wholesaler_id)
    return jsonify({
        "entries": rows,
        "audit": services.ledger.audit_pair(retailer_id, wholesaler_id),
    })


@credit_bp.post("/<int:retailer_id>/<int:wholesaler_id>/entries")
@require_actor
@handle_domain_errors
def create_entry_route(retailer_id: int, wholesaler_id: int):
    """
    Append a manual ledger entry.

    Body: {entry_type: DEBIT|CREDIT|ADJUSTMENT|REVERSAL, amount_cents?,
           reverses_entry_id?, order_id?, due_date?, note?}
    """
    data = json_body()
    entry_type = (get_str(data, "entry_type", required=True, max_length=16) or "").upper()
    try:
        due_date = parse_iso_datetime(data.get("due_date"))
    except ValueError:
        raise ValidationError("due_date must be an ISO-8601 datetime") from None

    entry = get_services().credit.create_ledger_entry(
        retailer_id,
        wholesaler_id,
        entry_type,
        get_int(data, "amount_cents", required=False),
        order_id=get_int(data, "order_id", required=False, minimum=1),
        reverses_entry_id=get_int(data, "reverses_entry_id", required=False, minimum=1),
        due_date=due_date,
        actor=g.actor,
        note=get_str(data, "note"),
    )
    return jsonify({"entry": entry.to_dict()}), 201


@credit_bp.post("/<int:retailer_id>/<int:wholesaler_id>/payments")
@require_actor
@handle_domain_errors
def record_payment_route(retailer_id: int, wholesaler_id: int):
    """Body: {amount_cents, mode: CASH|UPI|BANK_TRANSFER|CHEQUE, reference?}"""
    data = json_body()
    entry = get_services().credit.record_payment(
        retailer_id,
        wholesaler_id,
        get_cents(data, "amount_cents"),
        mode=(get_str(data, "mode") or "CASH").upper(),
        reference=get_str(data, "reference"),
        actor=g.actor,
    )
    return jsonify({"entry": entry.to_dict()}), 201


@credit_bp.post("/<int:retailer_id>/<int:wholesaler_id>/block")
@require_actor
@handle_domain_errors
def block_route(retailer_id: int, wholesaler_id: int):
    data = json_body()
    account = get_services().credit.block_account(
        retailer_id, wholesaler_id, get_str(data, "reason", required=True)
    )
    return jsonify({"account": account.to_dict()})


@credit_bp.post("/<int:retailer_id>/<int:wholesaler_id>/unblock")
@require_actor
@handle_domain_errors
def unblock_route(retailer_id: int, wholesaler_id: int):
    account = get_services().credit.unblock_account(retailer_id, wholesaler_id)
    return jsonify({"account": account.to_dict()})
