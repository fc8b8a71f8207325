# Overview: Flask API routes for competitive bidding on open orders.

from flask import Blueprint, g, jsonify

from ..decorators import get_services, handle_domain_errors, require_actor
from ..errors import ValidationError
from ..validation import get_bool, get_cents, get_int, json_body


bidding_bp = Blueprint("bidding", __name__, url_prefix="/api/orders")


@bidding_bp.post("/<int:order_id>/offers")
@require_actor
@handle_domain_errors
def submit_offer_route(order_id: int):
    """
    Submit or update a wholesaler's offer.

    Body: {wholesaler_id, price_quote_cents, eta ("2H", "1 day", 4), stock_confirmed?}
    """
    data = json_body()
    eta = data.get("eta", data.get("eta_hours"))
    if eta is None:
        raise ValidationError("eta is required")

    offer = get_services().bidding.ingest_offer(
        order_id,
        get_int(data, "wholesaler_id", minimum=1),
        get_cents(data, "price_quote_cents"),
        eta,
        stock_confirmed=get_bool(data, "stock_confirmed"),
    )
    return jsonify({"offer": offer.to_dict()}), 201


@bidding_bp.get("/<int:order_id>/offers")
@require_actor
@handle_domain_errors
def list_offers_route(order_id: int):
    return jsonify({"order_id": order_id, "offers": get_services().bidding.get_offers_with_scores(order_id)})


@bidding_bp.post("/<int:order_id>/offers/auto-select")
@require_actor
@handle_domain_errors
def auto_select_route(order_id: int):
    result = get_services().bidding.auto_select_winner(order_id, actor=g.actor)
    return jsonify(result.to_dict())


@bidding_bp.post("/<int:order_id>/offers/<int:offer_id>/assign")
@require_actor
@handle_domain_errors
def assign_offer_route(order_id: int, offer_id: int):
    result = get_services().bidding.assign_winner(order_id, offer_id, actor=g.actor)
    return jsonify(result.to_dict())
