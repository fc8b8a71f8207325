# Overview: Flask API routes for the order lifecycle; parses input and returns JSON responses.

from flask import Blueprint, g, jsonify

from ..decorators import get_services, handle_domain_errors, require_actor
from ..time_utils import parse_iso_datetime
from ..validation import get_int, get_str, json_body, parse_items, parse_quantity_map
from ..errors import ValidationError


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_actor
@handle_domain_errors
def create_order_route():
    """
    Create an order in CREATED.

    Body: {retailer_id, items: [{product_id, quantity, unit_price_cents}],
           payment_mode?, wholesaler_id?, expires_at?}
    """
    data = json_body()
    try:
        expires_at = parse_iso_datetime(data.get("expires_at"))
    except ValueError:
        raise ValidationError("expires_at must be an ISO-8601 datetime") from None

    result = get_services().orders.create_order(
        get_int(data, "retailer_id", minimum=1),
        parse_items(data),
        payment_mode=(get_str(data, "payment_mode") or "CREDIT").upper(),
        wholesaler_id=get_int(data, "wholesaler_id", required=False, minimum=1),
        expires_at=expires_at,
        actor=g.actor,
    )
    body = result.to_dict()
    body["order"] = result.order.to_dict(include_token=True)
    return jsonify(body), 201


@orders_bp.get("/<int:order_id>")
@require_actor
@handle_domain_errors
def get_order_route(order_id: int):
    services = get_services()
    order = services.orders.get_order(order_id)
    return jsonify({
        "order": order.to_dict(),
        "allowed_transitions": services.orders.allowed_transitions(order_id),
    })


@orders_bp.get("/<int:order_id>/history")
@require_actor
@handle_domain_errors
def order_history_route(order_id: int):
    history = get_services().orders.get_history(order_id)
    return jsonify({"order_id": order_id, "transitions": [t.to_dict() for t in history]})


@orders_bp.post("/<int:order_id>/approve-credit")
@require_actor
@handle_domain_errors
def approve_credit_route(order_id: int):
    data = json_body()
    result = get_services().orders.approve_credit(
        order_id,
        wholesaler_id=get_int(data, "wholesaler_id", required=False, minimum=1),
        actor=g.actor,
    )
    return jsonify(result.to_dict())


@orders_bp.post("/<int:order_id>/reserve-stock")
@require_actor
@handle_domain_errors
def reserve_stock_route(order_id: int):
    return jsonify(get_services().orders.reserve_stock(order_id, actor=g.actor).to_dict())


@orders_bp.post("/<int:order_id>/accept")
@require_actor
@handle_domain_errors
def accept_route(order_id: int):
    data = json_body()
    result = get_services().orders.accept_at_wholesaler(
        order_id,
        wholesaler_id=get_int(data, "wholesaler_id", required=False, minimum=1),
        agreed_total_cents=get_int(data, "agreed_total_cents", required=False, minimum=0),
        actor=g.actor,
    )
    return jsonify(result.to_dict())


@orders_bp.post("/<int:order_id>/start-delivery")
@require_actor
@handle_domain_errors
def start_delivery_route(order_id: int):
    return jsonify(get_services().orders.start_delivery(order_id, actor=g.actor).to_dict())


@orders_bp.post("/<int:order_id>/complete-delivery")
@require_actor
@handle_domain_errors
def complete_delivery_route(order_id: int):
    """Body: {delivery_token, delivered_quantities?: {"<product_id>": qty}}"""
    data = json_body()
    result = get_services().orders.complete_delivery(
        order_id,
        delivery_token=get_str(data, "delivery_token", required=True, max_length=16),
        delivered_quantities=parse_quantity_map(data.get("delivered_quantities")),
        actor=g.actor,
    )
    return jsonify(result.to_dict())


@orders_bp.post("/<int:order_id>/fail")
@require_actor
@handle_domain_errors
def fail_route(order_id: int):
    data = json_body()
    result = get_services().orders.fail(order_id, reason=get_str(data, "reason", required=True), actor=g.actor)
    return jsonify(result.to_dict())


@orders_bp.post("/<int:order_id>/cancel")
@require_actor
@handle_domain_errors
def cancel_route(order_id: int):
    data = json_body()
    result = get_services().orders.cancel(order_id, reason=get_str(data, "reason"), actor=g.actor)
    return jsonify(result.to_dict())


@orders_bp.post("/<int:order_id>/return")
@require_actor
@handle_domain_errors
def return_route(order_id: int):
    data = json_body()
    result = get_services().orders.mark_returned(order_id, reason=get_str(data, "reason"), actor=g.actor)
    return jsonify(result.to_dict())
