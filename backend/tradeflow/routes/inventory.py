# Overview: Flask API routes for wholesaler stock positions and diagnostics.

from flask import Blueprint, jsonify, request

from ..decorators import get_services, handle_domain_errors, require_actor
from ..validation import get_int, get_str, json_body, parse_items


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/diagnostics/negative-stock")
@require_actor
@handle_domain_errors
def negative_stock_route():
    findings = get_services().stock.detect_negative_stock()
    return jsonify({"count": len(findings), "positions": findings})


@inventory_bp.get("/<int:wholesaler_id>/<int:product_id>")
@require_actor
@handle_domain_errors
def stock_status_route(wholesaler_id: int, product_id: int):
    return jsonify({"position": get_services().stock.get_status(wholesaler_id, product_id)})


@inventory_bp.post("/<int:wholesaler_id>/availability")
@require_actor
@handle_domain_errors
def availability_route(wholesaler_id: int):
    """Body: {items: [{product_id, quantity}]}"""
    data = json_body()
    items = parse_items(data, with_price=False)
    return jsonify(get_services().stock.check_availability(wholesaler_id, items))


@inventory_bp.get("/<int:wholesaler_id>/<int:product_id>/audit")
@require_actor
@handle_domain_errors
def audit_trail_route(wholesaler_id: int, product_id: int):
    limit = request.args.get("limit", default=200, type=int)
    limit = max(1, min(limit, 1000))
    movements = get_services().stock.get_audit_trail(wholesaler_id, product_id, limit=limit)
    return jsonify({"wholesaler_id": wholesaler_id, "product_id": product_id, "movements": movements})


@inventory_bp.post("/<int:wholesaler_id>/<int:product_id>/receive")
@require_actor
@handle_domain_errors
def receive_route(wholesaler_id: int, product_id: int):
    """Body: {quantity, price_cents?, note?}"""
    data = json_body()
    position = get_services().stock.receive_stock(
        wholesaler_id,
        product_id,
        get_int(data, "quantity", minimum=1),
        price_cents=get_int(data, "price_cents", required=False, minimum=0),
        note=get_str(data, "note"),
    )
    return jsonify({"position": position.to_dict()}), 201


@inventory_bp.post("/<int:wholesaler_id>/<int:product_id>/count")
@require_actor
@handle_domain_errors
def count_route(wholesaler_id: int, product_id: int):
    """Body: {counted, note?}"""
    data = json_body()
    result = get_services().stock.record_physical_count(
        wholesaler_id,
        product_id,
        get_int(data, "counted", minimum=0),
        note=get_str(data, "note"),
    )
    return jsonify(result)
