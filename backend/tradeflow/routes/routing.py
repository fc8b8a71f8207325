# Overview: Flask API routes for vendor routing and race-safe acceptance.

from flask import Blueprint, g, jsonify

from ..decorators import get_services, handle_domain_errors, require_actor
from ..errors import ValidationError
from ..validation import coerce_int, get_int, get_str, json_body


routing_bp = Blueprint("routing", __name__, url_prefix="/api")


@routing_bp.post("/orders/<int:order_id>/routing")
@require_actor
@handle_domain_errors
def route_order_route(order_id: int):
    """Body: {candidate_ids?: [wholesaler_id, ...]}"""
    data = json_body()
    raw = data.get("candidate_ids")
    if raw is not None and not isinstance(raw, list):
        raise ValidationError("candidate_ids must be a list")
    candidates = [coerce_int("candidate_ids", v) for v in raw] if raw else None

    routing = get_services().routing.route_order(order_id, candidates, actor=g.actor)
    return jsonify({"routing": routing.to_dict()}), 201


@routing_bp.post("/routing/<int:routing_id>/respond")
@require_actor
@handle_domain_errors
def respond_route(routing_id: int):
    """Body: {wholesaler_id, response: ACCEPT|REJECT, reason?}"""
    data = json_body()
    result = get_services().routing.respond(
        routing_id,
        get_int(data, "wholesaler_id", minimum=1),
        get_str(data, "response", required=True, max_length=16),
        reason=get_str(data, "reason"),
    )
    return jsonify(result)


@routing_bp.post("/routing/<int:routing_id>/accept")
@require_actor
@handle_domain_errors
def accept_route(routing_id: int):
    data = json_body()
    result = get_services().routing.accept_vendor(routing_id, get_int(data, "wholesaler_id", minimum=1))
    return jsonify(result)


@routing_bp.post("/routing/<int:routing_id>/timeout")
@require_actor
@handle_domain_errors
def timeout_route(routing_id: int):
    return jsonify(get_services().routing.timeout(routing_id))


@routing_bp.get("/routing/<int:routing_id>")
@require_actor
@handle_domain_errors
def routing_status_route(routing_id: int):
    return jsonify(get_services().routing.get_status(routing_id))
