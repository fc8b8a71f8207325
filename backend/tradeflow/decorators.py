# Overview: Request decorators for API routes.

from functools import wraps

from flask import current_app, g, jsonify, request

from .errors import TradeflowError
from .extensions import db
from .services import build_services


def get_services():
    """Service graph for the current request, built once on first use."""
    if "services" not in g:
        g.services = build_services(
            db.session,
            current_app.config,
            current_app.logger,
            gateway=current_app.extensions.get("tradeflow_gateway"),
        )
    return g.services


def require_actor(f):
    """
    Establish the caller identity supplied by the upstream gateway.

    Sets g.actor from the X-Actor-Id header ("retailer:7", "wholesaler:3",
    "admin:ops"). Authentication itself happens upstream; requests without
    the header get 401.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = (request.headers.get("X-Actor-Id") or "").strip()
        if not actor:
            return jsonify({"error": "X-Actor-Id header required", "code": "ACTOR_REQUIRED"}), 401
        g.actor = actor[:64]
        return f(*args, **kwargs)

    return decorated_function


def handle_domain_errors(f):
    """
    Map domain errors to JSON responses.

    TradeflowError subclasses carry their own status and details; anything
    else is logged with the stack trace and returned as a 500.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except TradeflowError as e:
            if e.http_status >= 500:
                current_app.logger.warning("%s on %s: %s", e.code, request.path, e)
            return jsonify(e.to_dict()), e.http_status
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Unhandled error on %s %s", request.method, request.path)
            return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500

    return decorated_function
