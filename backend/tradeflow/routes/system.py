# backend/tradeflow/routes/system.py
"""
System health and version endpoints.
"""

import sys
import time

from flask import Blueprint, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import NotificationOutbox, Order, OrderRouting
from tradeflow.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """Check database connectivity with a couple of cheap counts."""
    start_time = time.time()
    try:
        order_count = db.session.query(func.count(Order.id)).scalar()
        open_routings = (
            db.session.query(func.count(OrderRouting.id))
            .filter(OrderRouting.status == "PENDING_RESPONSES")
            .scalar()
        )
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"orders": order_count, "open_routings": open_routings},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_outbox_health() -> dict:
    """Outbox backlog. A growing FAILED count means the gateway is down."""
    start_time = time.time()
    try:
        counts = dict(
            db.session.query(NotificationOutbox.status, func.count(NotificationOutbox.id))
            .group_by(NotificationOutbox.status)
            .all()
        )
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "degraded" if counts.get("FAILED") else "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "pending": counts.get("PENDING", 0),
                "failed": counts.get("FAILED", 0),
                "sent": counts.get("SENT", 0),
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        db.session.rollback()
        current_app.logger.exception("Outbox health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Outbox error",
        }


@system_bp.get("/health")
def health():
    """
    Health check.

    Returns:
    - 200: healthy or degraded (still operational)
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    outbox_health = check_outbox_health()

    all_checks = [database_health, outbox_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "outbox": outbox_health,
        },
    }
    return response, http_status


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
