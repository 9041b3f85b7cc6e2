"""Operations endpoints: health, integration status and Prometheus metrics."""
from flask import Blueprint, Response, current_app, jsonify
from sqlalchemy import text

from edulure_sync.datetime_utils import isoformat_utc, utcnow
from edulure_sync.logging_config import get_logger
from edulure_sync.metrics import render_latest
from edulure_sync.models import db
from edulure_sync.services import get_services

logger = get_logger(__name__)

ops_bp = Blueprint("ops", __name__)


@ops_bp.route("/health")
def health():
    """Database ping plus scheduler state. The scheduler runs in one process only."""
    database = "ok"
    try:
        db.session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database ping failed", error=str(e))
        database = "error"

    scheduler = get_services(current_app).scheduler
    body = {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "scheduler": {
            "enabled": current_app.config.get("SCHEDULER_ENABLED", False),
            "running": bool(scheduler is not None and scheduler.running),
            "single_process": True,
        },
        "checked_at": isoformat_utc(utcnow()),
    }
    return jsonify(body), 200 if database == "ok" else 503


@ops_bp.route("/integrations/status")
def integrations_status():
    try:
        services = get_services(current_app)
        snapshot = services.orchestrator.status_snapshot()
        snapshot["webhook_deliveries"] = services.bus.delivery_snapshot()
        return jsonify(snapshot), 200
    except Exception as e:
        logger.error("Error getting integration status", error=str(e))
        return jsonify({"status": "error", "message": f"Could not get status: {str(e)}"}), 500


@ops_bp.route("/metrics")
def metrics():
    body, content_type = render_latest()
    return Response(body, content_type=content_type)
