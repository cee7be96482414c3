# backend/opsdesk/routes/system.py
"""
System health and version endpoints.
"""

import os
import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from opsdesk.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Run a trivial query and report latency."""
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


@system_bp.get("/health")
@system_bp.get("/api/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database},
    }
    return jsonify(body), 200 if healthy else 503


@system_bp.get("/api/version")
def version():
    return jsonify({
        "name": "opsdesk",
        "version": os.environ.get("OPSDESK_VERSION", "0.1.0"),
        "git_sha": os.environ.get("GIT_SHA"),
    })
