# backend/opsdesk/routes/notifications.py
"""Notification bell: unseen badge and mark-as-seen."""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import notification_service
from ..decorators import require_auth


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_auth
def unseen_route():
    result = notification_service.unseen(g.business_id, g.current_user.id)
    return jsonify(result), 200


@notifications_bp.post("/seen")
@require_auth
def mark_seen_route():
    """
    Body: {"items": [{"type": "appointment", "id": 3}, "task-9"]}
    """
    data = request.get_json(silent=True) or {}
    items = data.get("items")
    if not isinstance(items, list):
        return jsonify({"error": "items must be a list"}), 400
    try:
        inserted = notification_service.mark_seen(g.business_id, g.current_user.id, items)
        return jsonify({"marked": inserted}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to mark notifications as seen")
        return jsonify({"error": "Internal server error"}), 500
