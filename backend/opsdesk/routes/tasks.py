# backend/opsdesk/routes/tasks.py
"""Task routes."""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import task_service
from ..decorators import require_auth


tasks_bp = Blueprint("tasks", __name__, url_prefix="/api/tasks")


@tasks_bp.get("")
@require_auth
def list_tasks_route():
    tasks = task_service.list_tasks(
        g.business_id,
        status=request.args.get("status"),
        task_type=request.args.get("type"),
    )
    return jsonify({"tasks": [t.to_dict() for t in tasks]}), 200


@tasks_bp.post("")
@require_auth
def create_task_route():
    data = request.get_json(silent=True) or {}
    try:
        task = task_service.create_task(
            g.business_id,
            title=data.get("title"),
            description=data.get("description"),
            task_type=data.get("task_type", "general"),
            priority=data.get("priority", "medium"),
            due_date=data.get("due_date"),
            customer_id=data.get("customer_id"),
            appointment_id=data.get("appointment_id"),
        )
        return jsonify({"task": task.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create task")
        return jsonify({"error": "Internal server error"}), 500


@tasks_bp.post("/<int:task_id>/complete")
@require_auth
def complete_task_route(task_id: int):
    try:
        task = task_service.complete_task(g.business_id, task_id)
        return jsonify({"task": task.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete task")
        return jsonify({"error": "Internal server error"}), 500
