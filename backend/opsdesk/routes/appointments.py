# backend/opsdesk/routes/appointments.py
"""
Appointment routes.

Completing an appointment is the main write path of the system: one call
records the payment, consumes stock, stamps the loyalty card and schedules
the follow-ups. See services/completion_service.py.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import appointment_service, completion_service
from ..decorators import require_auth


appointments_bp = Blueprint("appointments", __name__, url_prefix="/api/appointments")


@appointments_bp.get("")
@require_auth
def list_appointments_route():
    """Query params: start, end (ISO-8601), status."""
    try:
        appointments = appointment_service.list_appointments(
            g.business_id,
            start=request.args.get("start"),
            end=request.args.get("end"),
            status=request.args.get("status"),
        )
        return jsonify({"appointments": [a.to_dict() for a in appointments]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@appointments_bp.post("")
@require_auth
def create_appointment_route():
    """
    Book an appointment.

    Request body:
    {
        "customer_id": 1,
        "title": "Haircut",
        "start_time": "2024-05-01T14:00:00Z",
        "end_time": "2024-05-01T15:00:00Z",
        "price": "80.00",          (optional)
        "description": "...",      (optional)
        "notes": "..."             (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("customer_id"):
        return jsonify({"error": "customer_id required"}), 400
    try:
        appointment = appointment_service.create_appointment(
            g.business_id,
            customer_id=data["customer_id"],
            title=data.get("title"),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            description=data.get("description"),
            notes=data.get("notes"),
            price=data.get("price"),
            deposit_amount=data.get("deposit_amount"),
            payment_method=data.get("payment_method"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"appointment": appointment.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create appointment")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.get("/<int:appointment_id>")
@require_auth
def get_appointment_route(appointment_id: int):
    try:
        appointment = appointment_service.get_appointment(g.business_id, appointment_id)
        return jsonify({"appointment": appointment.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@appointments_bp.post("/<int:appointment_id>/complete")
@require_auth
def complete_appointment_route(appointment_id: int):
    """
    Complete an appointment.

    Request body (all optional):
    {
        "value": "120.00",               defaults to proposal final amount / price
        "payment_method": "pix",         dinheiro | pix | cartao_credito | cartao_debito
        "stock_usages": [{"item_id": 3, "quantity": "0.5"}]
    }

    Returns the CompletionResult; partial problems (stock, follow-ups) are
    listed under "degraded" with a 200.
    """
    data = request.get_json(silent=True) or {}
    try:
        result = completion_service.complete_appointment(
            g.business_id,
            appointment_id,
            value=data.get("value"),
            payment_method=data.get("payment_method"),
            stock_usages=data.get("stock_usages") or (),
            actor_user_id=g.current_user.id,
        )
        return jsonify(result.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete appointment")
        return jsonify({"error": "Internal server error"}), 500


@appointments_bp.post("/<int:appointment_id>/cancel")
@require_auth
def cancel_appointment_route(appointment_id: int):
    try:
        appointment = appointment_service.cancel_appointment(
            g.business_id, appointment_id, actor_user_id=g.current_user.id
        )
        return jsonify({"appointment": appointment.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel appointment")
        return jsonify({"error": "Internal server error"}), 500
