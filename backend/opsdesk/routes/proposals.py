# backend/opsdesk/routes/proposals.py
"""
Proposal (quotation) routes.

Status changes are POST /api/proposals/<id>/<action>; the service layer
enforces which transitions are legal (409 otherwise).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError, SendThrottledError
from ..money import as_json_number
from ..services import proposal_service
from ..decorators import require_auth


proposals_bp = Blueprint("proposals", __name__, url_prefix="/api/proposals")

_ACTIONS = {
    "accept": proposal_service.accept_proposal,
    "reject": proposal_service.reject_proposal,
    "confirm": proposal_service.confirm_proposal,
    "cancel": proposal_service.cancel_proposal,
    "pause": proposal_service.pause_proposal,
    "resume": proposal_service.resume_proposal,
}


@proposals_bp.get("")
@require_auth
def list_proposals_route():
    proposals = proposal_service.list_proposals(g.business_id, status=request.args.get("status"))
    return jsonify({"proposals": [p.to_dict() for p in proposals]}), 200


@proposals_bp.post("/preview")
@require_auth
def preview_amounts_route():
    """Compute amounts without saving (live totals while editing)."""
    data = request.get_json(silent=True) or {}
    try:
        amounts = proposal_service.compute_amounts(
            data.get("services"),
            data.get("discount_percentage", 0),
            data.get("deposit_percentage", proposal_service.DEFAULT_DEPOSIT_PERCENTAGE),
        )
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    return jsonify({
        "services": amounts["services"],
        "total_amount": as_json_number(amounts["total_amount"]),
        "final_amount": as_json_number(amounts["final_amount"]),
        "deposit_amount": as_json_number(amounts["deposit_amount"]),
    }), 200


@proposals_bp.post("")
@require_auth
def create_proposal_route():
    """
    Create a proposal.

    Request body:
    {
        "customer_id": 1,
        "title": "Wedding package",
        "services": [{"description": "Makeup", "quantity": 1, "unit_price": "350.00"}],
        "discount_percentage": 10,    (optional)
        "deposit_percentage": 30,     (optional, default 50)
        "valid_until": "2024-06-01T00:00:00Z"   (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("customer_id"):
        return jsonify({"error": "customer_id required"}), 400
    try:
        proposal = proposal_service.create_proposal(
            g.business_id,
            customer_id=data["customer_id"],
            title=data.get("title"),
            services=data.get("services"),
            description=data.get("description"),
            discount_percentage=data.get("discount_percentage", 0),
            deposit_percentage=data.get("deposit_percentage", proposal_service.DEFAULT_DEPOSIT_PERCENTAGE),
            valid_until=data.get("valid_until"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"proposal": proposal.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create proposal")
        return jsonify({"error": "Internal server error"}), 500


@proposals_bp.get("/<int:proposal_id>")
@require_auth
def get_proposal_route(proposal_id: int):
    try:
        proposal = proposal_service.get_proposal(g.business_id, proposal_id)
        return jsonify({"proposal": proposal.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@proposals_bp.delete("/<int:proposal_id>")
@require_auth
def delete_proposal_route(proposal_id: int):
    try:
        proposal_service.delete_proposal(g.business_id, proposal_id)
        return jsonify({"success": True}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to delete proposal")
        return jsonify({"error": "Internal server error"}), 500


@proposals_bp.post("/<int:proposal_id>/send")
@require_auth
def send_proposal_route(proposal_id: int):
    """
    Deliver the proposal to the customer.

    Body: {"channel": "email" | "whatsapp"}  (optional)

    429 with Retry-After when sent again inside the cooldown window.
    """
    data = request.get_json(silent=True) or {}
    try:
        proposal = proposal_service.send_proposal(
            g.business_id,
            proposal_id,
            channel=data.get("channel"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"proposal": proposal.to_dict()}), 200
    except SendThrottledError as e:
        response = jsonify(e.to_dict())
        response.headers["Retry-After"] = str(e.retry_after_seconds)
        return response, e.http_status
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to send proposal")
        return jsonify({"error": "Internal server error"}), 500


@proposals_bp.post("/<int:proposal_id>/viewed")
def mark_viewed_route(proposal_id: int):
    """
    Tracking hit from the customer's copy of the proposal (no auth).

    Body: {"business_id": 1}
    """
    data = request.get_json(silent=True) or {}
    business_id = data.get("business_id")
    if not business_id:
        return jsonify({"error": "business_id required"}), 400
    try:
        proposal = proposal_service.mark_viewed(int(business_id), proposal_id)
        return jsonify({"status": proposal.status}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except (TypeError, ValueError):
        return jsonify({"error": "business_id must be an integer"}), 400


@proposals_bp.post("/<int:proposal_id>/<action>")
@require_auth
def transition_proposal_route(proposal_id: int, action: str):
    handler = _ACTIONS.get(action)
    if handler is None:
        return jsonify({"error": f"unknown action: {action}"}), 404
    try:
        proposal = handler(g.business_id, proposal_id, actor_user_id=g.current_user.id)
        return jsonify({"proposal": proposal.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to %s proposal", action)
        return jsonify({"error": "Internal server error"}), 500


@proposals_bp.post("/<int:proposal_id>/schedule")
@require_auth
def schedule_proposal_route(proposal_id: int):
    """
    Create the appointment for an accepted/confirmed proposal.

    Body: {"start_time": "...", "end_time": "...", "title": "..." (optional)}

    Repeating the call returns the same appointment.
    """
    data = request.get_json(silent=True) or {}
    try:
        appointment = proposal_service.schedule_from_proposal(
            g.business_id,
            proposal_id,
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            title=data.get("title"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"appointment": appointment.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to schedule proposal")
        return jsonify({"error": "Internal server error"}), 500
