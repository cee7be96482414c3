# backend/opsdesk/routes/pix.py
"""
PIX charge routes.

POST /api/pix/webhook is called by the payment provider, not by users: it
is unauthenticated and, when PAYMENT_WEBHOOK_SECRET is set, must carry an
X-Signature header (hex HMAC-SHA256 of the raw body).
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import pix_service
from ..decorators import require_auth


pix_bp = Blueprint("pix", __name__, url_prefix="/api/pix")


@pix_bp.get("/charges")
@require_auth
def list_charges_route():
    charges = pix_service.list_charges(g.business_id, status=request.args.get("status"))
    return jsonify({"charges": [c.to_dict() for c in charges]}), 200


@pix_bp.post("/charges")
@require_auth
def create_charge_route():
    """
    Request body:
    {
        "amount": "150.00",
        "customer_name": "Maria",
        "customer_phone": "+5511999990000",   (optional)
        "customer_id": 1,                     (optional)
        "appointment_id": 7,                  (optional)
        "description": "Deposit"              (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    if data.get("amount") is None:
        return jsonify({"error": "amount required"}), 400
    try:
        charge = pix_service.create_pix_charge(
            g.business_id,
            amount=data["amount"],
            customer_name=data.get("customer_name"),
            customer_phone=data.get("customer_phone"),
            customer_id=data.get("customer_id"),
            appointment_id=data.get("appointment_id"),
            description=data.get("description"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"charge": charge.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create PIX charge")
        return jsonify({"error": "Internal server error"}), 500


@pix_bp.get("/charges/<int:charge_id>")
@require_auth
def get_charge_route(charge_id: int):
    try:
        charge = pix_service.get_charge(g.business_id, charge_id)
        return jsonify({"charge": charge.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@pix_bp.post("/charges/<int:charge_id>/cancel")
@require_auth
def cancel_charge_route(charge_id: int):
    try:
        charge = pix_service.cancel_charge(g.business_id, charge_id, actor_user_id=g.current_user.id)
        return jsonify({"charge": charge.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel PIX charge")
        return jsonify({"error": "Internal server error"}), 500


@pix_bp.post("/webhook")
def webhook_route():
    """
    Provider notification.

    Body: {"txid": "...", "status": "paid" | "expired" | "cancelled", "paidAt": "..."}
    """
    raw = request.get_data(cache=True)
    try:
        pix_service.verify_signature(raw, request.headers.get("X-Signature"))
    except DomainError as e:
        current_app.logger.warning("Rejected PIX webhook: %s", e.message)
        return jsonify(e.to_dict()), e.http_status

    data = request.get_json(silent=True) or {}
    try:
        charge, changed = pix_service.apply_webhook(
            data.get("txid"),
            data.get("status"),
            data.get("paidAt") or data.get("paid_at"),
        )
        return jsonify({"success": True, "changed": changed, "status": charge.status}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to process PIX webhook")
        return jsonify({"error": "Internal server error"}), 500
