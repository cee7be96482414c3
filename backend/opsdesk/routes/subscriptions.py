# backend/opsdesk/routes/subscriptions.py
"""
Subscription plan and billing routes.

Recurring billing itself runs from the CLI (flask jobs process-billing);
these endpoints cover enrollment, manual renewal and cancellation.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import subscription_service
from ..decorators import require_auth


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


@subscriptions_bp.get("/plans")
@require_auth
def list_plans_route():
    plans = subscription_service.list_plans(g.business_id)
    return jsonify({"plans": [p.to_dict() for p in plans]}), 200


@subscriptions_bp.post("/plans")
@require_auth
def create_plan_route():
    data = request.get_json(silent=True) or {}
    try:
        plan = subscription_service.create_plan(
            g.business_id,
            name=data.get("name"),
            price=data.get("price"),
            billing_frequency=data.get("billing_frequency", "monthly"),
            description=data.get("description"),
        )
        return jsonify({"plan": plan.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create plan")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("")
@require_auth
def list_subscriptions_route():
    subscriptions = subscription_service.list_subscriptions(g.business_id, status=request.args.get("status"))
    return jsonify({"subscriptions": [s.to_dict() for s in subscriptions]}), 200


@subscriptions_bp.post("")
@require_auth
def create_subscription_route():
    data = request.get_json(silent=True) or {}
    if not data.get("customer_id") or not data.get("plan_id"):
        return jsonify({"error": "customer_id and plan_id required"}), 400
    try:
        subscription = subscription_service.create_subscription(
            g.business_id,
            customer_id=data["customer_id"],
            plan_id=data["plan_id"],
            start_date=data.get("start_date"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"subscription": subscription.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/<int:subscription_id>")
@require_auth
def get_subscription_route(subscription_id: int):
    try:
        subscription = subscription_service.get_subscription(g.business_id, subscription_id)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@subscriptions_bp.post("/<int:subscription_id>/renew")
@require_auth
def renew_subscription_route(subscription_id: int):
    """
    Body: {"payment_method": "pix" | "dinheiro" | "cartao_credito" | "cartao_debito"}

    pix returns the charge (QR code) to show the customer.
    """
    data = request.get_json(silent=True) or {}
    try:
        result = subscription_service.renew_subscription(
            g.business_id,
            subscription_id,
            data.get("payment_method"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({
            "subscription": result["subscription"].to_dict(),
            "transaction": result["transaction"].to_dict() if result["transaction"] else None,
            "charge": result["charge"].to_dict() if result["charge"] else None,
        }), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to renew subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/cancel")
@require_auth
def cancel_subscription_route(subscription_id: int):
    try:
        subscription = subscription_service.cancel_subscription(
            g.business_id, subscription_id, actor_user_id=g.current_user.id
        )
        return jsonify({"subscription": subscription.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/failed-payment")
@require_auth
def record_failed_payment_route(subscription_id: int):
    """Record a declined payment reported outside the PIX flow (e.g. card)."""
    try:
        subscription = subscription_service.record_failed_payment(g.business_id, subscription_id)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record failed payment")
        return jsonify({"error": "Internal server error"}), 500
