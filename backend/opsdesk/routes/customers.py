# backend/opsdesk/routes/customers.py
"""Customer (CRM) routes. All scoped to the authenticated business."""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import customer_service
from ..decorators import require_auth


customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


@customers_bp.get("")
@require_auth
def list_customers_route():
    customers = customer_service.list_customers(g.business_id, search=request.args.get("q"))
    return jsonify({"customers": [c.to_dict() for c in customers]}), 200


@customers_bp.post("")
@require_auth
def create_customer_route():
    data = request.get_json(silent=True) or {}
    try:
        customer = customer_service.create_customer(
            g.business_id,
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
        )
        return jsonify({"customer": customer.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create customer")
        return jsonify({"error": "Internal server error"}), 500


@customers_bp.get("/<int:customer_id>")
@require_auth
def get_customer_route(customer_id: int):
    try:
        customer = customer_service.get_customer(g.business_id, customer_id)
        return jsonify({"customer": customer.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@customers_bp.patch("/<int:customer_id>")
@require_auth
def update_customer_route(customer_id: int):
    data = request.get_json(silent=True) or {}
    try:
        customer = customer_service.update_customer(g.business_id, customer_id, data)
        return jsonify({"customer": customer.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to update customer")
        return jsonify({"error": "Internal server error"}), 500
