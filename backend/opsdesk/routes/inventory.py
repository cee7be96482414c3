# backend/opsdesk/routes/inventory.py
"""
Inventory routes.

Stock is only ever changed through movements:
    POST /api/inventory/items/<id>/movements  {"type": "in"|"out"|"adjustment", "quantity": ...}
Low-stock is a read-only scan: GET /api/inventory/low-stock
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import inventory_service
from ..decorators import require_auth


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/items")
@require_auth
def list_items_route():
    include_inactive = request.args.get("include_inactive", "").lower() in {"1", "true", "yes"}
    items = inventory_service.list_items(g.business_id, include_inactive=include_inactive)
    return jsonify({"items": [i.to_dict() for i in items]}), 200


@inventory_bp.post("/items")
@require_auth
def create_item_route():
    """
    Request body:
    {
        "name": "Shampoo 1L",
        "unit": "un",
        "current_stock": 10,      (optional, recorded as an opening adjustment)
        "minimum_stock": 2,
        "cost_price": "12.50",
        "sale_price": "25.00"
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        item = inventory_service.create_item(
            g.business_id,
            name=data.get("name"),
            unit=data.get("unit", "un"),
            current_stock=data.get("current_stock", 0),
            minimum_stock=data.get("minimum_stock", 0),
            cost_price=data.get("cost_price"),
            sale_price=data.get("sale_price"),
        )
        return jsonify({"item": item.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create inventory item")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/items/<int:item_id>/movements")
@require_auth
def apply_movement_route(item_id: int):
    data = request.get_json(silent=True) or {}
    if "type" not in data or "quantity" not in data:
        return jsonify({"error": "type and quantity required"}), 400
    try:
        movement = inventory_service.apply_movement(
            g.business_id,
            item_id,
            data["quantity"],
            data["type"],
            reason=data.get("reason"),
            reference_type=data.get("reference_type"),
            reference_id=data.get("reference_id"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"movement": movement.to_dict(), "item": movement.item.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to apply stock movement")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/items/<int:item_id>/movements")
@require_auth
def list_movements_route(item_id: int):
    try:
        movements = inventory_service.list_movements(g.business_id, item_id)
        return jsonify({"movements": [m.to_dict() for m in movements]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@inventory_bp.get("/low-stock")
@require_auth
def low_stock_route():
    items = inventory_service.find_low_stock_items(g.business_id)
    return jsonify({"items": [i.to_dict() for i in items], "count": len(items)}), 200
