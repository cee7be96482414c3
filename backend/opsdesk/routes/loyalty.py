# backend/opsdesk/routes/loyalty.py
"""Loyalty card routes (read-only; stamps are added by appointment completion)."""

from flask import Blueprint, jsonify, g

from ..errors import DomainError
from ..services import loyalty_service
from ..decorators import require_auth


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


@loyalty_bp.get("/cards")
@require_auth
def list_cards_route():
    cards = loyalty_service.list_cards(g.business_id)
    return jsonify({"cards": [c.to_dict() for c in cards]}), 200


@loyalty_bp.get("/customers/<int:customer_id>")
@require_auth
def get_card_route(customer_id: int):
    """Card for one customer; a customer without visits gets an empty snapshot."""
    try:
        card = loyalty_service.get_card(g.business_id, customer_id)
        if card is None:
            snapshot = loyalty_service.snapshot_card(g.business_id, customer_id)
            return jsonify({"card": None, "snapshot": snapshot.to_dict()}), 200
        return jsonify({"card": card.to_dict()}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@loyalty_bp.get("/customers/<int:customer_id>/events")
@require_auth
def list_card_events_route(customer_id: int):
    try:
        events = loyalty_service.list_card_events(g.business_id, customer_id)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
