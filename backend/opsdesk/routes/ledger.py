# backend/opsdesk/routes/ledger.py
"""
Ledger API: domain events, financial transactions (read + manual entry) and
the daily closing report.

as_of filtering is inclusive: occurred_at <= as_of.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import finance_service, ledger_service
from ..decorators import require_auth
from opsdesk.time_utils import parse_iso_datetime


ledger_bp = Blueprint("ledger", __name__, url_prefix="/api/ledger")


def _int_arg(name: str, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@ledger_bp.get("/events")
@require_auth
def list_events_route():
    try:
        as_of = parse_iso_datetime(request.args.get("as_of"))
        entity_id = _int_arg("entity_id")
        limit = min(_int_arg("limit", 100), 500)
    except ValueError:
        return jsonify({"error": "invalid query parameter"}), 400

    events = ledger_service.list_ledger_events(
        g.business_id,
        entity_type=request.args.get("entity_type"),
        entity_id=entity_id,
        event_type=request.args.get("event_type"),
        as_of=as_of,
        limit=limit,
    )
    return jsonify({"events": [e.to_dict() for e in events]}), 200


@ledger_bp.get("/transactions")
@require_auth
def list_transactions_route():
    try:
        appointment_id = _int_arg("appointment_id")
        limit = min(_int_arg("limit", 100), 500)
    except ValueError:
        return jsonify({"error": "invalid query parameter"}), 400

    transactions = ledger_service.list_transactions(
        g.business_id,
        appointment_id=appointment_id,
        status=request.args.get("status"),
        limit=limit,
    )
    return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200


@ledger_bp.post("/transactions")
@require_auth
def create_transaction_route():
    """
    Record a manual income or expense.

    Request body:
    {
        "type": "expense",
        "amount": "45.90",
        "description": "Shampoo refill",
        "payment_method": "pix",          (optional)
        "category": "supplies",           (optional)
        "status": "completed",            (optional: completed | pending)
        "transaction_date": "2024-05-01T12:00:00Z"   (optional, default now)
    }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("type") or data.get("amount") is None:
        return jsonify({"error": "type and amount required"}), 400
    try:
        tx = finance_service.record_manual_transaction(
            g.business_id,
            type=data["type"],
            amount=data["amount"],
            description=data.get("description"),
            payment_method=data.get("payment_method"),
            category=data.get("category"),
            status=data.get("status", "completed"),
            transaction_date=data.get("transaction_date"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"transaction": tx.to_dict()}), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to record transaction")
        return jsonify({"error": "Internal server error"}), 500


@ledger_bp.get("/daily-closing")
@require_auth
def daily_closing_route():
    """Query params: day (YYYY-MM-DD, default today UTC)."""
    try:
        report = finance_service.daily_closing(g.business_id, request.args.get("day"))
        return jsonify(finance_service.closing_to_json(report)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@ledger_bp.post("/daily-closing/send")
@require_auth
def send_daily_closing_route():
    """Email the closing to the signed-in user (or "email" in the body)."""
    data = request.get_json(silent=True) or {}
    try:
        report, result = finance_service.send_daily_report(
            g.business_id,
            data.get("day"),
            recipient=data.get("email") or g.current_user.email,
        )
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    if not result.success:
        return jsonify({"error": f"report not delivered: {result.error}"}), 502
    return jsonify({"sent": True, "report": finance_service.closing_to_json(report)}), 200
