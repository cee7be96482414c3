# Overview: Manual cash-book entries and the daily closing report over financial transactions.

"""
Finance Service

MANUAL ENTRIES: the owner records income or expense that did not come from an
appointment or a PIX charge (supplies, rent, a walk-in paid in cash). They go
through ledger_service.record_transaction, so the amount > 0 and type rules
are the same as for system-generated rows.

DAILY CLOSING: read model over completed transactions of one UTC day.
    payments.pix   = income paid by pix
    payments.card  = income paid by credit or debit card
    payments.cash  = income paid in cash
    payments.total = all completed income (including rows with no method)
    balance        = payments.total - sum(completed expenses)
Pending and cancelled rows are ignored.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from ..clients.delivery import CHANNEL_EMAIL, DeliveryResult, send_safely
from ..errors import ValidationError
from ..extensions import db
from ..models import Appointment, Business, Customer, FinancialTransaction, User
from ..models.finance import (
    TRANSACTION_COMPLETED,
    TRANSACTION_EXPENSE,
    TRANSACTION_INCOME,
    TRANSACTION_PENDING,
)
from ..money import as_json_number
from opsdesk.time_utils import day_bounds, normalize_datetime, utcnow
from . import messaging_service
from .appointment_service import validate_payment_method
from .ledger_service import append_ledger_event, record_transaction

logger = logging.getLogger(__name__)

MANUAL_STATUSES = (TRANSACTION_COMPLETED, TRANSACTION_PENDING)

PAYMENT_BUCKETS = {
    "pix": "pix",
    "cartao_credito": "card",
    "cartao_debito": "card",
    "dinheiro": "cash",
}


def record_manual_transaction(
    business_id: int,
    *,
    type: str,
    amount,
    description: str | None,
    payment_method: str | None = None,
    category: str | None = None,
    status: str = TRANSACTION_COMPLETED,
    transaction_date=None,
    actor_user_id: int | None = None,
) -> FinancialTransaction:
    """
    Record an income or expense entered by hand.

    Raises:
        ValidationError: bad type/status/payment method/date, missing description
        InvalidQuantityError: amount <= 0
    """
    if status not in MANUAL_STATUSES:
        raise ValidationError("status must be completed or pending")
    payment_method = validate_payment_method(payment_method)
    try:
        transaction_date = normalize_datetime(transaction_date)
    except ValueError:
        raise ValidationError("transaction_date must be an ISO-8601 datetime")
    category = (category or "").strip() or None

    try:
        tx = record_transaction(
            business_id=business_id,
            type=type,
            amount=amount,
            description=(description or "").strip(),
            payment_method=payment_method,
            status=status,
            category=category[:64] if category else None,
            transaction_date=transaction_date,
            created_by_user_id=actor_user_id,
        )
        append_ledger_event(
            business_id=business_id,
            event_type=f"transaction.{tx.type}_recorded",
            entity_type="financial_transaction",
            entity_id=tx.id,
            actor_user_id=actor_user_id,
            payload={"amount": str(tx.amount), "status": tx.status, "manual": True},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return tx


def _parse_day(day) -> date:
    if day is None:
        return utcnow().date()
    if isinstance(day, datetime):
        return day.date()
    if isinstance(day, date):
        return day
    try:
        return date.fromisoformat(str(day).strip())
    except ValueError:
        raise ValidationError("day must be YYYY-MM-DD")


def daily_closing(business_id: int, day=None) -> dict:
    """Income by payment method, services performed, expenses and balance for one day."""
    day = _parse_day(day)
    start, end = day_bounds(datetime(day.year, day.month, day.day))

    rows = (
        db.session.query(FinancialTransaction, Appointment, Customer)
        .outerjoin(Appointment, FinancialTransaction.appointment_id == Appointment.id)
        .outerjoin(Customer, Appointment.customer_id == Customer.id)
        .filter(
            FinancialTransaction.business_id == business_id,
            FinancialTransaction.status == TRANSACTION_COMPLETED,
            FinancialTransaction.transaction_date >= start,
            FinancialTransaction.transaction_date < end,
        )
        .order_by(FinancialTransaction.transaction_date.asc(), FinancialTransaction.id.asc())
        .all()
    )

    payments = {"pix": Decimal("0.00"), "card": Decimal("0.00"), "cash": Decimal("0.00")}
    total_income = Decimal("0.00")
    total_expenses = Decimal("0.00")
    services = []
    expenses = []

    for tx, appointment, customer in rows:
        if tx.type == TRANSACTION_INCOME:
            total_income += tx.amount
            bucket = PAYMENT_BUCKETS.get(tx.payment_method)
            if bucket:
                payments[bucket] += tx.amount
            services.append({
                "title": appointment.title if appointment else tx.description,
                "customer": customer.name if customer else None,
                "amount": tx.amount,
                "payment_method": tx.payment_method,
            })
        elif tx.type == TRANSACTION_EXPENSE:
            total_expenses += tx.amount
            expenses.append({
                "description": tx.description,
                "amount": tx.amount,
                "category": tx.category,
            })

    payments["total"] = total_income
    return {
        "date": day.isoformat(),
        "payments": payments,
        "services": services,
        "expenses": expenses,
        "total_expenses": total_expenses,
        "balance": total_income - total_expenses,
    }


def closing_to_json(report: dict) -> dict:
    """Decimal amounts as strings, the same way models serialize money."""
    return {
        "date": report["date"],
        "payments": {k: as_json_number(v) for k, v in report["payments"].items()},
        "services": [{**s, "amount": as_json_number(s["amount"])} for s in report["services"]],
        "expenses": [{**e, "amount": as_json_number(e["amount"])} for e in report["expenses"]],
        "total_expenses": as_json_number(report["total_expenses"]),
        "balance": as_json_number(report["balance"]),
    }


def _owner_email(business_id: int) -> str | None:
    owner = (
        db.session.query(User)
        .filter(User.business_id == business_id, User.is_active.is_(True))
        .order_by(User.id.asc())
        .first()
    )
    return owner.email if owner else None


def send_daily_report(business_id: int, day=None, *, recipient: str | None = None) -> tuple[dict, DeliveryResult]:
    """Build the closing for `day` and email it (to the owner unless a recipient is given)."""
    report = daily_closing(business_id, day)
    recipient = recipient or _owner_email(business_id)
    business = db.session.get(Business, business_id)
    payload = messaging_service.daily_closing_payload(report, business.name if business else None)
    result = send_safely(CHANNEL_EMAIL, recipient, payload)
    if not result.success:
        logger.warning("Daily report for business %s not delivered: %s", business_id, result.error)
    return report, result
