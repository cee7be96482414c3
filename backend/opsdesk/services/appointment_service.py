# Overview: Service-layer operations for appointments; encapsulates business logic and database work.

from __future__ import annotations

from ..extensions import db
from ..errors import InvalidQuantityError, InvalidStateError, ValidationError
from ..models import Appointment, Customer
from ..models.scheduling import (
    APPOINTMENT_SCHEDULED,
    APPOINTMENT_CANCELLED,
    PAYMENT_PENDING,
    PAYMENT_CANCELLED,
)
from ..money import quantize_money
from opsdesk.time_utils import utcnow, normalize_datetime
from .concurrency import run_with_retry
from .ledger_service import append_ledger_event
from .tenant_service import require_owned, scoped_query
"""
Appointment lifecycle (booking side).

scheduled -> completed   (completion_service.complete_appointment)
scheduled -> cancelled   (cancel_appointment)

Both targets are terminal. end_time must be strictly after start_time.
"""

PAYMENT_METHODS = ("dinheiro", "pix", "cartao_credito", "cartao_debito")


def _parse_time(value, field: str):
    try:
        dt = normalize_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
    if dt is None:
        raise ValidationError(f"{field} is required")
    return dt


def _optional_money(value, field: str):
    if value is None or value == "":
        return None
    amount = quantize_money(value)
    if amount < 0:
        raise InvalidQuantityError(f"{field} must be >= 0")
    return amount


def validate_payment_method(payment_method: str | None) -> str | None:
    if payment_method is None:
        return None
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"invalid payment_method: {payment_method}")
    return payment_method


def create_appointment(
    business_id: int,
    *,
    customer_id: int,
    title: str,
    start_time,
    end_time,
    description: str | None = None,
    notes: str | None = None,
    price=None,
    deposit_amount=None,
    payment_method: str | None = None,
    proposal_id: int | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> Appointment:
    """
    Book an appointment.

    With commit=False the row is only flushed (proposal scheduling owns the
    transaction and the unique proposal_id check).
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    start = _parse_time(start_time, "start_time")
    end = _parse_time(end_time, "end_time")
    if end <= start:
        raise ValidationError("end_time must be after start_time")

    require_owned(Customer, customer_id, business_id)

    appointment = Appointment(
        business_id=business_id,
        customer_id=customer_id,
        title=title[:255],
        description=description,
        notes=notes,
        start_time=start,
        end_time=end,
        status=APPOINTMENT_SCHEDULED,
        payment_status=PAYMENT_PENDING,
        price=_optional_money(price, "price"),
        deposit_amount=_optional_money(deposit_amount, "deposit_amount"),
        payment_method=validate_payment_method(payment_method),
        proposal_id=proposal_id,
    )
    db.session.add(appointment)
    db.session.flush()

    append_ledger_event(
        business_id=business_id,
        event_type="appointment.created",
        entity_type="appointment",
        entity_id=appointment.id,
        actor_user_id=actor_user_id,
        payload={"customer_id": customer_id, "proposal_id": proposal_id},
    )

    if commit:
        db.session.commit()
    return appointment


def cancel_appointment(
    business_id: int,
    appointment_id: int,
    *,
    actor_user_id: int | None = None,
) -> Appointment:
    """scheduled -> cancelled. Anything else raises InvalidStateError."""

    def _op():
        appointment = require_owned(Appointment, appointment_id, business_id, lock=True)
        if appointment.status != APPOINTMENT_SCHEDULED:
            raise InvalidStateError(f"cannot cancel a {appointment.status} appointment")

        now = utcnow()
        appointment.status = APPOINTMENT_CANCELLED
        appointment.payment_status = PAYMENT_CANCELLED
        appointment.cancelled_at = now

        append_ledger_event(
            business_id=business_id,
            event_type="appointment.cancelled",
            entity_type="appointment",
            entity_id=appointment.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
        )
        db.session.commit()
        return appointment

    return run_with_retry(_op)


def get_appointment(business_id: int, appointment_id: int) -> Appointment:
    return require_owned(Appointment, appointment_id, business_id)


def list_appointments(business_id: int, *, start=None, end=None, status: str | None = None) -> list[Appointment]:
    """Appointments overlapping [start, end), ordered by start_time."""
    q = scoped_query(Appointment, business_id)
    try:
        start = normalize_datetime(start)
        end = normalize_datetime(end)
    except ValueError:
        raise ValidationError("start and end must be ISO-8601 datetimes")
    if start is not None:
        q = q.filter(Appointment.end_time > start)
    if end is not None:
        q = q.filter(Appointment.start_time < end)
    if status:
        q = q.filter(Appointment.status == status)
    return q.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()
