# Overview: Service-layer operations for ledger; encapsulates business logic and database work.

from __future__ import annotations

from typing import Optional
from datetime import datetime

from ..extensions import db
from ..models import LedgerEvent, FinancialTransaction
from ..models.finance import TRANSACTION_INCOME, TRANSACTION_EXPENSE, TRANSACTION_COMPLETED
from ..errors import InvalidQuantityError, ValidationError
from ..money import quantize_money
from opsdesk.time_utils import utcnow, normalize_datetime
"""
OpsDesk Ledger Invariants (authoritative)

- Append-only audit log for cross-cutting domain events.
- No domain/business logic in the ledger itself.
- Events are written inside the same DB transaction as the domain event they record.
- occurred_at is business time; created_at is system time (DB default).
- FinancialTransaction rows are append-only once completed: corrections are new rows.
"""


def append_ledger_event(
    *,
    business_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    payload: Optional[dict] = None,
) -> LedgerEvent:
    """
    Append-only domain event.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Caller owns the transaction (no commit here).
    """
    ev = LedgerEvent(
        business_id=business_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        payload=payload,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def record_transaction(
    *,
    business_id: int,
    type: str,
    amount,
    description: str,
    payment_method: str | None = None,
    status: str = TRANSACTION_COMPLETED,
    category: str | None = None,
    transaction_date: Optional[datetime] = None,
    appointment_id: int | None = None,
    subscription_id: int | None = None,
    pix_charge_id: int | None = None,
    created_by_user_id: int | None = None,
) -> FinancialTransaction:
    """
    Insert a financial transaction row. Caller owns the transaction.

    Amounts are strictly positive; direction is carried by type.
    """
    if type not in (TRANSACTION_INCOME, TRANSACTION_EXPENSE):
        raise ValidationError("type must be income or expense")
    amount = quantize_money(amount)
    if amount <= 0:
        raise InvalidQuantityError("amount must be > 0")
    if not description:
        raise ValidationError("description is required")

    tx = FinancialTransaction(
        business_id=business_id,
        type=type,
        amount=amount,
        description=description[:255],
        payment_method=payment_method,
        status=status,
        category=category,
        transaction_date=normalize_datetime(transaction_date) or utcnow(),
        appointment_id=appointment_id,
        subscription_id=subscription_id,
        pix_charge_id=pix_charge_id,
        created_by_user_id=created_by_user_id,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def list_transactions(
    business_id: int,
    *,
    appointment_id: int | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[FinancialTransaction]:
    q = db.session.query(FinancialTransaction).filter_by(business_id=business_id)
    if appointment_id is not None:
        q = q.filter_by(appointment_id=appointment_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(FinancialTransaction.id.desc()).limit(limit).all()


def list_ledger_events(
    business_id: int,
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    event_type: str | None = None,
    as_of: Optional[datetime] = None,
    limit: int = 100,
) -> list[LedgerEvent]:
    """List events newest-first. as_of filtering is inclusive (occurred_at <= as_of)."""
    q = db.session.query(LedgerEvent).filter_by(business_id=business_id)
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if entity_id is not None:
        q = q.filter_by(entity_id=entity_id)
    if event_type:
        q = q.filter_by(event_type=event_type)
    if as_of is not None:
        q = q.filter(LedgerEvent.occurred_at <= as_of)
    return q.order_by(LedgerEvent.occurred_at.desc(), LedgerEvent.id.desc()).limit(limit).all()
