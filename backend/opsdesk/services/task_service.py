# Overview: Service-layer operations for tasks; encapsulates business logic and database work.

"""
Task Generator

Tasks are owner to-dos. Two kinds are generated automatically:
- post_service: one per completed appointment (follow-up contact ~24h later)
- reactivation: one PENDING task per customer with no visit in the last
  INACTIVE_CUSTOMER_DAYS days

Both generators check for an existing task before inserting, so running them
repeatedly (cron) is safe.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InvalidStateError, ValidationError
from ..models import Appointment, Customer, Task
from ..models.scheduling import APPOINTMENT_CANCELLED
from opsdesk.time_utils import utcnow, normalize_datetime
from .tenant_service import require_owned, scoped_query

logger = logging.getLogger(__name__)

TASK_GENERAL = "general"
TASK_POST_SERVICE = "post_service"
TASK_REACTIVATION = "reactivation"
VALID_TASK_TYPES = (TASK_GENERAL, TASK_POST_SERVICE, TASK_REACTIVATION)

VALID_PRIORITIES = ("low", "medium", "high")

TASK_PENDING = "pending"
TASK_COMPLETED = "completed"


def create_task(
    business_id: int,
    *,
    title: str,
    description: str | None = None,
    task_type: str = TASK_GENERAL,
    priority: str = "medium",
    due_date=None,
    customer_id: int | None = None,
    appointment_id: int | None = None,
    commit: bool = True,
) -> Task:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    if task_type not in VALID_TASK_TYPES:
        raise ValidationError(f"invalid task_type: {task_type}")
    if priority not in VALID_PRIORITIES:
        raise ValidationError(f"invalid priority: {priority}")
    if customer_id is not None:
        require_owned(Customer, customer_id, business_id)
    if appointment_id is not None:
        require_owned(Appointment, appointment_id, business_id)

    try:
        due = normalize_datetime(due_date)
    except ValueError:
        raise ValidationError("due_date must be an ISO-8601 datetime")

    task = Task(
        business_id=business_id,
        title=title[:255],
        description=description,
        task_type=task_type,
        priority=priority,
        status=TASK_PENDING,
        due_date=due,
        customer_id=customer_id,
        appointment_id=appointment_id,
    )
    db.session.add(task)
    db.session.flush()
    if commit:
        db.session.commit()
    return task


def complete_task(business_id: int, task_id: int) -> Task:
    task = require_owned(Task, task_id, business_id)
    if task.status != TASK_PENDING:
        raise InvalidStateError(f"task is already {task.status}")
    task.status = TASK_COMPLETED
    task.completed_at = utcnow()
    db.session.commit()
    return task


def list_tasks(
    business_id: int,
    *,
    status: str | None = None,
    task_type: str | None = None,
    limit: int = 200,
) -> list[Task]:
    q = scoped_query(Task, business_id)
    if status:
        q = q.filter(Task.status == status)
    if task_type:
        q = q.filter(Task.task_type == task_type)
    # Tasks without a due date sort last
    return (
        q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc())
        .limit(limit)
        .all()
    )


def handle_appointment_completed(event: dict) -> Task | None:
    """
    React to an appointment.completed event with a post-service follow-up task.

    Returns the new task, or None when one already exists for the appointment.
    """
    business_id = event["business_id"]
    appointment_id = event["appointment_id"]

    existing = (
        db.session.query(Task.id)
        .filter_by(business_id=business_id, appointment_id=appointment_id, task_type=TASK_POST_SERVICE)
        .first()
    )
    if existing:
        return None

    completed_at = normalize_datetime(event.get("completed_at")) or utcnow()
    customer_name = event.get("customer_name") or "customer"
    return create_task(
        business_id,
        title=f"Post-service follow-up: {customer_name}",
        description=(
            f"Contact {customer_name} about \"{event.get('title', 'the appointment')}\" "
            "to check satisfaction and ask for a review."
        ),
        task_type=TASK_POST_SERVICE,
        priority="medium",
        due_date=completed_at + timedelta(hours=24),
        customer_id=event.get("customer_id"),
        appointment_id=appointment_id,
    )


def generate_inactive_customer_tasks(
    now=None,
    inactive_days: int | None = None,
    *,
    business_id: int | None = None,
) -> list[Task]:
    """
    Create a reactivation task for each customer whose latest non-cancelled
    appointment ended before now - inactive_days (or who never had one).

    Skips customers that already have a pending reactivation task.
    """
    now = normalize_datetime(now) or utcnow()
    if inactive_days is None:
        inactive_days = int(current_app.config.get("INACTIVE_CUSTOMER_DAYS", 60))
    cutoff = now - timedelta(days=inactive_days)

    last_visit = (
        db.session.query(
            Appointment.customer_id.label("customer_id"),
            func.max(Appointment.end_time).label("last_end"),
        )
        .filter(Appointment.status != APPOINTMENT_CANCELLED)
        .group_by(Appointment.customer_id)
        .subquery()
    )

    q = (
        db.session.query(Customer, last_visit.c.last_end)
        .outerjoin(last_visit, last_visit.c.customer_id == Customer.id)
        .filter(db.or_(last_visit.c.last_end.is_(None), last_visit.c.last_end < cutoff))
    )
    if business_id is not None:
        q = q.filter(Customer.business_id == business_id)

    created = []
    for customer, last_end in q.order_by(Customer.id.asc()).all():
        pending = (
            db.session.query(Task.id)
            .filter_by(
                business_id=customer.business_id,
                customer_id=customer.id,
                task_type=TASK_REACTIVATION,
                status=TASK_PENDING,
            )
            .first()
        )
        if pending:
            continue

        task = create_task(
            customer.business_id,
            title=f"Reactivate customer: {customer.name}",
            description=(
                f"No visit in more than {inactive_days} days. "
                "Reach out with a promotion or offer to book a new service."
            ),
            task_type=TASK_REACTIVATION,
            priority="medium",
            due_date=now,
            customer_id=customer.id,
            commit=False,
        )
        created.append(task)

    db.session.commit()
    logger.info("Inactive customer scan created %s reactivation task(s)", len(created))
    return created
