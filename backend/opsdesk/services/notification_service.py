# Overview: Service-layer operations for notifications; encapsulates business logic and database work.

"""
Notification bell: what the user has not seen yet.

A notification is an appointment starting today or a pending task due by
the end of tomorrow. "Seen" is the presence of a NotificationView row for
(user, type, id); marking is insert-if-absent, and the unique constraint
absorbs concurrent duplicates (IntegrityError -> retry, which then finds the
row and does nothing).
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ValidationError
from ..models import Appointment, NotificationView, Task
from ..models.scheduling import APPOINTMENT_CANCELLED
from opsdesk.time_utils import utcnow, day_bounds, normalize_datetime, to_utc_z
from .concurrency import run_with_retry
from .tenant_service import require_owned

TYPE_APPOINTMENT = "appointment"
TYPE_TASK = "task"
NOTIFICATION_TYPES = (TYPE_APPOINTMENT, TYPE_TASK)

MAX_TASKS = 10


def _key(notification_type: str, notification_id: int) -> str:
    return f"{notification_type}-{notification_id}"


def _seen_keys(user_id: int) -> set[str]:
    rows = db.session.query(NotificationView.notification_type, NotificationView.notification_id).filter_by(
        user_id=user_id
    ).all()
    return {_key(t, i) for t, i in rows}


def unseen(business_id: int, user_id: int, now=None) -> dict:
    """Return {"items": [...], "count": n} of notifications the user has not seen."""
    now = normalize_datetime(now) or utcnow()
    start, end = day_bounds(now)
    seen = _seen_keys(user_id)

    appointments = (
        db.session.query(Appointment)
        .filter(
            Appointment.business_id == business_id,
            Appointment.start_time >= start,
            Appointment.start_time < end,
            Appointment.status != APPOINTMENT_CANCELLED,
        )
        .order_by(Appointment.start_time.asc())
        .all()
    )
    tasks = (
        db.session.query(Task)
        .filter(
            Task.business_id == business_id,
            Task.status == "pending",
            Task.due_date.isnot(None),
            Task.due_date < end + timedelta(days=1),
        )
        .order_by(Task.due_date.asc())
        .limit(MAX_TASKS)
        .all()
    )

    items = []
    for a in appointments:
        key = _key(TYPE_APPOINTMENT, a.id)
        if key not in seen:
            items.append({"type": TYPE_APPOINTMENT, "id": a.id, "key": key, "title": a.title, "at": to_utc_z(a.start_time)})
    for t in tasks:
        key = _key(TYPE_TASK, t.id)
        if key not in seen:
            items.append({"type": TYPE_TASK, "id": t.id, "key": key, "title": t.title, "at": to_utc_z(t.due_date)})

    return {"items": items, "count": len(items)}


def _parse_item(item) -> tuple[str, int]:
    """Accept {"type", "id"} or a "type-id" key."""
    if isinstance(item, dict):
        notification_type, raw_id = item.get("type"), item.get("id")
    elif isinstance(item, str) and "-" in item:
        notification_type, raw_id = item.rsplit("-", 1)
    else:
        raise ValidationError("notification must be {type, id} or 'type-id'")
    if notification_type not in NOTIFICATION_TYPES:
        raise ValidationError(f"invalid notification type: {notification_type}")
    try:
        return notification_type, int(raw_id)
    except (TypeError, ValueError):
        raise ValidationError("notification id must be an integer")


def mark_seen(business_id: int, user_id: int, items) -> int:
    """
    Mark notifications as seen. Returns how many new rows were inserted;
    re-marking is a no-op returning 0 for those items.
    """
    parsed = []
    for item in items or []:
        notification_type, notification_id = _parse_item(item)
        model = Appointment if notification_type == TYPE_APPOINTMENT else Task
        require_owned(model, notification_id, business_id)
        if (notification_type, notification_id) not in parsed:
            parsed.append((notification_type, notification_id))

    def _op():
        inserted = 0
        for notification_type, notification_id in parsed:
            exists = (
                db.session.query(NotificationView.id)
                .filter_by(user_id=user_id, notification_type=notification_type, notification_id=notification_id)
                .first()
            )
            if exists:
                continue
            db.session.add(NotificationView(
                business_id=business_id,
                user_id=user_id,
                notification_type=notification_type,
                notification_id=notification_id,
                viewed_at=utcnow(),
            ))
            inserted += 1
        db.session.commit()
        return inserted

    return run_with_retry(_op, retry_on=(IntegrityError,))
