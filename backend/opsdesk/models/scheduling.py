from __future__ import annotations

from ..extensions import db
from opsdesk.money import as_json_number
from opsdesk.time_utils import to_utc_z


APPOINTMENT_SCHEDULED = "scheduled"
APPOINTMENT_COMPLETED = "completed"
APPOINTMENT_CANCELLED = "cancelled"

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_CANCELLED = "cancelled"


class Appointment(db.Model):
    """
    A scheduled service for a customer.

    LIFECYCLE: scheduled -> completed | cancelled. Both terminal.

    proposal_id is unique so that scheduling from the same proposal twice can
    never produce two appointments, even under concurrent requests.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        db.UniqueConstraint("proposal_id", name="uq_appointments_proposal"),
        db.CheckConstraint("end_time > start_time", name="ck_appointments_time_order"),
        db.Index("ix_appointments_business_start", "business_id", "start_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=APPOINTMENT_SCHEDULED, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)

    price = db.Column(db.Numeric(12, 2), nullable=True)
    deposit_amount = db.Column(db.Numeric(12, 2), nullable=True)
    payment_method = db.Column(db.String(32), nullable=True)

    proposal_id = db.Column(db.Integer, db.ForeignKey("proposals.id", use_alter=True, name="fk_appointments_proposal_id"), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    post_service_message_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("appointments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "description": self.description,
            "notes": self.notes,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "status": self.status,
            "payment_status": self.payment_status,
            "price": as_json_number(self.price),
            "deposit_amount": as_json_number(self.deposit_amount),
            "payment_method": self.payment_method,
            "proposal_id": self.proposal_id,
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_at": to_utc_z(self.created_at),
        }


class Task(db.Model):
    """
    Follow-up work item for the business owner.

    TASK TYPES:
    - general: created by hand
    - post_service: generated when an appointment completes (one per appointment)
    - reactivation: generated for customers without recent visits
      (at most one pending per customer)
    """
    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_business_status_due", "business_id", "status", "due_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    task_type = db.Column(db.String(16), nullable=False, default="general", index=True)
    priority = db.Column(db.String(16), nullable=False, default="medium")  # low, medium, high
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending, completed

    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "business_id": self.business_id,
            "title": self.title,
            "description": self.description,
            "task_type": self.task_type,
            "priority": self.priority,
            "status": self.status,
            "due_date": to_utc_z(self.due_date),
            "completed_at": to_utc_z(self.completed_at),
            "customer_id": self.customer_id,
            "appointment_id": self.appointment_id,
            "created_at": to_utc_z(self.created_at),
        }


class NotificationView(db.Model):
    """
    Marker that a notification was already surfaced to a user.

    Presence of (user, type, id) means "seen"; the unique constraint makes
    marking idempotent under concurrent requests.
    """
    __tablename__ = "notification_views"
    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "notification_type", "notification_id",
            name="uq_notification_views_user_type_id",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    notification_type = db.Column(db.String(32), nullable=False)  # appointment, task
    notification_id = db.Column(db.Integer, nullable=False)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "notification_type": self.notification_type,
            "notification_id": self.notification_id,
            "viewed_at": to_utc_z(self.viewed_at),
        }
