from __future__ import annotations

from ..extensions import db
from opsdesk.money import as_json_number
from opsdesk.time_utils import to_utc_z


SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_PAYMENT_FAILED = "payment_failed"
SUBSCRIPTION_SUSPENDED = "suspended"
SUBSCRIPTION_CANCELLED = "cancelled"

FREQUENCY_WEEKLY = "weekly"
FREQUENCY_BIWEEKLY = "biweekly"
FREQUENCY_MONTHLY = "monthly"
VALID_FREQUENCIES = (FREQUENCY_WEEKLY, FREQUENCY_BIWEEKLY, FREQUENCY_MONTHLY)


class SubscriptionPlan(db.Model):
    """Recurring plan a business sells to its customers."""
    __tablename__ = "subscription_plans"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    billing_frequency = db.Column(db.String(16), nullable=False, default=FREQUENCY_MONTHLY)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "description": self.description,
            "price": as_json_number(self.price),
            "billing_frequency": self.billing_frequency,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Subscription(db.Model):
    """
    A customer's enrollment in a plan.

    STATE MACHINE:
        active <-> payment_failed -> suspended
        active | payment_failed | suspended -> cancelled (terminal)

    failed_payments_count resets to 0 on every successful renewal/payment.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default=SUBSCRIPTION_ACTIVE, index=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    next_billing_date = db.Column(db.DateTime(timezone=True), nullable=False)
    last_billing_date = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_attempt = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_payments_count = db.Column(db.Integer, nullable=False, default=0)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    plan = db.relationship("SubscriptionPlan", backref=db.backref("subscriptions", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("subscriptions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "start_date": to_utc_z(self.start_date),
            "next_billing_date": to_utc_z(self.next_billing_date),
            "last_billing_date": to_utc_z(self.last_billing_date),
            "last_payment_attempt": to_utc_z(self.last_payment_attempt),
            "failed_payments_count": self.failed_payments_count,
            "cancelled_at": to_utc_z(self.cancelled_at),
        }
