from __future__ import annotations

from ..extensions import db
from opsdesk.money import as_json_number
from opsdesk.time_utils import to_utc_z


TRANSACTION_INCOME = "income"
TRANSACTION_EXPENSE = "expense"

TRANSACTION_PENDING = "pending"
TRANSACTION_COMPLETED = "completed"
TRANSACTION_CANCELLED = "cancelled"

CHARGE_PENDING = "pending"
CHARGE_PAID = "paid"
CHARGE_EXPIRED = "expired"
CHARGE_CANCELLED = "cancelled"


class FinancialTransaction(db.Model):
    """
    Ledger line for money in or out.

    INVARIANTS:
    - amount > 0 (direction is carried by type, never by sign)
    - once status='completed' the row is never edited; corrections are new rows
    - pending rows (e.g. awaiting a PIX payment) may move to completed or cancelled
    """
    __tablename__ = "financial_transactions"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_financial_transactions_amount_positive"),
        db.Index("ix_financial_transactions_business_date", "business_id", "transaction_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    payment_method = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=TRANSACTION_COMPLETED, index=True)
    category = db.Column(db.String(64), nullable=True)

    transaction_date = db.Column(db.DateTime(timezone=True), nullable=False)

    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    pix_charge_id = db.Column(db.Integer, db.ForeignKey("pix_charges.id", use_alter=True, name="fk_financial_transactions_pix_charge_id"), nullable=True, index=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "type": self.type,
            "amount": as_json_number(self.amount),
            "description": self.description,
            "payment_method": self.payment_method,
            "status": self.status,
            "category": self.category,
            "transaction_date": to_utc_z(self.transaction_date),
            "appointment_id": self.appointment_id,
            "subscription_id": self.subscription_id,
            "pix_charge_id": self.pix_charge_id,
            "created_at": to_utc_z(self.created_at),
        }


class PixCharge(db.Model):
    """
    Asynchronous PIX (QR code) charge.

    LIFECYCLE: pending -> paid | expired | cancelled. All three are terminal;
    once paid, expires_at no longer matters.

    A charge may be linked to an appointment, a subscription (renewal or
    recurring billing), and the pending FinancialTransaction it settles.
    Retry charges created after an expiry point back at original_charge_id.
    """
    __tablename__ = "pix_charges"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_pix_charges_amount_positive"),
        db.Index("ix_pix_charges_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    txid = db.Column(db.String(128), nullable=False, unique=True, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    description = db.Column(db.String(255), nullable=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=True)

    qr_code = db.Column(db.Text, nullable=True)
    redirect_url = db.Column(db.String(512), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=CHARGE_PENDING, index=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=True, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id"), nullable=True, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("financial_transactions.id"), nullable=True)

    reminders_sent = db.Column(db.Integer, nullable=False, default=0)
    last_reminder_at = db.Column(db.DateTime(timezone=True), nullable=True)

    retry_attempt = db.Column(db.Integer, nullable=False, default=0)
    original_charge_id = db.Column(db.Integer, db.ForeignKey("pix_charges.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "txid": self.txid,
            "amount": as_json_number(self.amount),
            "description": self.description,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "qr_code": self.qr_code,
            "redirect_url": self.redirect_url,
            "status": self.status,
            "expires_at": to_utc_z(self.expires_at),
            "paid_at": to_utc_z(self.paid_at),
            "appointment_id": self.appointment_id,
            "subscription_id": self.subscription_id,
            "transaction_id": self.transaction_id,
            "reminders_sent": self.reminders_sent,
            "last_reminder_at": to_utc_z(self.last_reminder_at),
            "retry_attempt": self.retry_attempt,
            "original_charge_id": self.original_charge_id,
            "created_at": to_utc_z(self.created_at),
        }
