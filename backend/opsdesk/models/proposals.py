from __future__ import annotations

from ..extensions import db
from opsdesk.money import as_json_number
from opsdesk.time_utils import to_utc_z


class Proposal(db.Model):
    """
    Quotation sent to a customer before scheduling/billing.

    AMOUNTS (all derived from services + percentages, see proposal_service):
    - total_amount    = sum(quantity * unit_price)
    - final_amount    = total_amount * (1 - discount_percentage / 100)
    - deposit_amount  = final_amount * deposit_percentage / 100

    appointment_id is set exactly once, by schedule_from_proposal.
    """
    __tablename__ = "proposals"
    __table_args__ = (
        db.Index("ix_proposals_business_status", "business_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Ordered list of {"description", "quantity", "unit_price"} (numbers stored as strings)
    services = db.Column(db.JSON, nullable=False, default=list)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    final_amount = db.Column(db.Numeric(12, 2), nullable=False)
    deposit_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    deposit_amount = db.Column(db.Numeric(12, 2), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    follow_up_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("proposals", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "title": self.title,
            "description": self.description,
            "services": list(self.services or []),
            "total_amount": as_json_number(self.total_amount),
            "discount_percentage": as_json_number(self.discount_percentage),
            "final_amount": as_json_number(self.final_amount),
            "deposit_percentage": as_json_number(self.deposit_percentage),
            "deposit_amount": as_json_number(self.deposit_amount),
            "status": self.status,
            "valid_until": to_utc_z(self.valid_until),
            "sent_at": to_utc_z(self.sent_at),
            "viewed_at": to_utc_z(self.viewed_at),
            "accepted_at": to_utc_z(self.accepted_at),
            "rejected_at": to_utc_z(self.rejected_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "follow_up_sent_at": to_utc_z(self.follow_up_sent_at),
            "appointment_id": self.appointment_id,
            "created_at": to_utc_z(self.created_at),
        }
