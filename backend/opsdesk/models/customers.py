from __future__ import annotations

from ..extensions import db
from opsdesk.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer master data (CRM row).

    Only the fields the core workflows read are modeled here: the name for
    charge/payer info and the contact channels for outbound messages.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_business_name", "business_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyCard(db.Model):
    """
    Stamp card: one per (business, customer).

    INVARIANT: 0 <= current_stamps < stamps_required at rest. An increment that
    reaches stamps_required is folded into a reward immediately
    (rewards_redeemed += 1, current_stamps = 0).

    Created lazily on the first completed appointment; never deleted.
    """
    __tablename__ = "loyalty_cards"
    __table_args__ = (
        db.UniqueConstraint("business_id", "customer_id", name="uq_loyalty_cards_business_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    current_stamps = db.Column(db.Integer, nullable=False, default=0)
    stamps_required = db.Column(db.Integer, nullable=False, default=5)
    total_visits = db.Column(db.Integer, nullable=False, default=0)
    rewards_redeemed = db.Column(db.Integer, nullable=False, default=0)
    last_visit_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("loyalty_card", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "current_stamps": self.current_stamps,
            "stamps_required": self.stamps_required,
            "total_visits": self.total_visits,
            "rewards_redeemed": self.rewards_redeemed,
            "last_visit_at": to_utc_z(self.last_visit_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LoyaltyStampEvent(db.Model):
    """
    Append-only ledger of stamp and reward events.

    EVENT TYPES:
    - stamp: one completed visit
    - reward: the card was filled and reset

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_stamp_events"
    __table_args__ = (
        db.Index("ix_loyalty_events_card_occurred", "loyalty_card_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    loyalty_card_id = db.Column(db.Integer, db.ForeignKey("loyalty_cards.id"), nullable=False, index=True)

    event_type = db.Column(db.String(16), nullable=False)
    stamps_after = db.Column(db.Integer, nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    loyalty_card = db.relationship("LoyaltyCard", backref=db.backref("events", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loyalty_card_id": self.loyalty_card_id,
            "event_type": self.event_type,
            "stamps_after": self.stamps_after,
            "appointment_id": self.appointment_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
