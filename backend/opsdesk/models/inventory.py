from __future__ import annotations

from ..extensions import db
from opsdesk.money import as_json_number
from opsdesk.time_utils import to_utc_z


MOVEMENT_IN = "in"
MOVEMENT_OUT = "out"
MOVEMENT_ADJUSTMENT = "adjustment"
VALID_MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT)


class InventoryItem(db.Model):
    """
    Stock-keeping item (consumable, product, kit).

    current_stock is a stored balance, but it is only ever written by the
    movement applier in inventory_service, together with a StockMovement row.
    version_id makes a lost update between two movements fail loudly.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.Index("ix_inventory_items_business_name", "business_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="un")

    current_stock = db.Column(db.Numeric(12, 3), nullable=False, default=0)
    minimum_stock = db.Column(db.Numeric(12, 3), nullable=False, default=0)

    cost_price = db.Column(db.Numeric(12, 2), nullable=True)
    sale_price = db.Column(db.Numeric(12, 2), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} name={self.name!r} stock={self.current_stock}>"

    @property
    def is_low_stock(self) -> bool:
        return self.minimum_stock > 0 and self.current_stock <= self.minimum_stock

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "name": self.name,
            "unit": self.unit,
            "current_stock": as_json_number(self.current_stock),
            "minimum_stock": as_json_number(self.minimum_stock),
            "cost_price": as_json_number(self.cost_price),
            "sale_price": as_json_number(self.sale_price),
            "is_active": self.is_active,
            "is_low_stock": self.is_low_stock,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Immutable record of one stock change.

    previous_stock/new_stock are captured under the item row lock, so
    consecutive movements on an item chain exactly:
    movement[n].previous_stock == movement[n-1].new_stock.

    quantity is always the magnitude for in/out; for adjustment it is the
    signed delta as supplied.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_item_created", "item_id", "id"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Numeric(12, 3), nullable=False)
    previous_stock = db.Column(db.Numeric(12, 3), nullable=False)
    new_stock = db.Column(db.Numeric(12, 3), nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    item = db.relationship("InventoryItem", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "type": self.type,
            "quantity": as_json_number(self.quantity),
            "previous_stock": as_json_number(self.previous_stock),
            "new_stock": as_json_number(self.new_stock),
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
