# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

# backend/opsdesk/services/inventory_service.py

from __future__ import annotations

import logging
from decimal import Decimal

from ..extensions import db
from ..errors import InvalidQuantityError, ValidationError
from ..models import InventoryItem, StockMovement
from ..models.inventory import MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUSTMENT, VALID_MOVEMENT_TYPES
from ..money import quantize_money, quantize_quantity
from opsdesk.time_utils import utcnow
from .concurrency import run_with_retry
from .ledger_service import append_ledger_event
from .tenant_service import require_owned, scoped_query
"""
OpsDesk Inventory Invariants (authoritative)

Stock model:
- current_stock is a stored balance, written ONLY by apply_movement, and
  always together with exactly one StockMovement row in the same transaction.
- The item row is locked (SELECT ... FOR UPDATE) and versioned (version_id)
  while a movement is computed, so movements on one item serialize and chain:
    movement[n].previous_stock == movement[n-1].new_stock
- final stock == initial stock + signed sum of all movements.

Movement types:
- in:         quantity > 0, new = previous + quantity
- out:        quantity > 0, new = previous - quantity
- adjustment: quantity is a signed, non-zero delta, new = previous + quantity

Tolerances:
- Negative resulting stock is allowed (consumption recorded before the
  matching purchase). Low-stock is a read-only scan, never a side effect of
  a movement.

Errors are raised before anything is written, so a failed movement leaves
the surrounding transaction untouched.
"""

logger = logging.getLogger(__name__)


def create_item(
    business_id: int,
    *,
    name: str,
    unit: str = "un",
    current_stock=0,
    minimum_stock=0,
    cost_price=None,
    sale_price=None,
) -> InventoryItem:
    """
    Create an item. A non-zero opening balance is recorded as an
    adjustment movement so the movement history sums to current_stock.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")

    opening = quantize_quantity(current_stock)
    item = InventoryItem(
        business_id=business_id,
        name=name,
        unit=unit or "un",
        current_stock=Decimal("0.000"),
        minimum_stock=quantize_quantity(minimum_stock),
        cost_price=quantize_money(cost_price) if cost_price is not None else None,
        sale_price=quantize_money(sale_price) if sale_price is not None else None,
        is_active=True,
    )
    db.session.add(item)
    db.session.flush()

    if opening != 0:
        _write_movement(item, opening, MOVEMENT_ADJUSTMENT, reason="Opening balance")

    db.session.commit()
    return item


def list_items(business_id: int, *, include_inactive: bool = False) -> list[InventoryItem]:
    q = scoped_query(InventoryItem, business_id)
    if not include_inactive:
        q = q.filter(InventoryItem.is_active.is_(True))
    return q.order_by(InventoryItem.name.asc(), InventoryItem.id.asc()).all()


def _signed_delta(quantity: Decimal, movement_type: str) -> Decimal:
    if movement_type not in VALID_MOVEMENT_TYPES:
        raise ValidationError(f"invalid movement type: {movement_type}")
    if movement_type == MOVEMENT_ADJUSTMENT:
        if quantity == 0:
            raise InvalidQuantityError("adjustment quantity must be non-zero")
        return quantity
    if quantity <= 0:
        raise InvalidQuantityError("quantity must be > 0")
    return quantity if movement_type == MOVEMENT_IN else -quantity


def _write_movement(
    item: InventoryItem,
    quantity: Decimal,
    movement_type: str,
    *,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_user_id: int | None = None,
) -> StockMovement:
    delta = _signed_delta(quantity, movement_type)
    previous = Decimal(item.current_stock or 0)
    new = previous + delta

    movement = StockMovement(
        business_id=item.business_id,
        item_id=item.id,
        type=movement_type,
        quantity=quantity,
        previous_stock=previous,
        new_stock=new,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        created_by_user_id=actor_user_id,
        created_at=utcnow(),
    )
    item.current_stock = new
    db.session.add(movement)
    db.session.flush()

    if new < 0:
        logger.info("Item %s stock went negative (%s) after %s movement", item.id, new, movement_type)

    return movement


def apply_movement(
    business_id: int,
    item_id: int,
    quantity,
    movement_type: str,
    *,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> StockMovement:
    """
    Apply one stock movement under the item row lock.

    With commit=False the movement joins the caller's transaction and the
    caller is responsible for retry and commit (used by the completion
    orchestrator).

    Raises:
        NotFoundError: item missing
        ForbiddenError: item belongs to another business
        InvalidQuantityError: q <= 0 for in/out, q == 0 for adjustment
        ValidationError: unknown movement type
    """
    qty = quantize_quantity(quantity)
    _signed_delta(qty, movement_type)

    def _op():
        item = require_owned(InventoryItem, item_id, business_id, lock=True, label="Inventory item")
        movement = _write_movement(
            item,
            qty,
            movement_type,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_user_id=actor_user_id,
        )
        append_ledger_event(
            business_id=business_id,
            event_type="inventory.movement",
            entity_type="inventory_item",
            entity_id=item.id,
            actor_user_id=actor_user_id,
            occurred_at=movement.created_at,
            payload={
                "movement_id": movement.id,
                "type": movement_type,
                "quantity": str(qty),
                "new_stock": str(movement.new_stock),
            },
        )
        if commit:
            db.session.commit()
        return movement

    if not commit:
        return _op()
    return run_with_retry(_op)


def list_movements(business_id: int, item_id: int, *, limit: int = 200) -> list[StockMovement]:
    """Movement history for one item, oldest first (the order they chain in)."""
    require_owned(InventoryItem, item_id, business_id, label="Inventory item")
    return (
        db.session.query(StockMovement)
        .filter_by(business_id=business_id, item_id=item_id)
        .order_by(StockMovement.id.asc())
        .limit(limit)
        .all()
    )


def find_low_stock_items(business_id: int) -> list[InventoryItem]:
    """
    Read-only scan: active items with minimum_stock > 0 and
    current_stock <= minimum_stock.
    """
    return (
        scoped_query(InventoryItem, business_id)
        .filter(
            InventoryItem.is_active.is_(True),
            InventoryItem.minimum_stock > 0,
            InventoryItem.current_stock <= InventoryItem.minimum_stock,
        )
        .order_by(InventoryItem.name.asc())
        .all()
    )
