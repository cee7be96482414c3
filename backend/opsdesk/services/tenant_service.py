"""
Multi-Tenant Service: Tenant Validation and Scoping Helpers

WHY: Centralize tenant validation logic for reuse across services and routes.
Every operation is scoped to a business, and cross-business access must be
explicitly denied.

SECURITY INVARIANTS:
1. Every service call takes business_id explicitly (no ambient session)
2. IDs from client input are validated against that business_id
3. A row that exists under another business raises ForbiddenError
4. Cross-tenant access attempts are logged

USAGE:
    from opsdesk.services.tenant_service import require_owned

    appointment = require_owned(Appointment, appointment_id, business_id, lock=True)
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..errors import NotFoundError, ForbiddenError
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)


def require_owned(model, entity_id: int, business_id: int, *, lock: bool = False, label: str | None = None):
    """
    Load a business-owned row or raise.

    Raises:
        NotFoundError if no row has that id
        ForbiddenError if the row belongs to a different business
    """
    name = label or model.__name__
    q = db.session.query(model).filter(model.id == entity_id)
    if lock:
        q = lock_for_update(q)
    row = q.first()
    if row is None:
        raise NotFoundError(f"{name} not found")
    if row.business_id != business_id:
        logger.warning(
            "Cross-tenant access denied: %s id=%s owner=%s requested_by=%s",
            name, entity_id, row.business_id, business_id,
        )
        raise ForbiddenError(f"{name} belongs to another business")
    return row


def scoped_query(model, business_id: int):
    """Base query filtered to one business."""
    return db.session.query(model).filter(model.business_id == business_id)
