# Overview: Service-layer operations for customers; encapsulates business logic and database work.

from __future__ import annotations

from ..extensions import db
from ..errors import ValidationError
from ..models import Customer
from .tenant_service import require_owned, scoped_query


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def create_customer(business_id: int, *, name: str, email: str | None = None, phone: str | None = None) -> Customer:
    name = _clean(name)
    if not name:
        raise ValidationError("name is required")
    email = _clean(email)
    if email and "@" not in email:
        raise ValidationError("invalid email")

    customer = Customer(business_id=business_id, name=name[:255], email=email, phone=_clean(phone))
    db.session.add(customer)
    db.session.commit()
    return customer


def update_customer(business_id: int, customer_id: int, patch: dict) -> Customer:
    customer = require_owned(Customer, customer_id, business_id)
    if "name" in patch:
        name = _clean(patch["name"])
        if not name:
            raise ValidationError("name cannot be empty")
        customer.name = name[:255]
    if "email" in patch:
        email = _clean(patch["email"])
        if email and "@" not in email:
            raise ValidationError("invalid email")
        customer.email = email
    if "phone" in patch:
        customer.phone = _clean(patch["phone"])
    db.session.commit()
    return customer


def get_customer(business_id: int, customer_id: int) -> Customer:
    return require_owned(Customer, customer_id, business_id)


def list_customers(business_id: int, *, search: str | None = None) -> list[Customer]:
    q = scoped_query(Customer, business_id)
    if search:
        q = q.filter(Customer.name.ilike(f"%{search}%"))
    return q.order_by(Customer.name.asc()).all()
