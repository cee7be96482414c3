# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every action must be attributable to a user of one business. Uses
bcrypt for password hashing and validates password strength.

MULTI-TENANT: Users belong to exactly one business (business_id). Email is
the login identifier and is unique across all businesses.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12)
- Minimum 8 characters, at least one letter and one digit
- Session tokens managed separately (see session_service.py)
- Authentication rejects inactive users and inactive businesses
"""

from __future__ import annotations

import re

import bcrypt
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ValidationError, InvalidStateError
from ..models import Business, User
from opsdesk.time_utils import utcnow


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify password against bcrypt hash."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in DB
        return False


def create_business_with_owner(
    *,
    business_name: str,
    email: str,
    password: str,
    owner_name: str | None = None,
) -> tuple[Business, User]:
    """
    Create a new tenant together with its first user.

    Raises ValidationError on bad input and InvalidStateError when the email
    is already registered.
    """
    business_name = (business_name or "").strip()
    email = (email or "").strip().lower()
    if not business_name:
        raise ValidationError("business_name is required")
    if not email or "@" not in email:
        raise ValidationError("a valid email is required")

    password_hash = hash_password(password)

    business = Business(name=business_name, is_active=True)
    db.session.add(business)
    db.session.flush()

    user = User(
        business_id=business.id,
        email=email,
        name=owner_name,
        password_hash=password_hash,
        is_active=True,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise InvalidStateError("email already registered")

    return business, user


def authenticate(email: str, password: str) -> User | None:
    """
    Authenticate user by email and password.

    Returns the User when credentials are valid and both the user and its
    business are active, otherwise None.
    """
    email = (email or "").strip().lower()
    user = db.session.query(User).filter_by(email=email).first()
    if not user:
        return None

    if not user.is_active:
        return None

    business = db.session.query(Business).filter_by(id=user.business_id).first()
    if not business or not business.is_active:
        return None

    if not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
