# backend/opsdesk/routes/auth.py
"""
Authentication routes.

POST /api/auth/register  create a business with its owner, returns a token
POST /api/auth/login     email + password, returns a token
POST /api/auth/logout    revokes the bearer token
GET  /api/auth/me        current user and business
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import DomainError
from ..services import auth_service, session_service
from ..decorators import require_auth
from opsdesk.time_utils import to_utc_z


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _session_payload(user, token: str, session) -> dict:
    return {
        "user": user.to_dict(),
        "business": user.business.to_dict(),
        "token": token,
        "expires_at": to_utc_z(session.expires_at),
    }


@auth_bp.post("/register")
def register_route():
    """
    Create a business and its first user.

    Request body:
    {
        "business_name": "Studio Bella",
        "email": "owner@studio.com",
        "password": "secret123",
        "name": "Ana"            (optional)
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        business, user = auth_service.create_business_with_owner(
            business_name=data.get("business_name"),
            email=data.get("email"),
            password=data.get("password"),
            owner_name=data.get("name"),
        )
        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify(_session_payload(user, token, session)), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to register business")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    data = request.get_json(silent=True) or {}
    email = data.get("email")
    password = data.get("password")
    if not email or not password:
        return jsonify({"error": "email and password required"}), 400

    try:
        user = auth_service.authenticate(email, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        session, token = session_service.create_session(
            user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )
        return jsonify(_session_payload(user, token, session)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to login user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    try:
        token = request.headers.get("Authorization", "").split(" ", 1)[1].strip()
        session_service.revoke_session(token)
        return jsonify({"success": True}), 200
    except Exception:
        current_app.logger.exception("Failed to logout user")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_auth
def me_route():
    user = g.current_user
    return jsonify({"user": user.to_dict(), "business": user.business.to_dict()}), 200
