# Overview: Pytest coverage for session and auth behavior.

from datetime import timedelta

import pytest

from opsdesk.errors import InvalidStateError
from opsdesk.services import auth_service, session_service
from opsdesk.services.auth_service import PasswordValidationError


class TestPasswords:
    @pytest.mark.parametrize("password", ["short1", "allletters", "12345678", ""])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(PasswordValidationError):
            auth_service.validate_password_strength(password)

    def test_hash_roundtrip(self):
        hashed = auth_service.hash_password("Password123")

        assert auth_service.verify_password("Password123", hashed)
        assert not auth_service.verify_password("Password124", hashed)
        assert not auth_service.verify_password("Password123", "not-a-hash")


class TestBusinessRegistration:
    def test_owner_email_normalized(self, db_session):
        business, user = auth_service.create_business_with_owner(
            business_name="Studio C", email=" Owner@C.com ", password="Password123"
        )

        assert user.email == "owner@c.com"
        assert user.business_id == business.id
        assert auth_service.authenticate("OWNER@c.com", "Password123").id == user.id

    def test_duplicate_email(self, db_session, user_a):
        with pytest.raises(InvalidStateError):
            auth_service.create_business_with_owner(
                business_name="Dup", email=user_a.email, password="Password123"
            )

    def test_inactive_business_cannot_login(self, db_session, business_a, user_a):
        business_a.is_active = False
        db_session.commit()

        assert auth_service.authenticate(user_a.email, "Password123") is None


class TestSessions:
    def test_session_carries_business(self, db_session, business_a, user_a):
        _, token = session_service.create_session(user_a.id)

        context = session_service.validate_session(token)

        assert context.business_id == business_a.id
        assert context.user.id == user_a.id

    def test_only_hash_is_stored(self, db_session, user_a):
        session, token = session_service.create_session(user_a.id)

        assert session.token_hash == session_service.hash_token(token)
        assert session.token_hash != token

    def test_idle_session_revoked(self, db_session, user_a):
        session, token = session_service.create_session(user_a.id)
        session.last_used_at = session.last_used_at - timedelta(hours=3)
        db_session.commit()

        assert session_service.validate_session(token) is None
        db_session.refresh(session)
        assert session.is_revoked is True

    def test_expired_session_rejected(self, db_session, user_a):
        session, token = session_service.create_session(user_a.id)
        session.expires_at = session.created_at - timedelta(seconds=1)
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_deactivated_user_loses_session(self, db_session, user_a):
        _, token = session_service.create_session(user_a.id)
        user_a.is_active = False
        db_session.commit()

        assert session_service.validate_session(token) is None

    def test_revoke(self, db_session, user_a):
        _, token = session_service.create_session(user_a.id)

        assert session_service.revoke_session(token) is True
        assert session_service.revoke_session(token) is False
        assert session_service.validate_session(token) is None
