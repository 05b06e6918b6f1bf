from datetime import datetime, timedelta

import auth
import models
from conftest import make_user


def test_pin_hash_and_verify_roundtrip():
    """A hashed PIN verifies, a different PIN does not."""
    pin = "482913"

    hashed = auth.get_pin_hash(pin)

    assert hashed != pin
    assert auth.verify_pin(pin, hashed) is True
    assert auth.verify_pin("000000", hashed) is False


def test_verify_pin_without_hash_is_false():
    assert auth.verify_pin("482913", None) is False
    assert auth.verify_pin("", auth.get_pin_hash("482913")) is False
    assert auth.verify_pin("482913", "not-a-known-hash") is False


def test_create_and_verify_access_token_contains_sub_and_role():
    data = {"sub": "42", "role": auth.ROLE_KITCHEN}

    token = auth.create_access_token(data)
    assert isinstance(token, str)
    assert len(token.split(".")) == 3

    payload = auth.verify_token(token)
    assert payload["sub"] == "42"
    assert payload["role"] == auth.ROLE_KITCHEN
    assert "exp" in payload


def test_verify_token_returns_none_for_invalid_token():
    assert auth.verify_token("invalid.token.value") is None


def test_verify_token_returns_none_for_expired_token():
    token = auth.create_access_token({"sub": "1"}, expires_minutes=-1)
    assert auth.verify_token(token) is None


def test_normalize_role_maps_legacy_names():
    assert auth.normalize_role("guest") == auth.ROLE_OUTSIDER
    assert auth.normalize_role("Student") == auth.ROLE_RIDER
    assert auth.normalize_role("kitchen_manager") == auth.ROLE_KITCHEN
    assert auth.normalize_role(" admin ") == auth.ROLE_ADMIN
    assert auth.normalize_role(None) == ""


def test_session_token_is_revocable(db):
    user = make_user(db, role=auth.ROLE_RIDER)

    token = auth.issue_session_token(db, user)
    db.commit()
    assert auth.user_from_token(db, token).id == user.id

    auth.revoke_session(user)
    db.commit()
    assert auth.user_from_token(db, token) is None


def test_newer_token_replaces_older(db):
    user = make_user(db, role=auth.ROLE_RIDER)
    old = auth.issue_session_token(db, user)
    new = auth.issue_session_token(db, user)
    db.commit()

    assert auth.user_from_token(db, old) is None
    assert auth.user_from_token(db, new).id == user.id


def test_lockout_after_repeated_failures(db):
    user = make_user(db, role=auth.ROLE_RIDER, pin="123456")

    for _ in range(4):
        auth.record_failed_login(db, user, user.phone)
    assert auth.is_locked(user) is None

    auth.record_failed_login(db, user, user.phone)
    db.commit()

    assert auth.is_locked(user) is not None
    assert db.query(models.AuthLog).filter(models.AuthLog.event_type == "failed_login").count() == 5


def test_stale_lock_is_cleared():
    user = models.User(failed_login_attempts=5, locked_until=datetime.utcnow() - timedelta(minutes=1))

    assert auth.is_locked(user) is None
    assert user.failed_login_attempts == 0
    assert user.locked_until is None
