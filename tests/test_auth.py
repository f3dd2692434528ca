"""Tests for token issuance, expiry and revocation."""

from __future__ import annotations

import time

from services.auth import ROLE_ADMIN, AuthService


class _Config:
    def __init__(self, **values):
        self._values = values

    def get(self, key, default=None):
        return self._values.get(key, default)


def test_login_with_configured_password() -> None:
    auth = AuthService(_Config(**{"security.admin_password": "s3cret"}))

    assert auth.login("admin", "wrong") is None
    assert auth.login("root", "s3cret") is None

    result = auth.login("admin", "s3cret")
    session = auth.validate_token(result["token"])
    assert session["user"] == "admin"
    assert session["role"] == ROLE_ADMIN
    assert auth.is_setup_required() is False


def test_missing_password_generates_one() -> None:
    auth = AuthService(_Config())
    assert auth.is_setup_required() is True
    assert auth.login("admin", "") is None


def test_expired_token_is_rejected_and_dropped() -> None:
    auth = AuthService(_Config(**{"security.admin_password": "x"}))
    token = auth.issue_token("admin", ttl=-1)

    assert auth.validate_token(token) is None
    assert auth.cleanup_expired() == 0


def test_cleanup_removes_only_expired_tokens() -> None:
    auth = AuthService(_Config(**{"security.admin_password": "x"}), token_ttl=60)
    live = auth.issue_token("admin")
    auth.issue_token("admin", ttl=0.001)
    time.sleep(0.01)

    assert auth.cleanup_expired() == 1
    assert auth.validate_token(live) is not None


def test_revoke_invalidates_token() -> None:
    auth = AuthService(_Config(**{"security.admin_password": "x"}))
    token = auth.issue_token("admin")

    assert auth.revoke(token) is True
    assert auth.revoke(token) is False
    assert auth.validate_token(token) is None
    assert auth.validate_token("") is None


def test_validate_returns_a_copy() -> None:
    auth = AuthService(_Config(**{"security.admin_password": "x"}))
    token = auth.issue_token("admin")
    auth.validate_token(token)["role"] = "guest"
    assert auth.validate_token(token)["role"] == ROLE_ADMIN
