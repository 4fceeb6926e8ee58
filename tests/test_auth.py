"""Tests for HMAC owner tokens."""

import time

import pytest

from launchpad import auth, config
from launchpad.errors import AuthenticationError


@pytest.fixture(autouse=True)
def secret(monkeypatch):
    """Configure a signing secret and lenient mode for every test."""
    monkeypatch.setattr(config, "AUTH_SECRET", "test-secret")
    monkeypatch.setattr(config, "REQUIRE_AUTH", False)


class TestTokens:
    """Tests for generate_token and verify."""

    def test_round_trip(self):
        """A fresh token verifies to its owner."""
        token = auth.generate_token("user-1")
        assert token.startswith("user-1:")
        assert auth.verify(token) == "user-1"

    def test_owner_with_colon(self):
        """Owner ids may contain colons."""
        assert auth.verify(auth.generate_token("org:team:user")) == "org:team:user"

    def test_expired(self):
        """Expired tokens are rejected."""
        token = auth.generate_token("user-1", lifetime=-10)
        assert auth.verify(token) is None

    def test_tampered_owner(self):
        """Changing the owner invalidates the signature."""
        owner, expires, signature = auth.generate_token("user-1").split(":")
        assert auth.verify(f"user-2:{expires}:{signature}") is None

    def test_other_secret(self, monkeypatch):
        """Tokens signed with another secret are rejected."""
        token = auth.generate_token("user-1")
        monkeypatch.setattr(config, "AUTH_SECRET", "rotated")
        assert auth.verify(token) is None

    @pytest.mark.parametrize("token", ["", "garbage", "user-1:notanumber:abc", f"user-1:{int(time.time()) + 60}"])
    def test_malformed(self, token):
        """Malformed tokens are rejected."""
        assert auth.verify(token) is None

    def test_unconfigured(self, monkeypatch):
        """Without a secret tokens cannot be issued or verified."""
        token = auth.generate_token("user-1")
        monkeypatch.setattr(config, "AUTH_SECRET", "")
        assert not auth.is_configured()
        assert auth.verify(token) is None
        with pytest.raises(RuntimeError):
            auth.generate_token("user-1")

    def test_empty_owner(self):
        """An owner id is required."""
        with pytest.raises(ValueError):
            auth.generate_token("")


class TestOwnerFromHeader:
    """Tests for owner_from_header."""

    def test_bearer_and_raw(self):
        """Both "Bearer <token>" and a bare token are accepted."""
        token = auth.generate_token("user-1")
        assert auth.owner_from_header(f"Bearer {token}") == "user-1"
        assert auth.owner_from_header(token) == "user-1"

    def test_anonymous_when_lenient(self):
        """Missing or bad tokens are anonymous unless auth is required."""
        assert auth.owner_from_header(None) is None
        assert auth.owner_from_header("Bearer nope") is None

    def test_required(self, monkeypatch):
        """With REQUIRE_AUTH a missing or bad token raises."""
        monkeypatch.setattr(config, "REQUIRE_AUTH", True)
        with pytest.raises(AuthenticationError):
            auth.owner_from_header(None)
        with pytest.raises(AuthenticationError):
            auth.owner_from_header("Bearer nope")
        assert auth.owner_from_header(f"Bearer {auth.generate_token('user-1')}") == "user-1"

    def test_explicit_required_flag(self):
        """The required argument overrides the configured default."""
        with pytest.raises(AuthenticationError):
            auth.owner_from_header(None, required=True)
