"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - Access token claims (sub, email, given_name, family_name, role, iss, aud, exp)
  - Expired tokens: rejected by decode_access_token, accepted by
    verify_signature_ignoring_expiry
  - Tampered signature, wrong audience and foreign key are rejected
  - Refresh tokens are opaque, unique, and hashed as base64(SHA-256)
  - Password policy violations are all reported together
"""

from __future__ import annotations

import base64
import hashlib
from datetime import timedelta

from auth.models import Principal, Role
from auth.tokens import (
    TokenIssuer,
    check_password_policy,
    hash_password,
    hash_refresh_token,
    verify_password,
)
from conftest import make_settings
from core.clock import utcnow


def _principal() -> Principal:
    return Principal(
        id="p-123",
        email="a@x.com",
        first_name="Ada",
        last_name="Lovelace",
        role=Role.STUDENT,
    )


class TestAccessTokens:
    def test_claims_round_trip(self) -> None:
        issuer = TokenIssuer(make_settings())
        token, expires_at = issuer.issue_access_token(_principal())
        claims = issuer.decode_access_token(token)
        assert claims is not None
        assert claims["sub"] == "p-123"
        assert claims["email"] == "a@x.com"
        assert claims["given_name"] == "Ada"
        assert claims["family_name"] == "Lovelace"
        assert claims["role"] == "Student"
        assert claims["iss"] == "educheck-api"
        assert claims["aud"] == "educheck-clients"
        assert claims["exp"] == int(expires_at.timestamp())

    def test_expired_token_rejected_but_signature_still_verifiable(self) -> None:
        """An expired token fails full validation but still yields its subject for refresh."""
        past = utcnow() - timedelta(hours=3)
        issuer = TokenIssuer(make_settings(), clock=lambda: past)
        token, _ = issuer.issue_access_token(_principal())

        assert issuer.decode_access_token(token) is None
        claims = issuer.verify_signature_ignoring_expiry(token)
        assert claims is not None
        assert claims["sub"] == "p-123"

    def test_tampered_token_rejected(self) -> None:
        issuer = TokenIssuer(make_settings())
        token, _ = issuer.issue_access_token(_principal())
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        assert issuer.decode_access_token(tampered) is None
        assert issuer.verify_signature_ignoring_expiry(tampered) is None

    def test_token_from_another_key_rejected(self) -> None:
        ours = TokenIssuer(make_settings())
        theirs = TokenIssuer(make_settings(secret_key="another-secret-key-that-is-long-enough-1234"))
        token, _ = theirs.issue_access_token(_principal())
        assert ours.decode_access_token(token) is None

    def test_wrong_audience_rejected(self) -> None:
        ours = TokenIssuer(make_settings())
        theirs = TokenIssuer(make_settings(jwt_audience="someone-else"))
        token, _ = theirs.issue_access_token(_principal())
        assert ours.decode_access_token(token) is None

    def test_garbage_and_empty_tokens_rejected(self) -> None:
        issuer = TokenIssuer(make_settings())
        assert issuer.decode_access_token("") is None
        assert issuer.decode_access_token("not.a.jwt") is None


class TestRefreshTokens:
    def test_refresh_tokens_are_unique_and_opaque(self) -> None:
        tokens = {TokenIssuer.issue_refresh_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(base64.b64decode(t)) == 64 for t in tokens)

    def test_hash_is_base64_sha256(self) -> None:
        raw = TokenIssuer.issue_refresh_token()
        expected = base64.b64encode(hashlib.sha256(raw.encode("utf-8")).digest()).decode("ascii")
        assert hash_refresh_token(raw) == expected
        assert hash_refresh_token(raw) != raw


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("Str0ng!Pass")
        assert hashed != "Str0ng!Pass"
        assert verify_password("Str0ng!Pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_verify_against_malformed_hash_is_false(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")

    def test_strong_password_passes_policy(self) -> None:
        assert check_password_policy("Str0ng!Pass", make_settings()) == []

    def test_weak_password_reports_every_violation(self) -> None:
        problems = check_password_policy("abc", make_settings())
        assert any("at least 8 characters" in p for p in problems)
        assert any("digit" in p for p in problems)
        assert any("uppercase" in p for p in problems)
        assert any("non alphanumeric" in p for p in problems)
        assert any("different characters" in p for p in problems)
