"""
tests/test_auth_service.py -- Unit tests for auth/service.py (AuthService).

Covers:
  - Registration: one principal + one profile, role claim in the access token,
    duplicate email -> conflict, weak password -> validation_error
  - Login: success, generic failure for unknown email / wrong password /
    inactive account, lockout after repeated failures
  - Refresh: rotation, replay of the old token, expired access token accepted,
    refresh token paired with another principal's access token rejected
  - Logout and logout-all
  - external_login is not implemented
  - delete_principal runs its cleanup callbacks

The service is exercised directly (no HTTP) against an isolated in-memory store.
"""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from auth.models import AdminRegistration, Role, StudentRegistration
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.store import sessions as sessions_table
from auth.tokens import TokenIssuer
from conftest import STRONG_PASSWORD, deactivate, make_settings, make_user_store, unique_email
from core.clock import utcnow
from core.errors import ErrorKind


class FakeClock:
    """Mutable clock so lockout expiry can be tested without sleeping."""

    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class AuthHarness:
    service: AuthService
    users: UserStore
    sessions: SessionStore
    tokens: TokenIssuer
    clock: FakeClock
    deleted: list[str]


@pytest.fixture()
def harness() -> Generator[AuthHarness, None, None]:
    settings = make_settings()
    users = make_user_store()
    sessions = SessionStore(users.engine)
    tokens = TokenIssuer(settings)
    clock = FakeClock()
    deleted: list[str] = []
    service = AuthService(users, sessions, tokens, settings, clock=clock, principal_cleanup=[deleted.append])
    yield AuthHarness(service, users, sessions, tokens, clock, deleted)
    users.close()


def _student(email: str | None = None, password: str = STRONG_PASSWORD) -> StudentRegistration:
    return StudentRegistration(
        email=email or unique_email(),
        password=password,
        first_name="Thandi",
        last_name="Nkosi",
        province="Gauteng",
        city="Pretoria",
    )


def _session_count(harness: AuthHarness, principal_id: str) -> int:
    """Live (unrevoked) session rows for principal_id."""
    with harness.users.engine.connect() as conn:
        rows = conn.execute(
            select(sessions_table.c.id).where(
                (sessions_table.c.principal_id == principal_id) & (sessions_table.c.revoked == 0)
            )
        ).fetchall()
    return len(rows)


class TestRegistration:
    def test_register_student_creates_principal_and_profile(self, harness: AuthHarness) -> None:
        result = harness.service.register_student(_student("A@X.com"))

        assert result.success is True
        payload = result.data
        assert payload.access_token and payload.refresh_token
        assert payload.user.role is Role.STUDENT
        assert payload.user.email == "a@x.com"
        assert payload.user.city == "Pretoria"

        claims = harness.tokens.decode_access_token(payload.access_token)
        assert claims["role"] == "Student"
        assert harness.users.get_student_profile(claims["sub"]) is not None
        assert _session_count(harness, claims["sub"]) == 1

    def test_register_admin_has_admin_role(self, harness: AuthHarness) -> None:
        request = AdminRegistration(
            email=unique_email("admin"),
            password=STRONG_PASSWORD,
            first_name="Sipho",
            last_name="Dlamini",
            department="Compliance",
        )
        result = harness.service.register_admin(request)
        assert result.success is True
        assert harness.tokens.decode_access_token(result.data.access_token)["role"] == "Admin"
        assert result.data.user.department == "Compliance"

    def test_duplicate_email_is_conflict(self, harness: AuthHarness) -> None:
        email = unique_email()
        assert harness.service.register_student(_student(email)).success
        result = harness.service.register_student(_student(email.upper()))

        assert result.success is False
        assert result.kind is ErrorKind.CONFLICT
        assert "An account with this email already exists" in result.errors

    def test_weak_password_is_validation_error(self, harness: AuthHarness) -> None:
        email = unique_email()
        result = harness.service.register_student(_student(email, password="short"))

        assert result.success is False
        assert result.kind is ErrorKind.VALIDATION
        assert len(result.errors) > 1
        assert harness.users.get_by_email(email) is None


class TestLogin:
    def test_login_success(self, harness: AuthHarness) -> None:
        email = unique_email()
        harness.service.register_student(_student(email))
        result = harness.service.login(email, STRONG_PASSWORD)

        assert result.success is True
        assert result.message == "Login successful"
        assert result.data.user.email == email

    def test_unknown_email_and_wrong_password_are_indistinguishable(self, harness: AuthHarness) -> None:
        email = unique_email()
        harness.service.register_student(_student(email))

        unknown = harness.service.login(unique_email(), STRONG_PASSWORD)
        wrong = harness.service.login(email, "Wr0ng!Pass")

        for result in (unknown, wrong):
            assert result.success is False
            assert result.kind is ErrorKind.AUTHENTICATION
        assert (unknown.message, unknown.errors, unknown.code) == (wrong.message, wrong.errors, wrong.code)

    def test_inactive_account_gets_generic_failure(self, harness: AuthHarness) -> None:
        email = unique_email()
        pid = harness.service.register_student(_student(email)).data.user.id
        deactivate(harness.users, pid)

        result = harness.service.login(email, STRONG_PASSWORD)
        assert result.success is False
        assert result.message == "Invalid credentials"

    def test_lockout_after_repeated_failures(self, harness: AuthHarness) -> None:
        email = unique_email()
        harness.service.register_student(_student(email))

        for _ in range(5):
            assert harness.service.login(email, "Wr0ng!Pass").code == "invalid_credentials"

        locked = harness.service.login(email, STRONG_PASSWORD)
        assert locked.success is False
        assert locked.code == "locked"

        harness.clock.advance(minutes=6)
        assert harness.service.login(email, STRONG_PASSWORD).success is True


class TestRefresh:
    def test_refresh_rotates_and_old_token_is_dead(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data

        refreshed = harness.service.refresh(first.access_token, first.refresh_token)
        assert refreshed.success is True
        assert refreshed.data.refresh_token != first.refresh_token

        replay = harness.service.refresh(first.access_token, first.refresh_token)
        assert replay.success is False
        assert replay.kind is ErrorKind.AUTHENTICATION
        assert replay.code == "revoked"

    def test_refresh_accepts_expired_access_token(self) -> None:
        settings = make_settings()
        users = make_user_store()
        sessions = SessionStore(users.engine)
        past = utcnow() - timedelta(hours=2)
        old_tokens = TokenIssuer(settings, clock=lambda: past)
        first = AuthService(users, sessions, old_tokens, settings).register_student(_student()).data
        assert TokenIssuer(settings).decode_access_token(first.access_token) is None

        result = AuthService(users, sessions, TokenIssuer(settings), settings).refresh(
            first.access_token, first.refresh_token
        )
        assert result.success is True
        users.close()

    def test_mixed_principal_tokens_rejected(self, harness: AuthHarness) -> None:
        alice = harness.service.register_student(_student()).data
        bob = harness.service.register_student(_student()).data

        result = harness.service.refresh(alice.access_token, bob.refresh_token)
        assert result.success is False
        assert result.kind is ErrorKind.AUTHENTICATION
        # Bob's session survives the attempt.
        assert harness.service.refresh(bob.access_token, bob.refresh_token).success is True

    def test_invalid_access_token_rejected(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data
        result = harness.service.refresh("garbage", first.refresh_token)
        assert result.success is False
        assert result.code == "invalid_token"

    def test_refresh_for_deactivated_principal_rejected(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data
        deactivate(harness.users, first.user.id)
        result = harness.service.refresh(first.access_token, first.refresh_token)
        assert result.success is False
        assert result.code == "inactive"


class TestLogout:
    def test_logout_revokes_one_session(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data

        assert harness.service.logout(first.refresh_token, first.user.id).success is True
        assert harness.service.refresh(first.access_token, first.refresh_token).success is False

    def test_logout_unknown_token_is_validation_error(self, harness: AuthHarness) -> None:
        result = harness.service.logout("never-issued")
        assert result.success is False
        assert result.kind is ErrorKind.VALIDATION

    def test_logout_cannot_touch_another_principals_session(self, harness: AuthHarness) -> None:
        alice = harness.service.register_student(_student()).data
        bob = harness.service.register_student(_student()).data

        assert harness.service.logout(bob.refresh_token, alice.user.id).success is False
        assert harness.service.refresh(bob.access_token, bob.refresh_token).success is True

    def test_logout_all_kills_every_refresh_token(self, harness: AuthHarness) -> None:
        email = unique_email()
        harness.service.register_student(_student(email))
        pairs = [harness.service.login(email, STRONG_PASSWORD).data for _ in range(3)]

        result = harness.service.logout_all(pairs[0].user.id)
        assert result.success is True
        assert result.data is True
        for pair in pairs:
            assert harness.service.refresh(pair.access_token, pair.refresh_token).success is False


class TestMisc:
    def test_external_login_not_implemented(self, harness: AuthHarness) -> None:
        result = harness.service.external_login("facebook")
        assert result.success is False
        assert result.kind is ErrorKind.NOT_IMPLEMENTED

    def test_current_user(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data
        result = harness.service.current_user(first.user.id)
        assert result.success is True
        assert result.data.province == "Gauteng"
        assert harness.service.current_user("missing").kind is ErrorKind.NOT_FOUND

    def test_delete_principal_cascades(self, harness: AuthHarness) -> None:
        first = harness.service.register_student(_student()).data
        pid = first.user.id

        result = harness.service.delete_principal(pid)
        assert result.success is True
        assert harness.users.get_by_id(pid) is None
        assert harness.users.get_student_profile(pid) is None
        assert _session_count(harness, pid) == 0
        assert harness.deleted == [pid]

        assert harness.service.delete_principal(pid).kind is ErrorKind.NOT_FOUND
