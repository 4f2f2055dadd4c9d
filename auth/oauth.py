"""
auth/oauth.py -- Google OAuth 2.0 federation (authorization code + PKCE).

The bridge runs the authorization code flow itself: it builds the authorize
URL, exchanges the code at Google's token endpoint, and reads the userinfo
endpoint with httpx. authlib supplies the state and PKCE primitives.

Security notes:
  [H1] Email verification. When oauth_require_verified_email is set (the
       default) federation is refused unless Google reports email_verified.
       An unverified address may belong to someone else, and the local account
       is resolved by email.

  [H2] Anti-CSRF state + PKCE. build_authorization_url() mints a one-time
       state value and an S256 code challenge. The (state -> code_verifier,
       redirect_uri) mapping is held server-side in PendingAuthorizationStore,
       so nothing round-trips through a cookie. complete_federation() consumes
       the state before any network call; an unknown, expired, reused or
       redirect-mismatched state fails without contacting Google.

  Outbound calls use an httpx.AsyncClient with a bounded timeout and are
  never retried. Any non-2xx or transport error is an authentication failure.

Layer rule: no imports from api/, student/, or cache/. Import from core/
is allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from sqlalchemy.exc import IntegrityError
from starlette.concurrency import run_in_threadpool

from auth.models import AuthPayload, ClientContext, Principal, Role, StudentProfile
from auth.service import SessionIssuer
from auth.sessions import SessionStore
from auth.store import UserStore, normalize_email
from auth.tokens import TokenIssuer
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import AuthenticationError, AuthFailure, ServiceResult, service_boundary

logger = logging.getLogger("educheck.auth.oauth")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

_STATE_LENGTH = 48
_VERIFIER_LENGTH = 64  # RFC 7636 allows 43-128 characters


# ---------------------------------------------------------------------------
# Pending authorization state [H2]
# ---------------------------------------------------------------------------


@dataclass
class PendingAuthorization:
    code_verifier: str
    redirect_uri: str
    expires_at: datetime


@dataclass
class AuthorizationRequest:
    url: str
    state: str


class PendingAuthorizationStore:
    """In-process map of outstanding authorization requests, keyed by state.

    Entries are single-use: consume() removes the entry whether or not it is
    still valid. Expired entries are also swept on every put().
    """

    def __init__(self, ttl_seconds: int = 600, clock: Clock = utcnow) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[str, PendingAuthorization] = {}

    def put(self, state: str, code_verifier: str, redirect_uri: str) -> None:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._pending[state] = PendingAuthorization(code_verifier, redirect_uri, now + self._ttl)

    def consume(self, state: str) -> PendingAuthorization | None:
        """Remove and return the entry for state, or None if unknown or expired."""
        with self._lock:
            entry = self._pending.pop(state, None)
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    def __len__(self) -> int:
        return len(self._pending)

    def _sweep(self, now: datetime) -> None:
        for state in [s for s, e in self._pending.items() if e.expires_at <= now]:
            del self._pending[state]


# ---------------------------------------------------------------------------
# Google identity bridge
# ---------------------------------------------------------------------------


@dataclass
class GoogleIdentity:
    subject: str
    email: str
    email_verified: bool
    given_name: str
    family_name: str


class GoogleIdentityBridge:
    """Federate a Google account into a local principal and session.

    Usage:
        bridge = GoogleIdentityBridge(settings, user_store, session_store, issuer,
                                      PendingAuthorizationStore())
        request = bridge.build_authorization_url("https://app/api/v1/auth/google-callback")
        # ... user consents, Google redirects back with code + state ...
        result = await bridge.complete_federation(code, state, redirect_uri)

    transport is passed through to httpx.AsyncClient; tests inject an
    httpx.MockTransport.
    """

    def __init__(
        self,
        settings: Settings,
        user_store: UserStore,
        session_store: SessionStore,
        token_issuer: TokenIssuer,
        state_store: PendingAuthorizationStore,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings
        self._users = user_store
        self._state = state_store
        self._transport = transport
        self._clock = clock
        self._issuer = SessionIssuer(user_store, session_store, token_issuer, settings)

    @property
    def enabled(self) -> bool:
        return self._settings.google_enabled

    def enabled_providers(self) -> list[dict]:
        """Return [{"name", "label"}] for every configured provider."""
        return [{"name": "google", "label": "Google"}] if self.enabled else []

    def build_authorization_url(self, redirect_uri: str) -> AuthorizationRequest:
        state = generate_token(_STATE_LENGTH)
        code_verifier = generate_token(_VERIFIER_LENGTH)
        self._state.put(state, code_verifier, redirect_uri)
        params = {
            "client_id": self._settings.google_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self._settings.google_scopes,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
            "code_challenge": create_s256_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        return AuthorizationRequest(url=f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}", state=state)

    @service_boundary("An error occurred during Google authentication")
    async def complete_federation(
        self,
        code: str,
        state: str,
        redirect_uri: str,
        client: ClientContext | None = None,
    ) -> ServiceResult:
        pending = self._state.consume(state) if state else None
        if pending is None or pending.redirect_uri != redirect_uri:  # [H2]
            logger.warning("Google callback rejected - unknown, expired or mismatched state")
            raise AuthenticationError(
                "Google authentication failed", ["Invalid or expired authorization state"],
                reason=AuthFailure.INVALID_STATE,
            )

        async with httpx.AsyncClient(timeout=self._settings.oauth_timeout_seconds, transport=self._transport) as http:
            provider_token = await self._exchange_code(http, code, redirect_uri, pending.code_verifier)
            identity = await self._fetch_identity(http, provider_token)

        if self._settings.oauth_require_verified_email and not identity.email_verified:  # [H1]
            logger.warning("Google login refused - unverified email: %s", identity.email)
            raise AuthenticationError(
                "Google authentication failed",
                ["Your Google email address is not verified"],
                reason=AuthFailure.PROVIDER_ERROR,
            )

        payload = await run_in_threadpool(self._sign_in, identity, client)
        logger.info("Google login successful for: %s", payload.user.email)
        return ServiceResult.ok("Google login successful", payload)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _exchange_code(self, http: httpx.AsyncClient, code: str, redirect_uri: str, verifier: str) -> str:
        data = {
            "code": code,
            "client_id": self._settings.google_client_id,
            "client_secret": self._settings.google_client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
            "code_verifier": verifier,
        }
        try:
            resp = await http.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            logger.warning("Google token exchange failed: %s", type(exc).__name__)
            raise _provider_failure("Failed to exchange authorization code") from exc
        if resp.status_code != 200:
            logger.warning("Google token exchange returned HTTP %d", resp.status_code)
            raise _provider_failure("Failed to exchange authorization code")
        access_token = resp.json().get("access_token")
        if not access_token:
            raise _provider_failure("Failed to exchange authorization code")
        return access_token

    async def _fetch_identity(self, http: httpx.AsyncClient, access_token: str) -> GoogleIdentity:
        try:
            resp = await http.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            logger.warning("Google userinfo request failed: %s", type(exc).__name__)
            raise _provider_failure("Failed to get user information from Google") from exc
        if resp.status_code != 200:
            logger.warning("Google userinfo returned HTTP %d", resp.status_code)
            raise _provider_failure("Failed to get user information from Google")

        info = resp.json()
        email = info.get("email")
        if not email or not info.get("sub"):
            raise _provider_failure("Google did not return an email address")
        return GoogleIdentity(
            subject=str(info["sub"]),
            email=normalize_email(email),
            email_verified=bool(info.get("email_verified", False)),
            given_name=info.get("given_name") or "",
            family_name=info.get("family_name") or "",
        )

    # ------------------------------------------------------------------
    # Local principal
    # ------------------------------------------------------------------

    def _sign_in(self, identity: GoogleIdentity, client: ClientContext | None) -> AuthPayload:
        """Blocking store work for a verified identity; runs in the threadpool."""
        principal = self._resolve_principal(identity)
        self._users.record_successful_login(principal.id, self._clock())
        return self._issuer.issue_pair(principal, client)

    def _resolve_principal(self, identity: GoogleIdentity) -> Principal:
        principal = self._users.get_by_email(identity.email)
        if principal is None:
            return self._provision(identity)

        if not principal.is_active:
            logger.warning("Google login refused - account deactivated: %s", identity.email)
            raise AuthenticationError(
                "Account deactivated",
                ["Your account has been deactivated. Please contact support."],
                reason=AuthFailure.INACTIVE,
            )
        # Forward-only: a verified provider email confirms, an unverified one never un-confirms.
        if identity.email_verified and not principal.email_confirmed:
            self._users.confirm_email(principal.id)
            principal.email_confirmed = True
        return principal

    def _provision(self, identity: GoogleIdentity) -> Principal:
        principal = Principal(
            email=identity.email,
            first_name=identity.given_name,
            last_name=identity.family_name,
            role=Role.STUDENT,
            email_confirmed=identity.email_verified,
        )
        try:
            principal_id = self._users.create_principal(principal, StudentProfile())
        except IntegrityError:
            # Another callback for the same email provisioned it first.
            existing = self._users.get_by_email(identity.email)
            if existing is None:
                raise
            return existing
        logger.info("Provisioned student from Google federation: %s", identity.email)
        return self._users.get_by_id(principal_id)


def _provider_failure(detail: str) -> AuthenticationError:
    return AuthenticationError("Google authentication failed", [detail], reason=AuthFailure.PROVIDER_ERROR)
