"""
auth/tokens.py -- JWT issuance, refresh-token generation, and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       sub, email, given_name, family_name, role, iss, aud, iat, exp and jti.
       Verification returns None on any failure -- the route layer turns that
       into a 401.

       Expiry is checked separately from the signature. The refresh flow calls
       verify_signature_ignoring_expiry() to recover the subject from an access
       token that has already expired; every other caller uses
       decode_access_token(), which enforces exp.

  Refresh tokens: 64 bytes from secrets.token_bytes(), base64-encoded, handed
       to the client once. Only base64(SHA-256(raw)) is persisted. A plain hash
       is enough here: 512 bits of entropy makes brute force infeasible, and
       the deterministic hash gives an O(1) lookup by UNIQUE index.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in the login flow so response time does not reveal whether
       an email is registered [C1].

Layer rule: no imports from api/, student/, or cache/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from auth.models import Principal
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("educheck.auth")

_ALGORITHM = "HS256"
_REFRESH_TOKEN_BYTES = 64
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    check_password_policy() rejects passwords longer than 72 bytes before they
    get here, so bcrypt never sees an input it would truncate.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("educheck_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded [C1].

    Called on login paths that fail before a real hash is available so the
    response time matches a wrong-password failure.
    """
    verify_password(plain, _DUMMY_HASH)


def check_password_policy(password: str, settings: Settings) -> list[str]:
    """Return every credential-policy violation; an empty list means acceptable."""
    problems: list[str] = []
    if len(password) < settings.password_min_length:
        problems.append(f"Passwords must be at least {settings.password_min_length} characters.")
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        problems.append(f"Passwords must not exceed {_BCRYPT_MAX_BYTES} bytes.")
    if not any(c.isdigit() for c in password):
        problems.append("Passwords must have at least one digit ('0'-'9').")
    if not any(c.islower() for c in password):
        problems.append("Passwords must have at least one lowercase ('a'-'z').")
    if not any(c.isupper() for c in password):
        problems.append("Passwords must have at least one uppercase ('A'-'Z').")
    if all(c.isalnum() for c in password):
        problems.append("Passwords must have at least one non alphanumeric character.")
    if len(set(password)) < settings.password_min_unique_chars:
        problems.append(f"Passwords must use at least {settings.password_min_unique_chars} different characters.")
    return problems


# ---------------------------------------------------------------------------
# Refresh-token hashing
# ---------------------------------------------------------------------------


def hash_refresh_token(raw_token: str) -> str:
    """Return base64(SHA-256(raw_token)) -- the only form ever persisted."""
    digest = hashlib.sha256(raw_token.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Creates and validates signed access tokens; generates opaque refresh tokens.

    The issuer performs no persistence. Session records are owned by
    SessionStore and written only by the authentication flows.

    Usage:
        issuer = TokenIssuer(get_settings())
        token, expires_at = issuer.issue_access_token(principal)
        claims = issuer.decode_access_token(token)
    """

    def __init__(self, settings: Settings, clock: Clock = utcnow) -> None:
        if not settings.secret_key:
            raise ValueError("A signing key is required to issue access tokens.")
        self._key = settings.secret_key
        self._issuer = settings.jwt_issuer
        self._audience = settings.jwt_audience
        self._access_ttl = timedelta(minutes=settings.access_token_expire_minutes)
        self._clock = clock

    def issue_access_token(self, principal: Principal) -> tuple[str, datetime]:
        """Encode a signed JWT for principal. Returns (token, expires_at)."""
        issued_at = self._clock()
        expires_at = issued_at + self._access_ttl
        payload = {
            "sub": principal.id,
            "email": principal.email,
            "given_name": principal.first_name,
            "family_name": principal.last_name,
            "role": principal.role.value,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM), expires_at

    @staticmethod
    def issue_refresh_token() -> str:
        return base64.b64encode(secrets.token_bytes(_REFRESH_TOKEN_BYTES)).decode("ascii")

    def decode_access_token(self, token: str) -> dict | None:
        """Fully verify a JWT, expiry included. Returns the claims or None."""
        return self._decode(token, verify_exp=True)

    def verify_signature_ignoring_expiry(self, token: str) -> dict | None:
        """Verify signature, issuer and audience but not exp.

        Used solely to recover the subject from an access token during refresh.
        Returns None on any structural or signature failure; never raises.
        """
        return self._decode(token, verify_exp=False)

    def _decode(self, token: str, verify_exp: bool) -> dict | None:
        if not token:
            return None
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": verify_exp},
            )
        except JWTError:
            return None
        if not claims.get("sub") or "role" not in claims:
            return None
        return claims
