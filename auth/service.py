"""
auth/service.py -- Registration, login, refresh and logout workflows.

AuthService is the only writer of session records for password-based flows
(the Google bridge in auth/oauth.py is the other). Every public method returns
a ServiceResult; failures are raised internally as ServiceError subclasses and
converted by @service_boundary, so nothing but a result crosses this boundary.

Each flow is terminal on its first success or failure -- there are no retries.

Security:
  [C1] Unknown emails still run a bcrypt comparison (burn_password_check) so
       response time does not reveal whether an account exists. Unknown email
       and wrong password share one generic "Invalid credentials" failure, as do
       inactive accounts.
  [C2] Lockout: after max_failed_logins consecutive failures the account is
       locked for lockout_minutes. The lock is checked before the password, so
       a locked account does not leak whether the guess was right.
  [R2] Refresh binds three things together: the access token's verified
       subject, the refresh token's session record, and an active principal.
       The subject is passed into SessionStore.rotate(), so a refresh token
       paired with someone else's access token matches nothing and fails.

Layer rule: no imports from api/, student/, or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.models import (
    AdminProfile,
    AdminRegistration,
    AuthPayload,
    ClientContext,
    Principal,
    Registration,
    Role,
    StudentProfile,
    StudentRegistration,
    UserView,
)
from auth.sessions import SessionStore
from auth.store import UserStore, normalize_email
from auth.tokens import (
    TokenIssuer,
    burn_password_check,
    check_password_policy,
    hash_password,
    hash_refresh_token,
    verify_password,
)
from core.clock import Clock, utcnow
from core.config import Settings
from core.errors import (
    AuthenticationError,
    AuthFailure,
    ConflictError,
    NotFoundError,
    NotImplementedFeature,
    ServiceResult,
    ValidationError,
    service_boundary,
)

logger = logging.getLogger("educheck.auth")


def _invalid_credentials() -> AuthenticationError:
    return AuthenticationError("Invalid credentials", ["Invalid email or password"])


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


class SessionIssuer:
    """Issue an access/refresh pair and persist the refresh session.

    Shared by AuthService and GoogleIdentityBridge so both flows create
    sessions and user views identically.
    """

    def __init__(
        self,
        user_store: UserStore,
        session_store: SessionStore,
        token_issuer: TokenIssuer,
        settings: Settings,
    ) -> None:
        self.users = user_store
        self.sessions = session_store
        self.tokens = token_issuer
        self.refresh_ttl = timedelta(days=settings.refresh_token_expire_days)

    def issue_pair(self, principal: Principal, client: ClientContext | None = None) -> AuthPayload:
        raw_refresh = self.tokens.issue_refresh_token()
        self.sessions.create(principal.id, hash_refresh_token(raw_refresh), self.refresh_ttl, client)
        return self.payload(principal, raw_refresh)

    def payload(self, principal: Principal, raw_refresh: str) -> AuthPayload:
        access_token, expires_at = self.tokens.issue_access_token(principal)
        return AuthPayload(
            access_token=access_token,
            refresh_token=raw_refresh,
            access_token_expiration=expires_at,
            user=self.user_view(principal),
        )

    def user_view(self, principal: Principal) -> UserView:
        view = UserView(
            id=principal.id,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            role=principal.role,
            email_confirmed=principal.email_confirmed,
            created_at=principal.created_at,
            phone_number=principal.phone_number,
        )
        if principal.role is Role.STUDENT:
            student = self.users.get_student_profile(principal.id)
            if student is not None:
                view.province, view.city = student.province, student.city
        else:
            admin = self.users.get_admin_profile(principal.id)
            if admin is not None:
                view.department, view.employee_id, view.admin_level = (
                    admin.department,
                    admin.employee_id,
                    admin.admin_level,
                )
        return view


class AuthService:
    """Password-based authentication workflows.

    Usage:
        service = AuthService(user_store, session_store, TokenIssuer(settings), settings)
        result = service.login("a@x.com", "S3cret!pw")
        if result.success:
            tokens = result.data            # AuthPayload
    """

    def __init__(
        self,
        user_store: UserStore,
        session_store: SessionStore,
        token_issuer: TokenIssuer,
        settings: Settings,
        clock: Clock = utcnow,
        principal_cleanup: list[Callable[[str], object]] | None = None,
    ) -> None:
        self._users = user_store
        self._sessions = session_store
        self._tokens = token_issuer
        self._settings = settings
        self._clock = clock
        self._issuer = SessionIssuer(user_store, session_store, token_issuer, settings)
        # Extra per-principal purges run after delete_principal (student data, cache).
        self._principal_cleanup = principal_cleanup or []

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @service_boundary("An error occurred during registration")
    def register_student(self, request: StudentRegistration, client: ClientContext | None = None) -> ServiceResult:
        profile = StudentProfile(province=_clean(request.province), city=_clean(request.city))
        return self._register(request, Role.STUDENT, profile, client)

    @service_boundary("An error occurred during registration")
    def register_admin(self, request: AdminRegistration, client: ClientContext | None = None) -> ServiceResult:
        profile = AdminProfile(department=_clean(request.department), employee_id=_clean(request.employee_id))
        return self._register(request, Role.ADMIN, profile, client)

    def _register(
        self,
        request: Registration,
        role: Role,
        profile: StudentProfile | AdminProfile,
        client: ClientContext | None,
    ) -> ServiceResult:
        email = normalize_email(request.email)
        logger.info("Attempting to register %s with email: %s", role.value.lower(), email)

        if self._users.get_by_email(email) is not None:
            logger.warning("Registration failed - email already exists: %s", email)
            raise ConflictError("Registration failed", ["An account with this email already exists"])

        problems = check_password_policy(request.password, self._settings)
        if problems:
            logger.warning("Registration failed for %s: %s", email, "; ".join(problems))
            raise ValidationError("Registration failed", problems)

        principal = Principal(
            email=email,
            first_name=request.first_name.strip(),
            last_name=request.last_name.strip(),
            phone_number=_clean(request.phone_number),
            role=role,
            hashed_password=hash_password(request.password),
        )
        try:
            principal_id = self._users.create_principal(principal, profile)
        except IntegrityError as exc:
            # A concurrent registration won the race past the existence check.
            raise ConflictError("Registration failed", ["An account with this email already exists"]) from exc

        created = self._users.get_by_id(principal_id)
        logger.info("%s registered successfully: %s", role.value, email)
        return ServiceResult.ok("Registration successful", self._issuer.issue_pair(created, client))

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @service_boundary("An error occurred during login")
    def login(self, email: str, password: str, client: ClientContext | None = None) -> ServiceResult:
        email = normalize_email(email)
        logger.info("Login attempt for: %s", email)

        principal = self._users.get_by_email(email)
        if principal is None or principal.hashed_password is None or not principal.is_active:
            burn_password_check(password)  # [C1]
            logger.warning("Login failed - unknown, federated-only or inactive account: %s", email)
            raise _invalid_credentials()

        now = self._clock()
        if principal.lockout_until is not None and principal.lockout_until > now:  # [C2]
            logger.warning("Login failed - account locked: %s", email)
            raise AuthenticationError(
                "Account locked",
                ["Your account is locked due to multiple failed login attempts. Please try again later."],
                reason=AuthFailure.LOCKED,
            )

        if not verify_password(password, principal.hashed_password):
            locked = self._users.record_failed_login(
                principal.id,
                self._settings.max_failed_logins,
                now + timedelta(minutes=self._settings.lockout_minutes),
            )
            if locked:
                logger.warning("Account locked after repeated failures: %s", email)
            else:
                logger.warning("Login failed - invalid password: %s", email)
            raise _invalid_credentials()

        self._users.record_successful_login(principal.id, now)
        logger.info("Login successful for: %s", email)
        return ServiceResult.ok("Login successful", self._issuer.issue_pair(principal, client))

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    @service_boundary("An error occurred while refreshing the token")
    def refresh(self, access_token: str, refresh_token: str, client: ClientContext | None = None) -> ServiceResult:
        claims = self._tokens.verify_signature_ignoring_expiry(access_token)
        if claims is None:
            logger.warning("Token refresh failed - invalid access token")
            raise AuthenticationError("Invalid token", ["Invalid access token"], reason=AuthFailure.INVALID_TOKEN)

        subject = claims["sub"]
        principal = self._users.get_by_id(subject)
        if principal is None or not principal.is_active:
            logger.warning("Token refresh failed - principal missing or inactive: %s", subject)
            raise AuthenticationError(
                "Invalid user", ["User not found or account deactivated"], reason=AuthFailure.INACTIVE
            )

        raw_refresh = self._tokens.issue_refresh_token()
        self._sessions.rotate(  # [R2]
            hash_refresh_token(refresh_token),
            hash_refresh_token(raw_refresh),
            self._issuer.refresh_ttl,
            expected_principal_id=subject,
            metadata=client,
        )
        logger.info("Token refreshed successfully for principal: %s", subject)
        return ServiceResult.ok("Token refreshed successfully", self._issuer.payload(principal, raw_refresh))

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    @service_boundary("An error occurred during logout")
    def logout(self, refresh_token: str, principal_id: str | None = None) -> ServiceResult:
        """Revoke one session. Fails with validation_error when no such session exists."""
        if not self._sessions.revoke_one(hash_refresh_token(refresh_token), principal_id):
            raise ValidationError("Invalid refresh token")
        return ServiceResult.ok("Logged out successfully", data=True)

    @service_boundary("An error occurred during logout")
    def logout_all(self, principal_id: str) -> ServiceResult:
        """Revoke every active session. data is True when at least one was active."""
        revoked = self._sessions.revoke_all(principal_id)
        logger.info("AUDIT: All sessions revoked. PrincipalId: %s, Count: %d", principal_id, revoked)
        return ServiceResult.ok("Logged out from all devices successfully", data=revoked > 0)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    @service_boundary("An error occurred during external login")
    def external_login(self, provider: str) -> ServiceResult:
        """Generic external-provider login is a placeholder; Google has its own bridge."""
        logger.info("External login attempt with provider: %s", provider)
        raise NotImplementedFeature("Not implemented", ["External authentication is not yet implemented"])

    @service_boundary("An error occurred while loading the profile")
    def current_user(self, principal_id: str) -> ServiceResult:
        principal = self._users.get_by_id(principal_id)
        if principal is None:
            raise NotFoundError("User not found")
        return ServiceResult.ok("Profile retrieved", self._issuer.user_view(principal))

    @service_boundary("An error occurred while deleting the user")
    def delete_principal(self, principal_id: str) -> ServiceResult:
        """Delete a principal, its sessions and profile, then its student data."""
        if not self._users.delete_principal(principal_id):
            raise NotFoundError("User not found")
        for cleanup in self._principal_cleanup:
            cleanup(principal_id)
        logger.info("AUDIT: Principal deleted. PrincipalId: %s", principal_id)
        return ServiceResult.ok("User deleted")
