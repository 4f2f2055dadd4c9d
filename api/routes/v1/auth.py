"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register/student  -- create student + profile; returns tokens
  POST   /api/v1/auth/register/admin    -- create admin + profile; returns tokens
  POST   /api/v1/auth/login             -- password login; returns tokens
  POST   /api/v1/auth/refresh-token     -- rotate refresh token; returns new pair
  POST   /api/v1/auth/logout            -- revoke one of the caller's sessions
  POST   /api/v1/auth/logout-all        -- revoke every session of the caller
  GET    /api/v1/auth/me                -- current principal's profile
  POST   /api/v1/auth/external-login    -- placeholder; always 501
  GET    /api/v1/auth/providers         -- list enabled OAuth providers (public)
  GET    /api/v1/auth/google-login      -- authorization URL + state
  GET    /api/v1/auth/google-callback   -- provider redirect target
  POST   /api/v1/auth/google            -- SPA-driven code exchange
  DELETE /api/v1/auth/users/{id}        -- delete a principal (admin only)

Security:
  [H2] POST /login is rate-limited per client (login_rate_limit).
  [M5] Cache-Control: no-store on every response that carries tokens.
  Logout and logout-all act on the principal from the verified access token;
  a refresh token belonging to someone else is reported as not found.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import error_body, result_response
from api.limiter import limiter
from api.models import (
    AdminRegisterRequest,
    AuthData,
    AuthorizationUrlResponse,
    ExternalLoginRequest,
    GoogleAuthRequest,
    LoginRequest,
    LogoutRequest,
    OAuthProviderInfo,
    RefreshTokenRequest,
    StudentRegisterRequest,
    UserResponse,
)
from auth.dependencies import get_current_principal, require_admin
from auth.models import AdminRegistration, ClientContext, CurrentPrincipal, StudentRegistration
from auth.oauth import GoogleIdentityBridge
from auth.service import AuthService
from core.config import get_settings
from core.errors import ServiceResult

# Auth policy:
# - register/*, login, refresh-token, external-login, providers, google-*: public
# - logout, logout-all, me:   requires auth (get_current_principal)
# - DELETE /auth/users/{id}:  requires admin (require_admin)
router = APIRouter()


def _client_context(request: Request) -> ClientContext:
    return ClientContext(
        device_info=request.headers.get("User-Agent"),
        ip_address=request.client.host if request.client else None,
    )


def _auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _google_bridge(request: Request) -> GoogleIdentityBridge:
    return request.app.state.google_bridge


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@router.post("/auth/register/student")
def register_student(request: Request, body: StudentRegisterRequest) -> JSONResponse:
    """Register a student. 400 on a weak password, 409 on a duplicate email."""
    result = _auth_service(request).register_student(
        StudentRegistration(**body.model_dump()), _client_context(request)
    )
    return result_response(result, serialize=AuthData.from_payload, no_store=True)


@router.post("/auth/register/admin")
def register_admin(request: Request, body: AdminRegisterRequest) -> JSONResponse:
    """Register an admin. 400 on a weak password, 409 on a duplicate email."""
    result = _auth_service(request).register_admin(AdminRegistration(**body.model_dump()), _client_context(request))
    return result_response(result, serialize=AuthData.from_payload, no_store=True)


@router.post("/auth/login")
@limiter.limit(get_settings().login_rate_limit)  # [H2] below @router: the registered endpoint must be the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, wrong password and deactivated account all produce the
    same 401 body. A locked account answers 401 with code "locked".
    """
    result = _auth_service(request).login(body.email, body.password, _client_context(request))
    return result_response(result, serialize=AuthData.from_payload, no_store=True)


@router.post("/auth/refresh-token")
def refresh_token(request: Request, body: RefreshTokenRequest) -> JSONResponse:
    """Exchange an access token (expired is fine) plus its refresh token for a new pair.

    The presented refresh token is revoked in the same step. Presenting it
    again answers 401 with code "revoked".
    """
    result = _auth_service(request).refresh(body.access_token, body.refresh_token, _client_context(request))
    return result_response(result, serialize=AuthData.from_payload, no_store=True)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(
    request: Request,
    body: LogoutRequest,
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    """Revoke one of the caller's sessions. 400 if the refresh token is unknown."""
    return result_response(_auth_service(request).logout(body.refresh_token, principal.id))


@router.post("/auth/logout-all")
def logout_all(request: Request, principal: CurrentPrincipal = Depends(get_current_principal)) -> JSONResponse:
    """Revoke every active session of the caller."""
    return result_response(_auth_service(request).logout_all(principal.id))


@router.get("/auth/me")
def me(request: Request, principal: CurrentPrincipal = Depends(get_current_principal)) -> JSONResponse:
    """Return the profile of the currently authenticated principal."""
    return result_response(_auth_service(request).current_user(principal.id), serialize=UserResponse.from_view)


@router.delete("/auth/users/{user_id}")
def delete_user(
    request: Request,
    user_id: str,
    principal: CurrentPrincipal = Depends(require_admin),
) -> JSONResponse:
    """Delete a principal with its sessions, profile and student data. Admin only.

    Admins cannot delete their own account through this endpoint.
    """
    if user_id == principal.id:
        return JSONResponse(
            status_code=400,
            content=error_body("Cannot delete your own account", code="self_deletion"),
        )
    return result_response(_auth_service(request).delete_principal(user_id))


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


@router.post("/auth/external-login")
def external_login(request: Request, body: ExternalLoginRequest) -> JSONResponse:
    """Generic external login is not available; always 501. Use the Google routes."""
    return result_response(_auth_service(request).external_login(body.provider))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are configured."""
    return [OAuthProviderInfo(**p) for p in _google_bridge(request).enabled_providers()]


@router.get("/auth/google-login")
async def google_login(
    request: Request, redirect_uri: str | None = Query(default=None, max_length=2000)
) -> JSONResponse:
    """Start Google sign-in. Returns the authorization URL and its one-time state.

    redirect_uri defaults to this API's /auth/google-callback. The same value
    must be presented when the code is exchanged.
    """
    bridge = _google_bridge(request)
    if not bridge.enabled:
        return JSONResponse(
            status_code=404,
            content=error_body("Provider not configured", ["Google sign-in is not enabled"], code="not_found"),
        )
    target = redirect_uri or str(request.url_for("google_callback"))
    auth_request = bridge.build_authorization_url(target)
    body = AuthorizationUrlResponse(authorization_url=auth_request.url, state=auth_request.state)
    return result_response(ServiceResult.ok("Authorization URL created", body.model_dump()))


@router.get("/auth/google-callback", name="google_callback")
async def google_callback(
    request: Request,
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> JSONResponse:
    """Redirect target registered with Google. Completes federation and returns tokens."""
    if error or not code:
        return JSONResponse(
            status_code=400,
            content=error_body("Google authentication failed", [error or "Missing authorization code"]),
        )
    redirect_uri = str(request.url_for("google_callback"))
    result = await _google_bridge(request).complete_federation(code, state or "", redirect_uri, _client_context(request))
    return result_response(result, serialize=AuthData.from_payload, no_store=True)


@router.post("/auth/google")
async def google_exchange(request: Request, body: GoogleAuthRequest) -> JSONResponse:
    """Complete federation for a front end that received the code itself."""
    result = await _google_bridge(request).complete_federation(
        body.code, body.state, body.redirect_uri, _client_context(request)
    )
    return result_response(result, serialize=AuthData.from_payload, no_store=True)
