"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

The caller's identity comes from exactly one place: the subject claim of a
fully verified Authorization: Bearer access token. No route takes a principal
id from the path, query or body for "my own resource" semantics -- handlers
receive a CurrentPrincipal from these dependencies and pass its id into the
student services, whose storage queries always filter by it.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_student() / require_admin() raise AuthorizationError on a role
mismatch, which api/main.py renders as 403.

Layer rule: no imports from api/, student/, or cache/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import CurrentPrincipal, Role
from core.errors import AuthorizationError, ErrorKind


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_principal(request: Request) -> CurrentPrincipal | None:
    """Authenticate the request from its Bearer token.

    Returns None when the header is absent, the token fails verification
    (signature, expiry, issuer or audience), or the principal no longer exists
    or has been deactivated. Never raises.
    """
    token = bearer_token(request)
    if not token:
        return None
    claims = request.app.state.token_issuer.decode_access_token(token)
    if not claims:
        return None
    principal = request.app.state.user_store.get_by_id(claims["sub"])
    if principal is None or not principal.is_active:
        return None
    return CurrentPrincipal(id=principal.id, email=principal.email, role=principal.role)


def get_current_principal(request: Request) -> CurrentPrincipal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: CurrentPrincipal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={
                "kind": ErrorKind.AUTHENTICATION.value,
                "message": "Unauthorized",
                "errors": ["Authentication required"],
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def _require_role(request: Request, role: Role) -> CurrentPrincipal:
    principal = get_current_principal(request)
    if principal.role is not role:
        raise AuthorizationError("Forbidden", [f"{role.value} access required"])
    return principal


def require_student(request: Request) -> CurrentPrincipal:
    """Require the Student role. 401 if unauthenticated, 403 otherwise."""
    return _require_role(request, Role.STUDENT)


def require_admin(request: Request) -> CurrentPrincipal:
    """Require the Admin role. 401 if unauthenticated, 403 otherwise."""
    return _require_role(request, Role.ADMIN)
