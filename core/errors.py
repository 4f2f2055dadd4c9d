"""
core/errors.py -- Error taxonomy and the service result envelope.

Domain services never let an exception cross their public boundary. They raise
ServiceError subclasses internally and service_boundary() converts those into a
failed ServiceResult. Anything else is an unanticipated failure: it is logged
with the traceback and replaced by an InternalError result whose text carries
no exception detail.

The transport layer maps ServiceResult.kind to an HTTP status. It switches on
the kind, never on message text.

Layer rule: core/ is the kernel. No imports from api/, auth/, student/, or cache/.
"""

from __future__ import annotations

import functools
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("educheck.errors")

GENERIC_ERROR = "An unexpected error occurred. Please try again."


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    AUTHENTICATION = "authentication_error"
    AUTHORIZATION = "authorization_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    NOT_IMPLEMENTED = "not_implemented"
    INTERNAL = "internal_error"


class AuthFailure(str, Enum):
    """Why an authentication attempt was refused. Exposed to clients as `code`."""

    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    INACTIVE = "inactive"
    INVALID_TOKEN = "invalid_token"
    REVOKED = "revoked"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    PROVIDER_ERROR = "provider_error"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ServiceError(Exception):
    """Base class for anticipated domain failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors) if errors else [message]

    @property
    def code(self) -> str | None:
        return None


class ValidationError(ServiceError):
    kind = ErrorKind.VALIDATION


class AuthenticationError(ServiceError):
    kind = ErrorKind.AUTHENTICATION

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        reason: AuthFailure = AuthFailure.INVALID_CREDENTIALS,
    ) -> None:
        super().__init__(message, errors)
        self.reason = reason

    @property
    def code(self) -> str | None:
        return self.reason.value


class AuthorizationError(ServiceError):
    kind = ErrorKind.AUTHORIZATION


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT


class RateLimitError(ServiceError):
    kind = ErrorKind.RATE_LIMITED


class NotImplementedFeature(ServiceError):
    kind = ErrorKind.NOT_IMPLEMENTED


class InternalError(ServiceError):
    kind = ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Result envelope
# ---------------------------------------------------------------------------


@dataclass
class ServiceResult:
    """Uniform outcome of every domain service call.

    data is operation-specific (an AuthPayload, a page of favorites, ...) and
    is None on failure. kind is None on success.
    """

    success: bool
    message: str
    errors: list[str] = field(default_factory=list)
    kind: ErrorKind | None = None
    code: str | None = None
    data: Any = None

    @classmethod
    def ok(cls, message: str, data: Any = None) -> ServiceResult:
        return cls(success=True, message=message, data=data)

    @classmethod
    def from_error(cls, exc: ServiceError) -> ServiceResult:
        return cls(success=False, message=exc.message, errors=exc.errors, kind=exc.kind, code=exc.code)


def service_boundary(action: str):
    """Decorate a service method so it always returns a ServiceResult.

    action is the human-readable failure message used for unexpected errors,
    e.g. "An error occurred while adding to favorites". Works for both plain
    and coroutine functions.
    """

    def decorator(func):
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> ServiceResult:
                try:
                    return await func(*args, **kwargs)
                except ServiceError as exc:
                    return ServiceResult.from_error(exc)
                except Exception:
                    logger.exception("Unhandled error in %s", func.__qualname__)
                    return ServiceResult.from_error(InternalError(action, [GENERIC_ERROR]))

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> ServiceResult:
            try:
                return func(*args, **kwargs)
            except ServiceError as exc:
                return ServiceResult.from_error(exc)
            except Exception:
                logger.exception("Unhandled error in %s", func.__qualname__)
                return ServiceResult.from_error(InternalError(action, [GENERIC_ERROR]))

        return wrapper

    return decorator
