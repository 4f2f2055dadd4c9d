"""
api/errors.py -- Map service results and error kinds onto HTTP responses.

Routes never inspect message text to choose a status. They hand the
ServiceResult to result_response(), which switches on result.kind.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from api.models import ApiResponse
from core.errors import ErrorKind, ServiceResult

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.AUTHORIZATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NOT_IMPLEMENTED: 501,
    ErrorKind.INTERNAL: 500,
}


def status_for(kind: ErrorKind | None) -> int:
    if kind is None:
        return 200
    return STATUS_BY_KIND.get(kind, 500)


def error_body(message: str, errors: list[str] | None = None, code: str | None = None) -> dict[str, Any]:
    return ApiResponse(success=False, message=message, errors=errors or [message], code=code).model_dump()


def result_response(
    result: ServiceResult,
    success_status: int = 200,
    serialize: Callable[[Any], Any] | None = None,
    no_store: bool = False,
) -> JSONResponse:
    """Render a ServiceResult as the standard JSON envelope.

    serialize converts result.data (a domain object) into its API model; it is
    only called on success. no_store adds Cache-Control: no-store, used for
    any response that carries tokens.
    """
    if result.success:
        data = serialize(result.data) if serialize is not None and result.data is not None else result.data
        body = ApiResponse(success=True, message=result.message, data=data)
        status = success_status
    else:
        body = ApiResponse(success=False, message=result.message, errors=result.errors, code=result.code)
        status = status_for(result.kind)

    response = JSONResponse(status_code=status, content=jsonable_encoder(body))
    if no_store:
        response.headers["Cache-Control"] = "no-store"
    return response
