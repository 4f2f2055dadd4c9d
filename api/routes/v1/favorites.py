"""
api/routes/v1/favorites.py -- A student's favorite institutes.

Routes:
  GET    /api/v1/favorites                          -- paginated list (cached)
  POST   /api/v1/favorites                          -- add; 404 unknown institute, 409 duplicate
  DELETE /api/v1/favorites/{institute_id}           -- remove; 404 when not in the caller's favorites
  GET    /api/v1/favorites/{institute_id}/status    -- is it favorited?

All four routes share one fixed-window budget per principal
(favorites_rate_limit, 20/minute by default). Exceeding it answers 429 with
the standard envelope.

IDOR guard: the principal id always comes from require_student; no route
accepts a student id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import result_response
from api.limiter import limiter
from api.models import AddFavoriteRequest, PageData
from auth.dependencies import require_student
from auth.models import CurrentPrincipal
from core.config import get_settings
from student.services import FavoritesService

router = APIRouter()

_favorites_limit = limiter.shared_limit(get_settings().favorites_rate_limit, scope="favorites")


def _service(request: Request) -> FavoritesService:
    return request.app.state.favorites_service


@router.get("/favorites")
@_favorites_limit
def list_favorites(
    request: Request,
    page: int = Query(default=1),
    page_size: int = Query(default=10),
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    result = _service(request).get_favorites(principal.id, page, page_size)
    return result_response(result, serialize=PageData.from_page)


@router.post("/favorites")
@_favorites_limit
def add_favorite(
    request: Request,
    body: AddFavoriteRequest,
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    return result_response(_service(request).add_favorite(principal.id, body.institute_id), success_status=201)


@router.delete("/favorites/{institute_id}")
@_favorites_limit
def remove_favorite(
    request: Request,
    institute_id: int,
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    return result_response(_service(request).remove_favorite(principal.id, institute_id))


@router.get("/favorites/{institute_id}/status")
@_favorites_limit
def favorite_status(
    request: Request,
    institute_id: int,
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    return result_response(_service(request).favorite_status(principal.id, institute_id))
