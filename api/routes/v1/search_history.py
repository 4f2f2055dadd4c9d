"""
api/routes/v1/search_history.py -- The caller's institute view history.

Routes:
  GET    /api/v1/search-history             -- paginated list (cached)
  DELETE /api/v1/search-history/{entry_id}  -- delete one entry; 404 if not the caller's
  DELETE /api/v1/search-history             -- clear all of the caller's entries

Entries are written by GET /api/v1/institutes/{id} for authenticated viewers.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import result_response
from api.models import PageData
from auth.dependencies import get_current_principal
from auth.models import CurrentPrincipal
from student.services import SearchHistoryService

router = APIRouter()


def _service(request: Request) -> SearchHistoryService:
    return request.app.state.search_history_service


@router.get("/search-history")
def get_history(
    request: Request,
    page: int = Query(default=1),
    page_size: int = Query(default=10),
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    return result_response(_service(request).get_history(principal.id, page, page_size), serialize=PageData.from_page)


@router.delete("/search-history/{entry_id}")
def delete_entry(
    request: Request,
    entry_id: int,
    principal: CurrentPrincipal = Depends(get_current_principal),
) -> JSONResponse:
    return result_response(_service(request).delete_entry(principal.id, entry_id))


@router.delete("/search-history")
def clear_history(request: Request, principal: CurrentPrincipal = Depends(get_current_principal)) -> JSONResponse:
    return result_response(_service(request).clear_history(principal.id))
