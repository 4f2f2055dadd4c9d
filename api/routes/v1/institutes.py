"""
api/routes/v1/institutes.py -- Institute detail lookup.

Routes:
  GET /api/v1/institutes/{institute_id} -- public; an authenticated viewer's
                                           lookup is added to their search history

Search and ranking of institutes are served elsewhere.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.errors import result_response
from auth.dependencies import try_get_current_principal
from student.services import InstituteService

router = APIRouter()


@router.get("/institutes/{institute_id}")
def get_institute(request: Request, institute_id: int) -> JSONResponse:
    viewer = try_get_current_principal(request)
    service: InstituteService = request.app.state.institute_service
    return result_response(service.get_institute(institute_id, viewer.id if viewer else None))
