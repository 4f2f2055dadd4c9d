"""
api/routes/v1/fraud_reports.py -- Student fraud reports.

Routes:
  POST /api/v1/fraud-reports              -- submit; 429 once the daily quota is used
  GET  /api/v1/fraud-reports              -- the caller's reports, newest first
  GET  /api/v1/fraud-reports/{report_id}  -- one of the caller's reports; 404 otherwise

The daily quota (fraud_reports_per_day, 5 by default) counts reports created
in the current UTC calendar day and is enforced by the service, not here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.errors import result_response
from api.models import CreateFraudReportRequest, PageData
from auth.dependencies import require_student
from auth.models import CurrentPrincipal
from student.services import FraudReportService

router = APIRouter()


def _service(request: Request) -> FraudReportService:
    return request.app.state.fraud_report_service


@router.post("/fraud-reports")
def create_report(
    request: Request,
    body: CreateFraudReportRequest,
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    result = _service(request).create_report(
        principal.id,
        reported_institute_name=body.reported_institute_name,
        description=body.description,
        reported_institute_address=body.reported_institute_address,
        reported_institute_phone=body.reported_institute_phone,
        institute_id=body.institute_id,
    )
    return result_response(result, success_status=201)


@router.get("/fraud-reports")
def list_reports(
    request: Request,
    page: int = Query(default=1),
    page_size: int = Query(default=10),
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    return result_response(_service(request).list_reports(principal.id, page, page_size), serialize=PageData.from_page)


@router.get("/fraud-reports/{report_id}")
def get_report(
    request: Request,
    report_id: str,
    principal: CurrentPrincipal = Depends(require_student),
) -> JSONResponse:
    return result_response(_service(request).get_report(principal.id, report_id))
