"""
API request and response models for EduCheck REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
student/models.py, which own the internal domain representation. Route
handlers map between the two.

Every response body uses one envelope:
    {"success": bool, "message": str, "errors": [str], "code": str|null, "data": ...}

Separation of concerns: domain models = truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthPayload, UserView
from student.models import Page

# Coarse shape check only.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^[0-9\s\-\+\(\)]+$"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class _RegisterBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    # Complexity is checked by the service so every failed rule is reported.
    password: str = Field(min_length=1, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=20, pattern=PHONE_PATTERN)


class StudentRegisterRequest(_RegisterBase):
    """Request body for POST /api/v1/auth/register/student."""

    province: Optional[str] = Field(default=None, max_length=50)
    city: Optional[str] = Field(default=None, max_length=100)


class AdminRegisterRequest(_RegisterBase):
    """Request body for POST /api/v1/auth/register/admin."""

    department: Optional[str] = Field(default=None, max_length=100)
    employee_id: Optional[str] = Field(default=None, max_length=50)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class RefreshTokenRequest(BaseModel):
    """Both tokens are required: the access token (expired or not) names the
    subject, the refresh token names the session."""

    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ExternalLoginRequest(BaseModel):
    provider: str = Field(min_length=1, max_length=50)
    id_token: Optional[str] = None


class GoogleAuthRequest(BaseModel):
    """Request body for POST /api/v1/auth/google (SPA-driven code exchange)."""

    code: str = Field(min_length=1)
    state: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1, max_length=2000)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    email_confirmed: bool
    created_at: Optional[datetime] = None
    phone_number: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    department: Optional[str] = None
    employee_id: Optional[str] = None
    admin_level: Optional[str] = None

    @classmethod
    def from_view(cls, view: UserView) -> "UserResponse":
        return cls(
            id=view.id,
            email=view.email,
            first_name=view.first_name,
            last_name=view.last_name,
            role=view.role.value,
            email_confirmed=view.email_confirmed,
            created_at=view.created_at,
            phone_number=view.phone_number,
            province=view.province,
            city=view.city,
            department=view.department,
            employee_id=view.employee_id,
            admin_level=view.admin_level.value if view.admin_level else None,
        )


class AuthData(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expiration: datetime
    user: UserResponse

    @classmethod
    def from_payload(cls, payload: AuthPayload) -> "AuthData":
        return cls(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            access_token_expiration=payload.access_token_expiration,
            user=UserResponse.from_view(payload.user),
        )


class OAuthProviderInfo(BaseModel):
    """One entry in GET /api/v1/auth/providers."""

    name: str
    label: str


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str
    state: str


# ---------------------------------------------------------------------------
# Student -- request models
# ---------------------------------------------------------------------------


class AddFavoriteRequest(BaseModel):
    institute_id: int = Field(gt=0)


class CreateFraudReportRequest(BaseModel):
    """Request body for POST /api/v1/fraud-reports."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reported_institute_name: str = Field(min_length=2, max_length=255)
    reported_institute_address: Optional[str] = Field(default=None, max_length=500)
    reported_institute_phone: Optional[str] = Field(default=None, max_length=50, pattern=PHONE_PATTERN)
    description: str = Field(min_length=20, max_length=2000)
    institute_id: Optional[int] = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class Pagination(BaseModel):
    current_page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class PageData(BaseModel):
    items: list[Any]
    pagination: Pagination

    @classmethod
    def from_page(cls, page: Page) -> "PageData":
        return cls(
            items=page.items,
            pagination=Pagination(
                current_page=page.page,
                page_size=page.page_size,
                total_count=page.total_count,
                total_pages=page.total_pages,
                has_next_page=page.has_next_page,
                has_previous_page=page.has_previous_page,
            ),
        )


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    """Envelope for every JSON response, success or failure."""

    success: bool
    message: str
    errors: list[str] = Field(default_factory=list)
    code: Optional[str] = None
    data: Any = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
