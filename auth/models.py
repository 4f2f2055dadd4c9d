"""
auth/models.py -- Domain dataclasses for identity and session entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the shape.

Layer rule: no imports from api/, student/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    STUDENT = "Student"
    ADMIN = "Admin"


class AdminLevel(str, Enum):
    STANDARD = "Standard"
    SENIOR = "Senior"
    SUPER = "Super"


@dataclass
class Principal:
    """An authenticated identity (student or admin).

    email is stored lower-cased so uniqueness is case-insensitive.
    hashed_password is None for accounts provisioned through Google federation.
    lockout_until is set once failed_login_count reaches the configured ceiling
    and cleared by the next successful login.
    """

    email: str
    first_name: str
    last_name: str
    role: Role
    id: str | None = None
    hashed_password: str | None = None
    phone_number: str | None = None
    is_active: bool = True
    email_confirmed: bool = False
    failed_login_count: int = 0
    lockout_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class StudentProfile:
    province: str | None = None
    city: str | None = None
    id: str | None = None
    principal_id: str | None = None


@dataclass
class AdminProfile:
    department: str | None = None
    employee_id: str | None = None
    admin_level: AdminLevel = AdminLevel.STANDARD
    id: str | None = None
    principal_id: str | None = None


@dataclass
class SessionRecord:
    """A persisted refresh-token session.

    token_hash is base64(SHA-256(raw_token)). The raw token is returned to the
    client once and never stored. A record is active while it is neither
    revoked nor past expires_at; every other state is terminal.
    """

    principal_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    revoked: bool = False
    device_info: str | None = None
    ip_address: str | None = None
    created_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass
class Registration:
    """Fields common to student and admin self-registration."""

    email: str
    password: str
    first_name: str
    last_name: str
    phone_number: str | None = None


@dataclass
class StudentRegistration(Registration):
    province: str | None = None
    city: str | None = None


@dataclass
class AdminRegistration(Registration):
    department: str | None = None
    employee_id: str | None = None


@dataclass
class ClientContext:
    """Optional device metadata stored alongside a session record."""

    device_info: str | None = None
    ip_address: str | None = None


@dataclass
class CurrentPrincipal:
    """The caller identity derived from a verified access-token subject claim."""

    id: str
    email: str
    role: Role


@dataclass
class UserView:
    """Outward view of a principal plus whichever profile it owns."""

    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    email_confirmed: bool
    created_at: datetime | None
    phone_number: str | None = None
    province: str | None = None
    city: str | None = None
    department: str | None = None
    employee_id: str | None = None
    admin_level: AdminLevel | None = None


@dataclass
class AuthPayload:
    access_token: str
    refresh_token: str
    access_token_expiration: datetime
    user: UserView
