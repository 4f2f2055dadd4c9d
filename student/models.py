"""
student/models.py -- Domain dataclasses for student-owned resources.

Pattern: Data class. Institutes are reference data; favorites, search history
entries and fraud reports belong to one principal each.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class FraudReportStatus(str, Enum):
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "UnderReview"
    VERIFIED = "Verified"
    DISMISSED = "Dismissed"
    ACTION_TAKEN = "ActionTaken"


@dataclass
class Institute:
    name: str
    accreditation_number: str
    id: int | None = None
    accreditation_period: str | None = None
    provider_type: str | None = None
    physical_address: str | None = None
    postal_address: str | None = None
    telephone: str | None = None
    province: str | None = None
    city: str | None = None
    is_active: bool = True

    @property
    def is_accredited(self) -> bool:
        return (self.provider_type or "").lower() == "accredited"


@dataclass
class FavoriteInstitute:
    principal_id: str
    institute_id: int
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class SearchHistoryEntry:
    principal_id: str
    institute_id: int
    id: int | None = None
    searched_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class FraudReport:
    """A student's report about a suspected fraudulent institute.

    principal_id becomes None when the reporting principal is deleted; the
    report itself is kept for review.
    """

    reported_institute_name: str
    description: str
    principal_id: str | None = None
    id: str | None = None
    institute_id: int | None = None
    reported_institute_address: str | None = None
    reported_institute_phone: str | None = None
    status: FraudReportStatus = FraudReportStatus.SUBMITTED
    created_at: datetime | None = None


@dataclass
class Page:
    """One page of a list result plus its pagination metadata."""

    items: list[Any]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1
