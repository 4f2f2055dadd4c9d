"""
student/services.py -- Favorites, search history, fraud reports and institute lookup.

Every method takes the caller's principal_id as its first argument. Handlers
obtain it from auth.dependencies and never from request input, and the store
filters every query by it, so one student cannot read or mutate another's
records.

Caching: favorites and search history lists are cached per principal under
"{prefix}:{principal_id}" as JSON-ready dicts (the full list; pages are cut
from it). A mutating method invalidates the principal's key before returning,
so the next read of that principal always reflects its own write.

All public methods return a ServiceResult via @service_boundary.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import IntegrityError

from cache.store import UserScopedCache, cache_key
from core.clock import Clock, to_iso, utcnow
from core.errors import ConflictError, NotFoundError, ServiceResult, service_boundary
from student.models import FavoriteInstitute, FraudReport, Institute, Page, SearchHistoryEntry
from student.quota import FRAUD_REPORTS, QuotaLimiter
from student.store import StudentStore

logger = logging.getLogger("educheck.student")

FAVORITES_PREFIX = "favorites"
SEARCH_HISTORY_PREFIX = "search_history"

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 50


# ---------------------------------------------------------------------------
# Views and pagination
# ---------------------------------------------------------------------------


def institute_view(institute: Institute) -> dict[str, Any]:
    return {
        "id": institute.id,
        "name": institute.name,
        "accreditation_number": institute.accreditation_number,
        "accreditation_period": institute.accreditation_period,
        "provider_type": institute.provider_type,
        "physical_address": institute.physical_address,
        "postal_address": institute.postal_address,
        "telephone": institute.telephone,
        "province": institute.province,
        "city": institute.city,
        "is_accredited": institute.is_accredited,
    }


def favorite_view(favorite: FavoriteInstitute, institute: Institute) -> dict[str, Any]:
    return {"id": favorite.id, "favorited_at": to_iso(favorite.created_at), "institute": institute_view(institute)}


def history_view(entry: SearchHistoryEntry, institute: Institute) -> dict[str, Any]:
    return {"id": entry.id, "searched_at": to_iso(entry.searched_at), "institute": institute_view(institute)}


def report_view(report: FraudReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "reported_institute_name": report.reported_institute_name,
        "reported_institute_address": report.reported_institute_address,
        "reported_institute_phone": report.reported_institute_phone,
        "description": report.description,
        "status": report.status.value,
        "created_at": to_iso(report.created_at),
    }


def clamp_paging(page: int, page_size: int) -> tuple[int, int]:
    return max(page, 1), min(max(page_size, 1), MAX_PAGE_SIZE)


def paginate(items: list[Any], page: int, page_size: int) -> Page:
    page, page_size = clamp_paging(page, page_size)
    start = (page - 1) * page_size
    return Page(items=items[start : start + page_size], page=page, page_size=page_size, total_count=len(items))


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------


class FavoritesService:
    def __init__(self, store: StudentStore, cache: UserScopedCache) -> None:
        self._store = store
        self._cache = cache

    def _load(self, principal_id: str) -> list[dict[str, Any]]:
        return [favorite_view(f, i) for f, i in self._store.list_favorites(principal_id)]

    @service_boundary("An error occurred while retrieving favorites")
    def get_favorites(self, principal_id: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> ServiceResult:
        items = self._cache.get_or_load(cache_key(FAVORITES_PREFIX, principal_id), lambda: self._load(principal_id))
        result = paginate(items, page, page_size)
        message = f"{result.total_count} favorite(s) found" if result.total_count else "No favorites found"
        return ServiceResult.ok(message, result)

    @service_boundary("An error occurred while adding to favorites")
    def add_favorite(self, principal_id: str, institute_id: int) -> ServiceResult:
        institute = self._store.get_institute(institute_id)
        if institute is None:
            raise NotFoundError("Institute not found", [f"Institute with ID {institute_id} does not exist"])
        if self._store.get_favorite(principal_id, institute_id) is not None:
            raise ConflictError("Institute is already in favorites", ["This institute is already in your favorites"])
        try:
            favorite = self._store.add_favorite(principal_id, institute_id)
        except IntegrityError as exc:
            raise ConflictError(
                "Institute is already in favorites", ["This institute is already in your favorites"]
            ) from exc

        self._cache.invalidate(cache_key(FAVORITES_PREFIX, principal_id))
        logger.info("AUDIT: Favorite added. PrincipalId: %s, InstituteId: %s", principal_id, institute_id)
        return ServiceResult.ok("Institute added to favorites", favorite_view(favorite, institute))

    @service_boundary("An error occurred while removing from favorites")
    def remove_favorite(self, principal_id: str, institute_id: int) -> ServiceResult:
        if not self._store.remove_favorite(principal_id, institute_id):
            raise NotFoundError("Favorite not found", ["This institute is not in your favorites"])
        self._cache.invalidate(cache_key(FAVORITES_PREFIX, principal_id))
        logger.info("AUDIT: Favorite removed. PrincipalId: %s, InstituteId: %s", principal_id, institute_id)
        return ServiceResult.ok("Institute removed from favorites")

    @service_boundary("An error occurred while checking favorite status")
    def favorite_status(self, principal_id: str, institute_id: int) -> ServiceResult:
        favorite = self._store.get_favorite(principal_id, institute_id)
        status = {
            "is_favorited": favorite is not None,
            "favorite_id": favorite.id if favorite else None,
            "favorited_at": to_iso(favorite.created_at) if favorite else None,
        }
        message = "Institute is favorited" if favorite else "Institute is not favorited"
        return ServiceResult.ok(message, status)


# ---------------------------------------------------------------------------
# Search history
# ---------------------------------------------------------------------------


class SearchHistoryService:
    """Per-principal record of viewed institutes.

    Repeat views of the same institute within a rolling 24 hours update the
    existing entry's timestamp instead of adding a row.
    """

    def __init__(self, store: StudentStore, cache: UserScopedCache, clock: Clock = utcnow) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock

    def _load(self, principal_id: str) -> list[dict[str, Any]]:
        return [history_view(e, i) for e, i in self._store.list_search_history(principal_id)]

    @service_boundary("An error occurred while retrieving search history")
    def get_history(self, principal_id: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> ServiceResult:
        items = self._cache.get_or_load(
            cache_key(SEARCH_HISTORY_PREFIX, principal_id), lambda: self._load(principal_id)
        )
        result = paginate(items, page, page_size)
        message = (
            f"{result.total_count} search history entries found" if result.total_count else "No search history found"
        )
        return ServiceResult.ok(message, result)

    @service_boundary("An error occurred while recording search history")
    def record_search(self, principal_id: str, institute_id: int) -> ServiceResult:
        entry = self._store.record_search(principal_id, institute_id, at=self._clock())
        self._cache.invalidate(cache_key(SEARCH_HISTORY_PREFIX, principal_id))
        logger.info("Search recorded. PrincipalId: %s, InstituteId: %s", principal_id, institute_id)
        return ServiceResult.ok("Search recorded", entry.id)

    @service_boundary("An error occurred while deleting search history entry")
    def delete_entry(self, principal_id: str, entry_id: int) -> ServiceResult:
        if not self._store.delete_search_entry(principal_id, entry_id):
            raise NotFoundError(
                "Search history entry not found",
                ["The specified search history entry was not found or does not belong to you"],
            )
        self._cache.invalidate(cache_key(SEARCH_HISTORY_PREFIX, principal_id))
        return ServiceResult.ok("Search history entry deleted successfully", {"deleted_count": 1})

    @service_boundary("An error occurred while clearing search history")
    def clear_history(self, principal_id: str) -> ServiceResult:
        deleted = self._store.clear_search_history(principal_id)
        self._cache.invalidate(cache_key(SEARCH_HISTORY_PREFIX, principal_id))
        if not deleted:
            return ServiceResult.ok("No search history to clear", {"deleted_count": 0})
        logger.info("Cleared %d search history entries for principal: %s", deleted, principal_id)
        return ServiceResult.ok(f"Successfully cleared {deleted} search history entries", {"deleted_count": deleted})


# ---------------------------------------------------------------------------
# Fraud reports
# ---------------------------------------------------------------------------


class FraudReportService:
    def __init__(self, store: StudentStore, quota: QuotaLimiter, clock: Clock = utcnow) -> None:
        self._store = store
        self._quota = quota
        self._clock = clock

    @service_boundary("An error occurred while submitting the report")
    def create_report(
        self,
        principal_id: str,
        reported_institute_name: str,
        description: str,
        reported_institute_address: str | None = None,
        reported_institute_phone: str | None = None,
        institute_id: int | None = None,
    ) -> ServiceResult:
        with self._quota.reserve(principal_id, FRAUD_REPORTS) as remaining:
            report = self._store.add_fraud_report(
                FraudReport(
                    principal_id=principal_id,
                    institute_id=institute_id,
                    reported_institute_name=reported_institute_name.strip(),
                    reported_institute_address=reported_institute_address,
                    reported_institute_phone=reported_institute_phone,
                    description=description.strip(),
                    created_at=self._clock(),
                )
            )
        logger.info(
            "AUDIT: Fraud report submitted. ReportId: %s, PrincipalId: %s, Remaining today: %d",
            report.id,
            principal_id,
            remaining,
        )
        return ServiceResult.ok("Fraud report submitted successfully", report_view(report))

    @service_boundary("An error occurred while retrieving reports")
    def list_reports(self, principal_id: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> ServiceResult:
        page, page_size = clamp_paging(page, page_size)
        reports, total = self._store.list_fraud_reports(principal_id, (page - 1) * page_size, page_size)
        result = Page(items=[report_view(r) for r in reports], page=page, page_size=page_size, total_count=total)
        return ServiceResult.ok(f"{total} report(s) found" if total else "No reports found", result)

    @service_boundary("An error occurred while retrieving the report")
    def get_report(self, principal_id: str, report_id: str) -> ServiceResult:
        report = self._store.get_fraud_report(principal_id, report_id)
        if report is None:
            raise NotFoundError(
                "Report not found", ["The requested report was not found or you don't have access to it."]
            )
        return ServiceResult.ok("Report retrieved successfully", report_view(report))


# ---------------------------------------------------------------------------
# Institutes
# ---------------------------------------------------------------------------


class InstituteService:
    """Institute detail lookup. Authenticated views are added to search history."""

    def __init__(self, store: StudentStore, history: SearchHistoryService) -> None:
        self._store = store
        self._history = history

    @service_boundary("An error occurred while retrieving the institute")
    def get_institute(self, institute_id: int, viewer_id: str | None = None) -> ServiceResult:
        institute = self._store.get_institute(institute_id)
        if institute is None:
            logger.warning("Institute not found with ID: %s", institute_id)
            raise NotFoundError("Institute not found", [f"No institute found with ID {institute_id}"])
        if viewer_id is not None:
            recorded = self._history.record_search(viewer_id, institute_id)
            if not recorded.success:
                # History is secondary; the lookup still succeeds.
                logger.warning("Could not record search history for principal: %s", viewer_id)
        return ServiceResult.ok("Institute found", institute_view(institute))


# ---------------------------------------------------------------------------
# Principal deletion
# ---------------------------------------------------------------------------


def purge_principal_data(store: StudentStore, cache: UserScopedCache, principal_id: str) -> None:
    """Remove a deleted principal's student data and cached lists."""
    store.delete_for_principal(principal_id)
    for prefix in (FAVORITES_PREFIX, SEARCH_HISTORY_PREFIX):
        cache.invalidate(cache_key(prefix, principal_id))
