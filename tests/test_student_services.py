"""
tests/test_student_services.py -- Unit tests for student/services.py.

Covers:
  - Read-after-own-write: add/remove favorite is visible on the next read even
    though the list is cached, and even when the write lands while the list
    is being loaded into the cache
  - IDOR: one principal never sees or mutates another principal's records
  - Favorites: unknown institute 404, duplicate 409, status lookup, paging
  - Search history: repeat views de-duplicated, delete one, clear all
  - Fraud reports: list and get are owner-scoped
  - Institute lookup records history only for authenticated viewers
  - purge_principal_data detaches reports and clears cached lists
"""

from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass

import pytest
from sqlalchemy import select

from cache.store import UserScopedCache, cache_key
from conftest import make_user_store
from core.errors import ErrorKind
from student.models import Institute
from student.quota import FRAUD_REPORTS, QuotaLimiter
from student.services import (
    FAVORITES_PREFIX,
    FavoritesService,
    FraudReportService,
    InstituteService,
    SearchHistoryService,
    purge_principal_data,
)
from student.store import StudentStore, fraud_reports

DESCRIPTION = "Asked for cash registration fees and never issued receipts."


@dataclass
class StudentHarness:
    store: StudentStore
    cache: UserScopedCache
    favorites: FavoritesService
    history: SearchHistoryService
    reports: FraudReportService
    institutes: InstituteService
    institute_ids: list[int]


@pytest.fixture()
def harness() -> Generator[StudentHarness, None, None]:
    user_store = make_user_store()
    store = StudentStore(user_store.engine)
    cache = UserScopedCache()
    history = SearchHistoryService(store, cache)
    quota = QuotaLimiter({FRAUD_REPORTS: store.count_fraud_reports}, {FRAUD_REPORTS: 5})
    ids = [store.add_institute(Institute(name=f"College {n}", accreditation_number=f"N{n}")) for n in range(1, 13)]
    yield StudentHarness(
        store=store,
        cache=cache,
        favorites=FavoritesService(store, cache),
        history=history,
        reports=FraudReportService(store, quota),
        institutes=InstituteService(store, history),
        institute_ids=ids,
    )
    cache.close()
    user_store.close()


def _favorite_ids(h: StudentHarness, principal_id: str) -> list[int]:
    return [item["institute"]["id"] for item in h.favorites.get_favorites(principal_id, 1, 50).data.items]


class TestFavorites:
    def test_read_after_own_write(self, harness: StudentHarness) -> None:
        first, second = harness.institute_ids[:2]
        assert _favorite_ids(harness, "u1") == []  # primes the cache

        assert harness.favorites.add_favorite("u1", first).success is True
        assert _favorite_ids(harness, "u1") == [first]

        harness.favorites.add_favorite("u1", second)
        assert set(_favorite_ids(harness, "u1")) == {first, second}

        assert harness.favorites.remove_favorite("u1", first).success is True
        assert _favorite_ids(harness, "u1") == [second]

    def test_write_during_cache_fill_is_visible_on_next_read(
        self, harness: StudentHarness, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        institute = harness.institute_ids[0]
        load = harness.favorites._load

        def load_then_write(principal_id: str) -> list[dict]:
            snapshot = load(principal_id)
            monkeypatch.setattr(harness.favorites, "_load", load)
            assert harness.favorites.add_favorite(principal_id, institute).success is True
            return snapshot

        monkeypatch.setattr(harness.favorites, "_load", load_then_write)
        assert _favorite_ids(harness, "u1") == []
        assert _favorite_ids(harness, "u1") == [institute]

    def test_idor_isolation(self, harness: StudentHarness) -> None:
        mine, theirs = harness.institute_ids[:2]
        harness.favorites.add_favorite("u1", mine)
        harness.favorites.add_favorite("u2", theirs)

        assert _favorite_ids(harness, "u1") == [mine]
        # u1 removing an institute only u2 favorited must not touch u2's record.
        result = harness.favorites.remove_favorite("u1", theirs)
        assert result.kind is ErrorKind.NOT_FOUND
        assert _favorite_ids(harness, "u2") == [theirs]
        assert harness.favorites.favorite_status("u1", theirs).data["is_favorited"] is False

    def test_unknown_institute_and_duplicate(self, harness: StudentHarness) -> None:
        missing = harness.favorites.add_favorite("u1", 99999)
        assert missing.kind is ErrorKind.NOT_FOUND
        assert missing.errors == ["Institute with ID 99999 does not exist"]

        institute = harness.institute_ids[0]
        assert harness.favorites.add_favorite("u1", institute).success is True
        duplicate = harness.favorites.add_favorite("u1", institute)
        assert duplicate.kind is ErrorKind.CONFLICT

    def test_inactive_institute_cannot_be_favorited(self, harness: StudentHarness) -> None:
        closed = harness.store.add_institute(Institute(name="Closed", accreditation_number="X", is_active=False))
        assert harness.favorites.add_favorite("u1", closed).kind is ErrorKind.NOT_FOUND

    def test_status(self, harness: StudentHarness) -> None:
        institute = harness.institute_ids[0]
        harness.favorites.add_favorite("u1", institute)
        status = harness.favorites.favorite_status("u1", institute).data
        assert status["is_favorited"] is True
        assert status["favorite_id"] is not None

    def test_paging_clamps_and_slices(self, harness: StudentHarness) -> None:
        for institute in harness.institute_ids:
            harness.favorites.add_favorite("u1", institute)

        page = harness.favorites.get_favorites("u1", 2, 5).data
        assert len(page.items) == 5
        assert page.total_count == 12
        assert page.total_pages == 3
        assert page.has_next_page and page.has_previous_page

        clamped = harness.favorites.get_favorites("u1", 0, 500).data
        assert clamped.page == 1
        assert clamped.page_size == 50


class TestSearchHistory:
    def test_repeat_view_is_deduplicated(self, harness: StudentHarness) -> None:
        institute = harness.institute_ids[0]
        first = harness.history.record_search("u1", institute).data
        second = harness.history.record_search("u1", institute).data
        assert first == second
        assert harness.history.get_history("u1").data.total_count == 1

    def test_delete_entry_is_owner_scoped(self, harness: StudentHarness) -> None:
        entry_id = harness.history.record_search("u1", harness.institute_ids[0]).data

        assert harness.history.delete_entry("u2", entry_id).kind is ErrorKind.NOT_FOUND
        assert harness.history.get_history("u1").data.total_count == 1

        assert harness.history.delete_entry("u1", entry_id).success is True
        assert harness.history.get_history("u1").data.total_count == 0

    def test_clear_history(self, harness: StudentHarness) -> None:
        for institute in harness.institute_ids[:3]:
            harness.history.record_search("u1", institute)
        harness.history.record_search("u2", harness.institute_ids[0])

        assert harness.history.get_history("u1").data.total_count == 3  # cached
        result = harness.history.clear_history("u1")
        assert result.data == {"deleted_count": 3}
        assert harness.history.get_history("u1").data.total_count == 0
        assert harness.history.get_history("u2").data.total_count == 1

        assert harness.history.clear_history("u1").message == "No search history to clear"


class TestFraudReports:
    def test_reports_are_owner_scoped(self, harness: StudentHarness) -> None:
        report = harness.reports.create_report("u1", "Fly By Night College", DESCRIPTION).data

        assert harness.reports.get_report("u1", report["id"]).success is True
        assert harness.reports.get_report("u2", report["id"]).kind is ErrorKind.NOT_FOUND
        assert harness.reports.list_reports("u2").data.total_count == 0
        assert harness.reports.list_reports("u1").data.items[0]["status"] == "Submitted"


class TestInstitutes:
    def test_anonymous_lookup_records_nothing(self, harness: StudentHarness) -> None:
        institute = harness.institute_ids[0]
        result = harness.institutes.get_institute(institute)
        assert result.success is True
        assert result.data["name"] == "College 1"
        assert harness.history.get_history("u1").data.total_count == 0

    def test_authenticated_lookup_records_history(self, harness: StudentHarness) -> None:
        institute = harness.institute_ids[0]
        harness.institutes.get_institute(institute, viewer_id="u1")
        items = harness.history.get_history("u1").data.items
        assert [i["institute"]["id"] for i in items] == [institute]

    def test_unknown_institute(self, harness: StudentHarness) -> None:
        assert harness.institutes.get_institute(424242).kind is ErrorKind.NOT_FOUND


class TestPrincipalPurge:
    def test_purge_removes_data_and_cache(self, harness: StudentHarness) -> None:
        institute = harness.institute_ids[0]
        harness.favorites.add_favorite("u1", institute)
        harness.history.record_search("u1", institute)
        report = harness.reports.create_report("u1", "Fly By Night College", DESCRIPTION).data
        _favorite_ids(harness, "u1")  # cache the list

        purge_principal_data(harness.store, harness.cache, "u1")

        assert harness.cache.get(cache_key(FAVORITES_PREFIX, "u1")) is None
        assert _favorite_ids(harness, "u1") == []
        assert harness.history.get_history("u1").data.total_count == 0
        # The report survives, detached from its author.
        assert harness.reports.get_report("u1", report["id"]).kind is ErrorKind.NOT_FOUND
        with harness.store.engine.connect() as conn:
            owner = conn.execute(
                select(fraud_reports.c.principal_id).where(fraud_reports.c.id == report["id"])
            ).scalar_one()
        assert owner is None
