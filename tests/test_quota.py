"""
tests/test_quota.py -- Unit tests for student/quota.py and the fraud report quota.

Covers:
  - N writes on one UTC day succeed; write N+1 raises RateLimitError
  - The window is the UTC calendar day: the next day starts from zero
  - Quotas are per principal
  - FraudReportService surfaces the ceiling as a rate_limited result
  - reserve() serializes one principal's writes and frees its lock afterwards
"""

from __future__ import annotations

import threading
import time
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_user_store
from core.errors import ErrorKind, RateLimitError
from student.quota import FRAUD_REPORTS, QuotaLimiter
from student.services import FraudReportService
from student.store import StudentStore

DESCRIPTION = "Claims accreditation it does not have and takes deposits."


class MovableClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def store() -> Generator[StudentStore, None, None]:
    user_store = make_user_store()
    yield StudentStore(user_store.engine)
    user_store.close()


def _service(store: StudentStore, clock: MovableClock, ceiling: int = 5) -> FraudReportService:
    quota = QuotaLimiter({FRAUD_REPORTS: store.count_fraud_reports}, {FRAUD_REPORTS: ceiling}, clock=clock)
    return FraudReportService(store, quota, clock=clock)


class TestQuotaLimiter:
    def test_ceiling_reached_raises(self) -> None:
        writes: list[datetime] = []
        clock = MovableClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))

        def count(principal_id: str, start: datetime, end: datetime) -> int:
            return sum(1 for w in writes if start <= w < end)

        quota = QuotaLimiter({FRAUD_REPORTS: count}, {FRAUD_REPORTS: 2}, clock=clock)
        assert quota.check_and_increment("p1", FRAUD_REPORTS) == 1
        writes.append(clock())
        assert quota.check_and_increment("p1", FRAUD_REPORTS) == 0
        writes.append(clock())

        with pytest.raises(RateLimitError):
            quota.check_and_increment("p1", FRAUD_REPORTS)


class TestFraudReportQuota:
    def test_five_per_day_then_rejected_then_next_day_allowed(self, store: StudentStore) -> None:
        clock = MovableClock(datetime(2026, 3, 10, 22, 30, tzinfo=timezone.utc))
        service = _service(store, clock)

        for _ in range(5):
            assert service.create_report("p1", "Fly By Night College", DESCRIPTION).success is True

        sixth = service.create_report("p1", "Fly By Night College", DESCRIPTION)
        assert sixth.success is False
        assert sixth.kind is ErrorKind.RATE_LIMITED
        assert sixth.message == "Daily report limit reached"
        assert store.list_fraud_reports("p1", 0, 50)[1] == 5

        # Two hours later is a new UTC day, even though fewer than 24h have passed.
        clock.now += timedelta(hours=2)
        assert service.create_report("p1", "Fly By Night College", DESCRIPTION).success is True

    def test_quota_is_per_principal(self, store: StudentStore) -> None:
        clock = MovableClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))
        service = _service(store, clock, ceiling=1)

        assert service.create_report("p1", "Fly By Night College", DESCRIPTION).success is True
        assert service.create_report("p1", "Fly By Night College", DESCRIPTION).success is False
        assert service.create_report("p2", "Fly By Night College", DESCRIPTION).success is True


class TestReserveLocks:
    def test_lock_released_after_write_and_after_rejection(self) -> None:
        writes: list[str] = []
        quota = QuotaLimiter({FRAUD_REPORTS: lambda pid, s, e: writes.count(pid)}, {FRAUD_REPORTS: 1})

        with quota.reserve("p1", FRAUD_REPORTS):
            writes.append("p1")
        assert quota._locks == {}

        with pytest.raises(RateLimitError):
            with quota.reserve("p1", FRAUD_REPORTS):
                writes.append("p1")
        assert quota._locks == {}
        assert writes == ["p1"]

    def test_waiter_shares_the_lock_and_both_are_evicted(self) -> None:
        writes: list[str] = []
        quota = QuotaLimiter({FRAUD_REPORTS: lambda pid, s, e: writes.count(pid)}, {FRAUD_REPORTS: 1})
        outcomes: list[str] = []

        def second() -> None:
            try:
                with quota.reserve("p1", FRAUD_REPORTS):
                    writes.append("p1")
                outcomes.append("written")
            except RateLimitError:
                outcomes.append("rejected")

        with quota.reserve("p1", FRAUD_REPORTS):
            worker = threading.Thread(target=second)
            worker.start()
            time.sleep(0.05)  # let the second caller queue on the held lock
            writes.append("p1")
        worker.join()

        assert outcomes == ["rejected"]
        assert writes == ["p1"]
        assert quota._locks == {}
