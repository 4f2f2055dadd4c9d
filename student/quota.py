"""
student/quota.py -- Per-principal daily write quotas.

The limiter is query-based: there is no counter table. For each resource
class it is given a counter callable that counts the principal's existing
writes inside a time window, and a ceiling. The "increment" is the write
itself landing in storage after the check passes.

The window is the current UTC calendar day, [00:00Z, 00:00Z + 24h). A report
filed at 23:59Z and another at 00:01Z fall in different days.

check_and_increment() alone leaves a gap between counting and writing, so two
concurrent submissions could both pass at count N-1. reserve() closes that gap
within one process by holding a per-principal lock across the check and the
caller's write.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime

from core.clock import Clock, utc_day_window, utcnow
from core.errors import RateLimitError

logger = logging.getLogger("educheck.student.quota")

FRAUD_REPORTS = "fraud_reports"

# (principal_id, window_start, window_end) -> number of writes in the window
Counter = Callable[[str, datetime, datetime], int]


class _KeyLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


class QuotaLimiter:
    """Enforce a ceiling on writes per principal per UTC day.

    Usage:
        quota = QuotaLimiter({FRAUD_REPORTS: store.count_fraud_reports}, {FRAUD_REPORTS: 5})
        with quota.reserve(principal_id, FRAUD_REPORTS):
            store.add_fraud_report(report)
    """

    def __init__(
        self,
        counters: Mapping[str, Counter],
        ceilings: Mapping[str, int],
        clock: Clock = utcnow,
    ) -> None:
        self._counters = dict(counters)
        self._ceilings = dict(ceilings)
        self._clock = clock
        # Entries live only while some reserve() holds or waits on them.
        self._locks: dict[tuple[str, str], _KeyLock] = {}
        self._locks_guard = threading.Lock()

    def check_and_increment(self, principal_id: str, resource_class: str) -> int:
        """Allow one more write or raise RateLimitError.

        Returns how many writes remain today after the one being allowed.
        """
        ceiling = self._ceilings[resource_class]
        start, end = utc_day_window(self._clock())
        used = self._counters[resource_class](principal_id, start, end)
        if used >= ceiling:
            logger.warning(
                "Daily quota reached. PrincipalId: %s, Resource: %s, Count: %d",
                principal_id,
                resource_class,
                used,
            )
            raise RateLimitError(
                "Daily report limit reached",
                [f"You can only submit {ceiling} reports per day. Please try again tomorrow."],
            )
        return ceiling - used - 1

    @contextmanager
    def reserve(self, principal_id: str, resource_class: str) -> Iterator[int]:
        """Hold the principal's quota lock across the check and the write."""
        key = (principal_id, resource_class)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield self.check_and_increment(principal_id, resource_class)
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]
