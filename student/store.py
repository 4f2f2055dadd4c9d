"""
student/store.py -- SQLAlchemy Core persistence for student-owned resources.

Pattern: Repository + Data Mapper, same shape as auth/store.py. StudentStore
shares the application engine, so principals, sessions and student data live
in one database.

Ownership: every read or write of a favorite, history entry or fraud report
takes a principal_id and puts it in the WHERE clause. A row owned by another
principal is indistinguishable from a missing one.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, func, select
from sqlalchemy.engine import Engine

from core.clock import from_iso, to_iso, utcnow
from student.models import (
    FavoriteInstitute,
    FraudReport,
    FraudReportStatus,
    Institute,
    SearchHistoryEntry,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

institutes = Table(
    "institutes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("accreditation_number", String(50), nullable=False),
    Column("accreditation_period", String(100)),
    Column("provider_type", String(50)),
    Column("physical_address", Text),
    Column("postal_address", Text),
    Column("telephone", String(50)),
    Column("province", String(50)),
    Column("city", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

favorite_institutes = Table(
    "favorite_institutes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", String(36), nullable=False, index=True),
    Column("institute_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("principal_id", "institute_id", name="uq_favorite_principal_institute"),
)

search_history = Table(
    "search_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", String(36), nullable=False, index=True),
    Column("institute_id", Integer, nullable=False),
    Column("searched_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

fraud_reports = Table(
    "fraud_reports",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("principal_id", String(36), index=True),  # NULL once the reporter is deleted
    Column("institute_id", Integer),
    Column("reported_institute_name", String(255), nullable=False),
    Column("reported_institute_address", Text),
    Column("reported_institute_phone", String(50)),
    Column("description", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default=FraudReportStatus.SUBMITTED.value),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class StudentStore:
    """Repository for institutes and the three student-owned collections.

    Usage:
        store = StudentStore(user_store.engine)
        store.add_favorite(principal_id, institute_id)
        rows = store.list_favorites(principal_id)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Institutes (reference data)
    # ------------------------------------------------------------------

    def add_institute(self, institute: Institute) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                institutes.insert().values(
                    name=institute.name,
                    accreditation_number=institute.accreditation_number,
                    accreditation_period=institute.accreditation_period,
                    provider_type=institute.provider_type,
                    physical_address=institute.physical_address,
                    postal_address=institute.postal_address,
                    telephone=institute.telephone,
                    province=institute.province,
                    city=institute.city,
                    is_active=1 if institute.is_active else 0,
                    created_at=to_iso(utcnow()),
                )
            )
        return result.inserted_primary_key[0]

    def get_institute(self, institute_id: int) -> Institute | None:
        """Return an active institute by id, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                institutes.select().where((institutes.c.id == institute_id) & (institutes.c.is_active == 1))
            ).fetchone()
        return _row_to_institute(row) if row is not None else None

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    def add_favorite(self, principal_id: str, institute_id: int) -> FavoriteInstitute:
        """Insert a favorite. Raises IntegrityError if it already exists."""
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                favorite_institutes.insert().values(
                    principal_id=principal_id, institute_id=institute_id, created_at=to_iso(now)
                )
            )
        return FavoriteInstitute(
            id=result.inserted_primary_key[0],
            principal_id=principal_id,
            institute_id=institute_id,
            created_at=now,
        )

    def get_favorite(self, principal_id: str, institute_id: int) -> FavoriteInstitute | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                favorite_institutes.select().where(
                    (favorite_institutes.c.principal_id == principal_id)
                    & (favorite_institutes.c.institute_id == institute_id)
                )
            ).fetchone()
        return _row_to_favorite(row) if row is not None else None

    def remove_favorite(self, principal_id: str, institute_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                favorite_institutes.delete().where(
                    (favorite_institutes.c.principal_id == principal_id)
                    & (favorite_institutes.c.institute_id == institute_id)
                )
            )
        return result.rowcount > 0

    def list_favorites(self, principal_id: str) -> list[tuple[FavoriteInstitute, Institute]]:
        """Return the principal's favorites joined to active institutes, newest first."""
        stmt = (
            select(favorite_institutes, institutes)
            .join(institutes, institutes.c.id == favorite_institutes.c.institute_id)
            .where((favorite_institutes.c.principal_id == principal_id) & (institutes.c.is_active == 1))
            .order_by(favorite_institutes.c.created_at.desc(), favorite_institutes.c.id.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(_row_to_favorite(r), _row_to_institute(r)) for r in rows]

    # ------------------------------------------------------------------
    # Search history
    # ------------------------------------------------------------------

    def record_search(
        self,
        principal_id: str,
        institute_id: int,
        at: datetime | None = None,
        window: timedelta = timedelta(hours=24),
    ) -> SearchHistoryEntry:
        """Record a view of an institute, de-duplicated over a rolling window.

        If the principal already viewed this institute within `window`, that
        entry's searched_at is bumped instead of inserting a new row.
        """
        now = at or utcnow()
        with self.engine.begin() as conn:
            row = conn.execute(
                search_history.select()
                .where(
                    (search_history.c.principal_id == principal_id)
                    & (search_history.c.institute_id == institute_id)
                    & (search_history.c.searched_at > to_iso(now - window))
                )
                .order_by(search_history.c.searched_at.desc())
                .limit(1)
            ).fetchone()
            if row is not None:
                conn.execute(
                    search_history.update().where(search_history.c.id == row.id).values(searched_at=to_iso(now))
                )
                return SearchHistoryEntry(
                    id=row.id,
                    principal_id=principal_id,
                    institute_id=institute_id,
                    searched_at=now,
                    created_at=from_iso(row.created_at),
                )
            result = conn.execute(
                search_history.insert().values(
                    principal_id=principal_id,
                    institute_id=institute_id,
                    searched_at=to_iso(now),
                    created_at=to_iso(now),
                )
            )
        return SearchHistoryEntry(
            id=result.inserted_primary_key[0],
            principal_id=principal_id,
            institute_id=institute_id,
            searched_at=now,
            created_at=now,
        )

    def list_search_history(self, principal_id: str) -> list[tuple[SearchHistoryEntry, Institute]]:
        """Return the principal's history joined to active institutes, most recent first."""
        stmt = (
            select(search_history, institutes)
            .join(institutes, institutes.c.id == search_history.c.institute_id)
            .where((search_history.c.principal_id == principal_id) & (institutes.c.is_active == 1))
            .order_by(search_history.c.searched_at.desc(), search_history.c.id.desc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(_row_to_history(r), _row_to_institute(r)) for r in rows]

    def delete_search_entry(self, principal_id: str, entry_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                search_history.delete().where(
                    (search_history.c.id == entry_id) & (search_history.c.principal_id == principal_id)
                )
            )
        return result.rowcount > 0

    def clear_search_history(self, principal_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(search_history.delete().where(search_history.c.principal_id == principal_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Fraud reports
    # ------------------------------------------------------------------

    def add_fraud_report(self, report: FraudReport) -> FraudReport:
        report.id = report.id or str(uuid.uuid4())
        report.created_at = report.created_at or utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                fraud_reports.insert().values(
                    id=report.id,
                    principal_id=report.principal_id,
                    institute_id=report.institute_id,
                    reported_institute_name=report.reported_institute_name,
                    reported_institute_address=report.reported_institute_address,
                    reported_institute_phone=report.reported_institute_phone,
                    description=report.description,
                    status=report.status.value,
                    created_at=to_iso(report.created_at),
                )
            )
        return report

    def count_fraud_reports(self, principal_id: str, start: datetime, end: datetime) -> int:
        """Count the principal's reports with start <= created_at < end."""
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count())
                .select_from(fraud_reports)
                .where(
                    (fraud_reports.c.principal_id == principal_id)
                    & (fraud_reports.c.created_at >= to_iso(start))
                    & (fraud_reports.c.created_at < to_iso(end))
                )
            ).scalar_one()

    def list_fraud_reports(self, principal_id: str, offset: int, limit: int) -> tuple[list[FraudReport], int]:
        """Return one page of the principal's reports (newest first) and the total count."""
        owned = fraud_reports.c.principal_id == principal_id
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(fraud_reports).where(owned)).scalar_one()
            rows = conn.execute(
                fraud_reports.select()
                .where(owned)
                .order_by(fraud_reports.c.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).fetchall()
        return [_row_to_report(r) for r in rows], total

    def get_fraud_report(self, principal_id: str, report_id: str) -> FraudReport | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                fraud_reports.select().where(
                    (fraud_reports.c.id == report_id) & (fraud_reports.c.principal_id == principal_id)
                )
            ).fetchone()
        return _row_to_report(row) if row is not None else None

    # ------------------------------------------------------------------
    # Principal deletion
    # ------------------------------------------------------------------

    def delete_for_principal(self, principal_id: str) -> None:
        """Remove a principal's favorites and history; detach its fraud reports."""
        with self.engine.begin() as conn:
            conn.execute(favorite_institutes.delete().where(favorite_institutes.c.principal_id == principal_id))
            conn.execute(search_history.delete().where(search_history.c.principal_id == principal_id))
            conn.execute(
                fraud_reports.update().where(fraud_reports.c.principal_id == principal_id).values(principal_id=None)
            )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_institute(row) -> Institute:
    # Keyed by Column objects: joined rows carry two "id" and "created_at" columns.
    m, c = row._mapping, institutes.c
    return Institute(
        id=m[c.id],
        name=m[c.name],
        accreditation_number=m[c.accreditation_number],
        accreditation_period=m[c.accreditation_period],
        provider_type=m[c.provider_type],
        physical_address=m[c.physical_address],
        postal_address=m[c.postal_address],
        telephone=m[c.telephone],
        province=m[c.province],
        city=m[c.city],
        is_active=bool(m[c.is_active]),
    )


def _row_to_favorite(row) -> FavoriteInstitute:
    m, c = row._mapping, favorite_institutes.c
    return FavoriteInstitute(
        id=m[c.id],
        principal_id=m[c.principal_id],
        institute_id=m[c.institute_id],
        created_at=from_iso(m[c.created_at]),
    )


def _row_to_history(row) -> SearchHistoryEntry:
    m, c = row._mapping, search_history.c
    return SearchHistoryEntry(
        id=m[c.id],
        principal_id=m[c.principal_id],
        institute_id=m[c.institute_id],
        searched_at=from_iso(m[c.searched_at]),
        created_at=from_iso(m[c.created_at]),
    )


def _row_to_report(row) -> FraudReport:
    return FraudReport(
        id=row.id,
        principal_id=row.principal_id,
        institute_id=row.institute_id,
        reported_institute_name=row.reported_institute_name,
        reported_institute_address=row.reported_institute_address,
        reported_institute_phone=row.reported_institute_phone,
        description=row.description,
        status=FraudReportStatus(row.status),
        created_at=from_iso(row.created_at),
    )
