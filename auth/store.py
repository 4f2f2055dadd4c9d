"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and profiles.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_* are
the mappers. Services never touch SQL directly.

The session table is declared here as well so principal deletion can remove a
principal's sessions and profile in one transaction. SessionStore
(auth/sessions.py) owns every other session query and shares this engine.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are lower-cased before every write and lookup, so the UNIQUE index on
  users.email is effectively case-insensitive.

Deletion propagation is an explicit application operation (delete_principal)
rather than a storage-engine ON DELETE CASCADE, so the invariant holds on any
backend.

Layer rule: no imports from api/, student/, or cache/.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine

from auth.models import AdminLevel, AdminProfile, Principal, Role, StudentProfile
from core.clock import from_iso, to_iso, utcnow

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'educheck_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("hashed_password", Text),  # NULL for federated-only accounts
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("phone_number", String(20)),
    Column("role", String(20), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(32)),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

student_profiles = Table(
    "student_profiles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("principal_id", String(36), nullable=False, unique=True),
    Column("province", String(50)),
    Column("city", String(100)),
    Column("created_at", String(32), nullable=False),
)

admin_profiles = Table(
    "admin_profiles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("principal_id", String(36), nullable=False, unique=True),
    Column("department", String(100)),
    Column("employee_id", String(50)),
    Column("admin_level", String(20), nullable=False, server_default=AdminLevel.STANDARD.value),
    Column("created_at", String(32), nullable=False),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("principal_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # base64 SHA-256
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("device_info", String(500)),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Principal, StudentProfile and AdminProfile entities.

    Usage:
        store = UserStore()
        pid = store.create_principal(principal, StudentProfile(city="Durban"))
        principal = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal, profile: StudentProfile | AdminProfile) -> str:
        """Insert a principal and its role profile atomically; return the new id.

        Both rows are written inside one transaction, so either both exist or
        neither does. Raises sqlalchemy.exc.IntegrityError if the email is
        already registered -- callers treat that as a conflict, which also
        covers two concurrent registrations racing past the existence check.
        """
        principal_id = principal.id or str(uuid.uuid4())
        now = to_iso(utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                users.insert().values(
                    id=principal_id,
                    email=normalize_email(principal.email),
                    hashed_password=principal.hashed_password,
                    first_name=principal.first_name,
                    last_name=principal.last_name,
                    phone_number=principal.phone_number,
                    role=principal.role.value,
                    is_active=1 if principal.is_active else 0,
                    email_confirmed=1 if principal.email_confirmed else 0,
                    failed_login_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            if isinstance(profile, AdminProfile):
                conn.execute(
                    admin_profiles.insert().values(
                        id=str(uuid.uuid4()),
                        principal_id=principal_id,
                        department=profile.department,
                        employee_id=profile.employee_id,
                        admin_level=profile.admin_level.value,
                        created_at=now,
                    )
                )
            else:
                conn.execute(
                    student_profiles.insert().values(
                        id=str(uuid.uuid4()),
                        principal_id=principal_id,
                        province=profile.province,
                        city=profile.city,
                        created_at=now,
                    )
                )
        return principal_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_email(self, email: str) -> Principal | None:
        """Case-insensitive lookup by email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_student_profile(self, principal_id: str) -> StudentProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                student_profiles.select().where(student_profiles.c.principal_id == principal_id)
            ).fetchone()
        if row is None:
            return None
        return StudentProfile(id=row.id, principal_id=row.principal_id, province=row.province, city=row.city)

    def get_admin_profile(self, principal_id: str) -> AdminProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(admin_profiles.select().where(admin_profiles.c.principal_id == principal_id)).fetchone()
        if row is None:
            return None
        return AdminProfile(
            id=row.id,
            principal_id=row.principal_id,
            department=row.department,
            employee_id=row.employee_id,
            admin_level=AdminLevel(row.admin_level),
        )

    # ------------------------------------------------------------------
    # Login bookkeeping
    # ------------------------------------------------------------------

    def record_failed_login(self, principal_id: str, max_failures: int, lock_until: datetime) -> bool:
        """Increment the failure counter; lock the account when it reaches max_failures.

        The increment is done in SQL (count = count + 1) so concurrent failures
        are never lost. On reaching the ceiling the counter resets to 0 and
        lockout_until is set to lock_until. Returns True if this failure locked
        the account.
        """
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == principal_id)
                .values(failed_login_count=users.c.failed_login_count + 1, updated_at=to_iso(utcnow()))
            )
            count = conn.execute(select(users.c.failed_login_count).where(users.c.id == principal_id)).scalar() or 0
            if count < max_failures:
                return False
            conn.execute(
                users.update()
                .where(users.c.id == principal_id)
                .values(failed_login_count=0, lockout_until=to_iso(lock_until))
            )
        return True

    def record_successful_login(self, principal_id: str, at: datetime | None = None) -> None:
        """Reset lockout state and stamp last_login_at."""
        now = to_iso(at or utcnow())
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == principal_id)
                .values(failed_login_count=0, lockout_until=None, last_login_at=now, updated_at=now)
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def confirm_email(self, principal_id: str) -> None:
        """Mark the email confirmed. There is no inverse operation."""
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == principal_id)
                .values(email_confirmed=1, updated_at=to_iso(utcnow()))
            )

    def delete_principal(self, principal_id: str) -> bool:
        """Delete a principal together with its sessions and role profile.

        All deletes run in one transaction. Returns False if the principal did
        not exist (nothing is touched in that case).
        """
        with self.engine.begin() as conn:
            exists = conn.execute(select(users.c.id).where(users.c.id == principal_id)).fetchone()
            if exists is None:
                return False
            conn.execute(sessions.delete().where(sessions.c.principal_id == principal_id))
            conn.execute(student_profiles.delete().where(student_profiles.c.principal_id == principal_id))
            conn.execute(admin_profiles.delete().where(admin_profiles.c.principal_id == principal_id))
            conn.execute(users.delete().where(users.c.id == principal_id))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        role=Role(row.role),
        is_active=bool(row.is_active),
        email_confirmed=bool(row.email_confirmed),
        failed_login_count=row.failed_login_count,
        lockout_until=from_iso(row.lockout_until),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
