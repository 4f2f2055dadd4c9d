"""
auth/sessions.py -- Refresh-token session persistence and rotation.

Pattern: Repository (same as auth/store.py), sharing UserStore's engine and the
sessions table declared there.

Concurrency contract [R1]:
  rotate() retires the presented record with a single conditional UPDATE

      UPDATE sessions SET revoked = 1
       WHERE token_hash = :h AND revoked = 0 AND expires_at > :now

  and inserts the replacement inside the same transaction. The database
  serializes writers, so when two requests present the same token only one
  UPDATE can match the still-unrevoked row. The loser sees rowcount == 0,
  re-reads the row, finds it revoked, and raises AuthenticationError(revoked).
  One stolen refresh token can therefore never yield two live sessions.

Only the authentication flows (auth/service.py, auth/oauth.py) write here.

Layer rule: no imports from api/, student/, or cache/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine

from auth.models import ClientContext, SessionRecord
from auth.store import sessions
from core.clock import Clock, to_iso, utcnow
from core.errors import AuthenticationError, AuthFailure

logger = logging.getLogger("educheck.auth.sessions")


class SessionStore:
    """Repository for SessionRecord entities.

    Usage:
        store = SessionStore(user_store.engine)
        record = store.create(principal_id, hash_refresh_token(raw), timedelta(days=7))
        new_record = store.rotate(old_hash, new_hash, timedelta(days=7))
        store.revoke_all(principal_id)
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        principal_id: str,
        token_hash: str,
        ttl: timedelta,
        metadata: ClientContext | None = None,
    ) -> SessionRecord:
        """Insert a new active session record and return it."""
        with self.engine.begin() as conn:
            return self._insert(conn, principal_id, token_hash, ttl, metadata)

    def rotate(
        self,
        presented_hash: str,
        new_token_hash: str,
        ttl: timedelta,
        expected_principal_id: str | None = None,
        metadata: ClientContext | None = None,
    ) -> SessionRecord:
        """Atomically retire the presented session and create its replacement [R1].

        expected_principal_id, when given, is part of the conditional UPDATE:
        a refresh token presented with another principal's access token matches
        nothing and is reported as not found, leaving the real owner's session
        untouched.

        Raises AuthenticationError with reason not_found, revoked or expired
        when the presented token cannot be rotated.
        """
        now = self._clock()
        condition = (
            (sessions.c.token_hash == presented_hash)
            & (sessions.c.revoked == 0)
            & (sessions.c.expires_at > to_iso(now))
        )
        if expected_principal_id is not None:
            condition = condition & (sessions.c.principal_id == expected_principal_id)

        with self.engine.begin() as conn:
            result = conn.execute(sessions.update().where(condition).values(revoked=1))
            if result.rowcount != 1:
                raise self._rotation_failure(conn, presented_hash, expected_principal_id, now)
            principal_id = conn.execute(
                select(sessions.c.principal_id).where(sessions.c.token_hash == presented_hash)
            ).scalar_one()
            record = self._insert(conn, principal_id, new_token_hash, ttl, metadata)

        logger.info("Session rotated for principal %s", principal_id)
        return record

    def revoke_one(self, token_hash: str, principal_id: str | None = None) -> bool:
        """Mark one session revoked. Returns False if no record has that hash.

        principal_id, when given, restricts the match to that principal's own
        sessions; another principal's record is reported as absent.
        """
        condition = sessions.c.token_hash == token_hash
        if principal_id is not None:
            condition = condition & (sessions.c.principal_id == principal_id)
        with self.engine.begin() as conn:
            row = conn.execute(select(sessions.c.principal_id).where(condition)).fetchone()
            if row is None:
                return False
            conn.execute(sessions.update().where(condition).values(revoked=1))
        logger.info("Session revoked for principal %s", row.principal_id)
        return True

    def revoke_all(self, principal_id: str) -> int:
        """Revoke every active session of a principal. Returns how many were active."""
        now = to_iso(self._clock())
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    (sessions.c.principal_id == principal_id)
                    & (sessions.c.revoked == 0)
                    & (sessions.c.expires_at > now)
                )
                .values(revoked=1)
            )
        return result.rowcount

    def purge_expired(self, older_than: timedelta = timedelta(days=30)) -> int:
        """Delete terminal records whose expiry is older than the grace period."""
        cutoff = to_iso(self._clock() - older_than)
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at < cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _insert(
        self,
        conn: Connection,
        principal_id: str,
        token_hash: str,
        ttl: timedelta,
        metadata: ClientContext | None,
    ) -> SessionRecord:
        now = self._clock()
        meta = metadata or ClientContext()
        record = SessionRecord(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            token_hash=token_hash,
            expires_at=now + ttl,
            revoked=False,
            device_info=_clip(meta.device_info, 500),
            ip_address=_clip(meta.ip_address, 45),
            created_at=now,
        )
        conn.execute(
            sessions.insert().values(
                id=record.id,
                principal_id=record.principal_id,
                token_hash=record.token_hash,
                expires_at=to_iso(record.expires_at),
                revoked=0,
                device_info=record.device_info,
                ip_address=record.ip_address,
                created_at=to_iso(now),
            )
        )
        return record

    @staticmethod
    def _rotation_failure(
        conn: Connection,
        presented_hash: str,
        expected_principal_id: str | None,
        now: datetime,
    ) -> AuthenticationError:
        """Classify why the conditional UPDATE matched nothing."""
        row = conn.execute(sessions.select().where(sessions.c.token_hash == presented_hash)).fetchone()
        if row is None or (expected_principal_id is not None and row.principal_id != expected_principal_id):
            return AuthenticationError("Invalid token", ["Invalid refresh token"], reason=AuthFailure.NOT_FOUND)
        if row.revoked:
            logger.warning("Revoked refresh token presented for principal %s", row.principal_id)
            return AuthenticationError(
                "Invalid token", ["Refresh token has been revoked"], reason=AuthFailure.REVOKED
            )
        return AuthenticationError(
            "Token expired", ["Refresh token has expired. Please login again."], reason=AuthFailure.EXPIRED
        )


def _clip(value: str | None, limit: int) -> str | None:
    return value[:limit] if value else None
