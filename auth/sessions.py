"""
auth/sessions.py -- SessionStore: durable record of issued refresh tokens.

A session row is created at login (one per refresh token), mutated at most
once to set invalidated_at on logout, and deleted by the janitor.

Concurrency:
  No in-process locks. Every mutation is a single SQL statement, so the
  database provides the atomicity:
  - create_session relies on UNIQUE(refresh_token). A collision raises
    SessionPersistenceError instead of silently overwriting a live row.
  - invalidate only touches rows whose invalidated_at IS NULL, so the
    timestamp, once set, is never moved or cleared.
  - rotate is a compare-and-swap UPDATE keyed on the old token value.
  - The purge methods are DELETEs with a time/flag predicate evaluated by the
    database. A row inserted by a concurrent login has created_at = now and
    expires_at in the future, so it never matches either predicate.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import SessionPersistenceError
from auth.models import Session, utcnow
from auth.store import as_utc, sessions

logger = logging.getLogger("sessiongate.sessions")


class SessionStore:
    """Repository for Session rows, keyed by refresh token."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, refresh_token: str, expires_at: datetime) -> Session:
        """Insert a new active session row and return it.

        Raises SessionPersistenceError if a row with the same refresh token
        already exists. Other database errors propagate unchanged.
        """
        created_at = self._clock()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    sessions.insert().values(
                        user_id=user_id,
                        refresh_token=refresh_token,
                        created_at=created_at,
                        expires_at=expires_at,
                    )
                )
                session_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            logger.error("Session insert rejected for user %s: duplicate refresh token", user_id)
            raise SessionPersistenceError("A session for this refresh token already exists.") from exc
        return Session(
            id=session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=created_at,
            expires_at=expires_at,
        )

    def invalidate(self, refresh_token: str) -> int:
        """Mark every live row for this refresh token as invalidated.

        Returns the number of rows changed. Zero means there was nothing to
        invalidate (unknown token or already logged out); that is not an error.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where(and_(sessions.c.refresh_token == refresh_token, sessions.c.invalidated_at.is_(None)))
                .values(invalidated_at=self._clock())
            )
        return result.rowcount

    def invalidate_all_for_user(self, user_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where(and_(sessions.c.user_id == user_id, sessions.c.invalidated_at.is_(None)))
                .values(invalidated_at=self._clock())
            )
        return result.rowcount

    def rotate(self, old_refresh_token: str, new_refresh_token: str, expires_at: datetime) -> bool:
        """Replace an active row's refresh token in place.

        Single UPDATE guarded by the old value and the active predicate, so two
        concurrent rotations of the same token cannot both succeed and no second
        row is ever created. Returns False if no active row matched.
        """
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.update()
                .where(
                    and_(
                        sessions.c.refresh_token == old_refresh_token,
                        sessions.c.invalidated_at.is_(None),
                        sessions.c.expires_at > now,
                    )
                )
                .values(refresh_token=new_refresh_token, expires_at=expires_at)
            )
        return result.rowcount == 1

    def purge_expired_and_invalidated(self) -> int:
        """Delete rows that are past expires_at or have been invalidated."""
        now = self._clock()
        with self.engine.begin() as conn:
            result = conn.execute(
                sessions.delete().where(or_(sessions.c.expires_at <= now, sessions.c.invalidated_at.is_not(None)))
            )
        return result.rowcount

    def purge_older_than(self, retention: timedelta) -> int:
        """Delete rows created before now - retention, whatever their state."""
        cutoff = self._clock() - retention
        with self.engine.begin() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.created_at < cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_refresh_token(self, refresh_token: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(sessions.select().where(sessions.c.refresh_token == refresh_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def is_active(self, refresh_token: str) -> bool:
        """True iff a row exists, is not invalidated, and now < expires_at."""
        session = self.get_by_refresh_token(refresh_token)
        return session is not None and session.is_active(self._clock())

    def list_active_for_user(self, user_id: int) -> list[Session]:
        """Active sessions for a user, newest first."""
        now = self._clock()
        with self.engine.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where(
                    and_(
                        sessions.c.user_id == user_id,
                        sessions.c.invalidated_at.is_(None),
                        sessions.c.expires_at > now,
                    )
                )
                .order_by(sessions.c.created_at.desc(), sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token=row.refresh_token,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        invalidated_at=as_utc(row.invalidated_at),
    )
