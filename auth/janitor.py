"""
auth/janitor.py -- SessionJanitor: bulk retention sweep over the session table.

The janitor performs no authentication. Whoever triggers it (the background
loop in api/main.py, the maintenance endpoint, the CLI) is trusted; the
maintenance endpoint does its own shared-secret check.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.models import SweepResult
from auth.sessions import SessionStore

logger = logging.getLogger("sessiongate.janitor")

DEFAULT_RETENTION = timedelta(days=30)


class SessionJanitor:
    def __init__(self, sessions: SessionStore, retention: timedelta = DEFAULT_RETENTION) -> None:
        self._sessions = sessions
        self._retention = retention

    def sweep(self) -> SweepResult:
        """Delete expired/invalidated rows, then rows older than the retention window."""
        expired = self._sessions.purge_expired_and_invalidated()
        stale = self._sessions.purge_older_than(self._retention)
        result = SweepResult(expired_removed=expired, stale_removed=stale, total=expired + stale)
        logger.info("Session sweep removed %d expired/invalidated and %d stale rows", expired, stale)
        return result
