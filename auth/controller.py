"""
auth/controller.py -- AuthSessionController: login / refresh / logout / who-am-i.

Orchestration only. It owns no state: tokens come from TokenService, session
rows from SessionStore, identity from UserStore. Route handlers call this
class and translate its results and exceptions into HTTP responses.

Error policy:
  Every verification failure is raised as Unauthenticated (chained to the
  precise TokenError for logs). The HTTP layer never tells a caller which
  check failed.

Login atomicity:
  Tokens are only handed back once the session row has been written. If the
  insert fails the pair is discarded and a fresh pair is minted once more;
  a second failure aborts the login with SessionPersistenceError. A caller
  therefore never holds a refresh token that has no session row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    InvalidCredentials,
    SessionPersistenceError,
    TokenError,
    Unauthenticated,
    UserNotFound,
)
from auth.models import IssuedTokens, Session, TokenClaims, User, utcnow
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import DUMMY_HASH, TokenService, verify_password

logger = logging.getLogger("sessiongate.auth")

_LOGIN_ATTEMPTS = 2


class AuthSessionController:
    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionStore,
        users: UserStore,
        rotate_refresh_tokens: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._tokens = tokens
        self._sessions = sessions
        self._users = users
        self._rotate = rotate_refresh_tokens
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> User:
        """Check an email/password pair with timing equalization [C1].

        bcrypt always runs, against DUMMY_HASH when the email is unknown, so
        response time does not reveal whether an account exists. Unknown
        email, wrong password and deactivated account all raise the same
        InvalidCredentials.
        """
        user = self._users.get_by_email(email)
        if user is None or user.hashed_password is None:
            verify_password(password, DUMMY_HASH)
            raise InvalidCredentials("Invalid email or password.")
        if not verify_password(password, user.hashed_password) or not user.is_active:
            raise InvalidCredentials("Invalid email or password.")
        return user

    def login(self, user: User) -> IssuedTokens:
        """Mint an access/refresh pair for an already-verified user and record the session."""
        session, access_token, refresh_token = self._open_session(user)
        self._users.update_last_sign_in(user.id)
        logger.info("User %s logged in (session %s)", user.id, session.id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=self._tokens.unverified_expiry(access_token),
            refresh_expires_at=session.expires_at,
            session=session,
            user=user,
        )

    def _open_session(self, user: User) -> tuple[Session, str, str]:
        last_error: Exception | None = None
        for attempt in range(1, _LOGIN_ATTEMPTS + 1):
            access_token = self._tokens.issue_access_token(user.id, user.email, user.role)
            refresh_token = self._tokens.issue_refresh_token(user.id, user.email, user.role)
            expires_at = self._tokens.unverified_expiry(refresh_token)
            try:
                session = self._sessions.create_session(user.id, refresh_token, expires_at)
            except (SessionPersistenceError, SQLAlchemyError) as exc:
                last_error = exc
                logger.warning("Session write failed for user %s (attempt %d): %s", user.id, attempt, exc)
                continue
            return session, access_token, refresh_token
        raise SessionPersistenceError("Could not record the session; login aborted.") from last_error

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> IssuedTokens:
        """Exchange a refresh token for a new access token.

        The token must verify AND have an active session row; a
        cryptographically valid token whose session was logged out or purged
        is rejected. Role in the new access token comes from the live user
        record. With rotation on, the session's refresh token is swapped in
        place and the new one returned.
        """
        claims = self._verify(self._tokens.verify_refresh_token, refresh_token, "refresh")
        session = self._sessions.get_by_refresh_token(refresh_token)
        if session is None or not session.is_active(self._clock()):
            logger.info("Refresh rejected for user %s: no active session", claims.user_id)
            raise Unauthenticated("Session expired or invalidated.")

        user = self._live_user(claims.user_id)
        access_token = self._tokens.issue_access_token(user.id, user.email, user.role)

        if self._rotate:
            new_refresh = self._tokens.issue_refresh_token(user.id, user.email, user.role)
            new_expiry = self._tokens.unverified_expiry(new_refresh)
            if not self._sessions.rotate(refresh_token, new_refresh, new_expiry):
                # Lost a race with logout or a concurrent rotation.
                logger.info("Refresh rejected for user %s: session changed during rotation", user.id)
                raise Unauthenticated("Session expired or invalidated.")
            session = Session(
                id=session.id,
                user_id=session.user_id,
                refresh_token=new_refresh,
                created_at=session.created_at,
                expires_at=new_expiry,
            )
            refresh_token = new_refresh

        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=self._tokens.unverified_expiry(access_token),
            refresh_expires_at=session.expires_at,
            session=session,
            user=user,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str | None) -> int:
        """Invalidate the session for this refresh token. Idempotent.

        Returns the number of rows invalidated; 0 (no token, unknown token,
        already logged out) is still a successful logout.
        """
        if not refresh_token:
            return 0
        count = self._sessions.invalidate(refresh_token)
        if count == 0:
            logger.info("Logout with no live session (already logged out)")
        return count

    # ------------------------------------------------------------------
    # Current identity
    # ------------------------------------------------------------------

    def current_user(self, access_token: str | None) -> User:
        """Verify an access token and return the user's CURRENT record.

        Role and profile come from the user store, not from the token claims.
        Raises Unauthenticated on any verification failure and UserNotFound
        if the account was deleted after the token was issued.
        """
        if not access_token:
            raise Unauthenticated("Authentication required.")
        claims = self._verify(self._tokens.verify_access_token, access_token, "access")
        return self._live_user(claims.user_id)

    def active_sessions(self, user_id: int) -> list[Session]:
        return self._sessions.list_active_for_user(user_id)

    def session_for(self, refresh_token: str) -> Session | None:
        return self._sessions.get_by_refresh_token(refresh_token)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _verify(self, verify: Callable[[str], TokenClaims], token: str, kind: str) -> TokenClaims:
        try:
            return verify(token)
        except TokenError as exc:
            logger.info("%s token rejected: %s", kind.capitalize(), exc.code)
            raise Unauthenticated("Authentication required.") from exc

    def _live_user(self, user_id: int) -> User:
        user = self._users.get_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found.")
        if not user.is_active:
            logger.info("Rejected token for deactivated user %s", user_id)
            raise Unauthenticated("Authentication required.")
        return user
