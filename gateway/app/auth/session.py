"""
Session Store
=============

In-memory, process-local storage for the two pieces of SSO state:

- Pending authorizations, keyed by the anti-CSRF ``state`` value. Created when
  a login starts, consumed exactly once by the callback, expired after the
  pending TTL.
- Active sessions, keyed by an opaque session id carried in the cookie.
  Touched on every read, refreshed in place, deleted on logout or expiry.

Expiry is check-and-expire on access: both mappings are swept with an O(n)
scan on every create/consume call, and there is no background timer.
Nothing is persisted; a restart drops every session.

A session whose access token has expired is invisible to ``get_session``.
It is kept (for ``get_refreshable_session``) only while it still holds a
refresh token whose own expiry has not passed; otherwise it is removed.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .utils import random_id


logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 4 * 60 * 60
DEFAULT_PENDING_TTL_SECONDS = 5 * 60

STATE_BYTES = 16
SESSION_ID_BYTES = 24


# =============================================================================
# Records
# =============================================================================

@dataclass
class PendingAuthorization:
    code_verifier: str
    redirect_uri: str
    return_to: str
    nonce: str
    created_at: float


@dataclass
class SessionUser:
    """Identity mapped from verified ID token claims."""

    id: str
    username: str = ""
    name: str = ""
    email: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_public_dict(self) -> Dict[str, Any]:
        """User projection safe to return to the browser (no raw claims)."""
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "roles": list(self.roles),
        }


@dataclass
class SessionTokens:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None


@dataclass
class Session:
    id: str
    user: SessionUser
    tokens: SessionTokens
    created_at: float
    updated_at: float
    expires_at: float
    refresh_expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_refreshable(self, now: float) -> bool:
        """True while the refresh token can still revive an expired session."""
        if not self.tokens.refresh_token or self.refresh_expires_at is None:
            return False
        return now <= self.refresh_expires_at


# =============================================================================
# Store
# =============================================================================

class SessionStore:
    """
    Holds pending authorizations and sessions for one auth service instance.

    Args:
        session_ttl_seconds: Session lifetime when the token response has no expires_in
        pending_ttl_seconds: Lifetime of a pending authorization
        clock: Time source returning POSIX seconds
    """

    def __init__(
        self,
        session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
        pending_ttl_seconds: float = DEFAULT_PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.session_ttl_seconds = session_ttl_seconds
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._pending: Dict[str, PendingAuthorization] = {}

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    def _cleanup_pending(self) -> None:
        now = self._clock()
        expired = [
            state for state, entry in self._pending.items()
            if now - entry.created_at > self.pending_ttl_seconds
        ]
        for state in expired:
            del self._pending[state]

    def _cleanup_sessions(self) -> None:
        now = self._clock()
        expired = [
            sid for sid, session in self._sessions.items()
            if session.is_expired(now) and not session.is_refreshable(now)
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug(f"Removed {len(expired)} expired sessions")

    # -------------------------------------------------------------------------
    # Pending authorizations
    # -------------------------------------------------------------------------

    def create_pending_auth(
        self,
        code_verifier: str,
        redirect_uri: str,
        return_to: str,
        nonce: str,
    ) -> str:
        """
        Store a pending authorization under a fresh random state.

        Returns:
            The state value to send to the provider
        """
        self._cleanup_pending()
        state = random_id(STATE_BYTES)
        self._pending[state] = PendingAuthorization(
            code_verifier=code_verifier,
            redirect_uri=redirect_uri,
            return_to=return_to,
            nonce=nonce,
            created_at=self._clock(),
        )
        return state

    def consume_pending_auth(self, state: Optional[str]) -> Optional[PendingAuthorization]:
        """
        Remove and return the pending authorization for ``state``.

        A state can be consumed once; later calls return None, as do expired entries.
        """
        self._cleanup_pending()
        if not state:
            return None
        entry = self._pending.pop(state, None)
        if entry is None:
            return None
        if self._clock() - entry.created_at > self.pending_ttl_seconds:
            return None
        return entry

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def create_session(
        self,
        user: SessionUser,
        tokens: SessionTokens,
        expires_at: Optional[float] = None,
        refresh_expires_at: Optional[float] = None,
    ) -> Tuple[str, Session]:
        """
        Create a session under a fresh random id.

        Returns:
            Tuple of (session_id, session)
        """
        self._cleanup_sessions()
        now = self._clock()
        sid = random_id(SESSION_ID_BYTES)
        session = Session(
            id=sid,
            user=user,
            tokens=tokens,
            created_at=now,
            updated_at=now,
            expires_at=expires_at or now + self.session_ttl_seconds,
            refresh_expires_at=refresh_expires_at,
        )
        self._sessions[sid] = session
        return sid, session

    def get_session(self, session_id: Optional[str]) -> Optional[Session]:
        """
        Return a live session and touch its ``updated_at``.

        Sessions past ``expires_at`` are never returned; they are removed
        unless they can still be refreshed.
        """
        if not session_id:
            return None
        self._cleanup_sessions()
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self._clock()
        if session.is_expired(now):
            if not session.is_refreshable(now):
                del self._sessions[session_id]
            return None
        session.updated_at = now
        return session

    def get_refreshable_session(self, session_id: Optional[str]) -> Optional[Session]:
        """Return a session that is live or can still be revived by a refresh grant."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = self._clock()
        if session.is_expired(now) and not session.is_refreshable(now):
            del self._sessions[session_id]
            return None
        return session

    def update_session(
        self,
        session_id: str,
        tokens: Optional[SessionTokens] = None,
        expires_at: Optional[float] = None,
        refresh_expires_at: Optional[float] = None,
    ) -> Optional[Session]:
        """
        Replace tokens and expiries of a session in place (same id).

        Token fields left as None keep their previous value.
        """
        session = self.get_refreshable_session(session_id)
        if session is None:
            return None
        if tokens is not None:
            updates = {k: v for k, v in vars(tokens).items() if v is not None}
            session.tokens = replace(session.tokens, **updates)
        if expires_at is not None:
            session.expires_at = expires_at
        if refresh_expires_at is not None:
            session.refresh_expires_at = refresh_expires_at
        session.updated_at = self._clock()
        return session

    def delete_session(self, session_id: Optional[str]) -> Optional[Session]:
        """Remove a session regardless of expiry and return it, if present."""
        if not session_id:
            return None
        return self._sessions.pop(session_id, None)

    def all_sessions(self) -> List[Session]:
        self._cleanup_sessions()
        now = self._clock()
        return [s for s in self._sessions.values() if not s.is_expired(now)]

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = [
    "PendingAuthorization",
    "Session",
    "SessionStore",
    "SessionTokens",
    "SessionUser",
    "DEFAULT_SESSION_TTL_SECONDS",
    "DEFAULT_PENDING_TTL_SECONDS",
]
