"""
Server-side session store.

Each browser session is identified by an opaque id carried in a cookie.
The store keeps at most one credential bundle per session and evicts
sessions lazily once their lifetime has passed.
"""

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from webmail.credentials import CredentialBundle, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One browser session."""

    session_id: str
    created_at: datetime
    expires_at: datetime
    tokens: CredentialBundle | None = field(default=None, repr=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class SessionStore:
    """
    In-memory key-value store of sessions.

    The dictionary itself is guarded by a lock. Reading a bundle, refreshing
    it, and writing it back is not serialized per session.
    """

    def __init__(
        self,
        ttl_minutes: int = 60,
        on_session_expired: Callable[[str], None] | None = None,
        check_period_minutes: int = 15,
    ):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._ttl = timedelta(minutes=ttl_minutes)
        self._on_session_expired = on_session_expired
        self._check_period = timedelta(minutes=check_period_minutes)
        self._last_cleanup = utcnow()

    def create(self, tokens: CredentialBundle | None = None) -> Session:
        """Create a session, optionally holding a credential bundle."""
        now = utcnow()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + self._ttl,
            tokens=tokens,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str | None) -> Session | None:
        """Return a live session, evicting it first if it has expired."""
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired():
                del self._sessions[session_id]
                expired = True
            else:
                expired = False
        if expired:
            self._notify_expired(session_id)
            return None
        return session

    def get_tokens(self, session_id: str | None) -> CredentialBundle | None:
        session = self.get(session_id)
        return session.tokens if session else None

    def put_tokens(self, session_id: str, tokens: CredentialBundle) -> bool:
        """Store a bundle on an existing session. Returns False if the session is gone."""
        session = self.get(session_id)
        if session is None:
            return False
        session.tokens = tokens
        return True

    def delete_tokens(self, session_id: str | None) -> bool:
        """Drop the bundle from a session but keep the session itself."""
        session = self.get(session_id)
        if session is None or session.tokens is None:
            return False
        session.tokens = None
        return True

    def revoke(self, session_id: str | None) -> bool:
        """Delete a session entirely."""
        if not session_id:
            return False
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns the number removed."""
        now = utcnow()
        with self._lock:
            expired_ids = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired_ids:
                del self._sessions[sid]
        for sid in expired_ids:
            self._notify_expired(sid)
        if expired_ids:
            logger.info(f"Evicted {len(expired_ids)} expired session(s)")
        return len(expired_ids)

    def cleanup_if_due(self) -> int:
        """Run ``cleanup_expired`` at most once per check period."""
        now = utcnow()
        with self._lock:
            if now - self._last_cleanup < self._check_period:
                return 0
            self._last_cleanup = now
        return self.cleanup_expired()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _notify_expired(self, session_id: str) -> None:
        if self._on_session_expired is None:
            return
        try:
            self._on_session_expired(session_id)
        except Exception as e:
            logger.error(f"Session expiry callback failed: {e}")
