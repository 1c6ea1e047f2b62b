"""
Session/token guard for protected routes.

Every protected route calls ``guard()`` before talking to the mail API.
The guard checks that the session holds a credential bundle, refreshes the
access token when it is about to expire, and invalidates the bundle when it
cannot be refreshed. It never raises for these outcomes; it returns an
``Allow`` or a ``Reject`` and leaves the HTTP response to the caller.

Refreshes are not serialized per session. Two concurrent requests that both
see a near-expiry bundle will both refresh, and the last write wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from webmail.credentials import CredentialBundle, utcnow
from webmail.oauth import OAuthClient, OAuthError
from webmail.sessions import SessionStore

logger = logging.getLogger(__name__)


class RejectReason(Enum):
    UNAUTHENTICATED = "unauthenticated"
    SESSION_EXPIRED_NO_REFRESH_TOKEN = "session_expired_no_refresh_token"
    REFRESH_FAILED = "refresh_failed"
    UPSTREAM_UNAUTHORIZED = "upstream_unauthorized"


REJECT_MESSAGES = {
    RejectReason.UNAUTHENTICATED: "User not authenticated.",
    RejectReason.SESSION_EXPIRED_NO_REFRESH_TOKEN: "Session expired (no refresh token). Please login again.",
    RejectReason.REFRESH_FAILED: "Session expired or invalid. Please login again.",
    RejectReason.UPSTREAM_UNAUTHORIZED: "Authentication token expired or invalid. Please login again.",
}


@dataclass(frozen=True)
class Allow:
    tokens: CredentialBundle
    refreshed: bool = False


@dataclass(frozen=True)
class Reject:
    reason: RejectReason

    @property
    def message(self) -> str:
        return REJECT_MESSAGES[self.reason]


GuardResult = Allow | Reject


def guard(
    store: SessionStore,
    session_id: str | None,
    oauth: OAuthClient,
    now: datetime | None = None,
) -> GuardResult:
    """
    Validate and, if needed, refresh the session's credential bundle.

    Args:
        store: Session store holding the bundle
        session_id: Opaque session id from the request cookie
        oauth: Client used for the refresh exchange
        now: Reference time (defaults to current UTC time)

    Returns:
        ``Allow`` with the current bundle, or ``Reject`` with a reason.
        On ``SESSION_EXPIRED_NO_REFRESH_TOKEN`` and ``REFRESH_FAILED`` the
        bundle has already been removed from the store.
    """
    tokens = store.get_tokens(session_id)
    if tokens is None:
        return Reject(RejectReason.UNAUTHENTICATED)

    now = now or utcnow()
    if not tokens.is_near_expiry(now):
        return Allow(tokens)

    sid = session_id[:8]
    logger.info(f"Access token for session {sid}... expired or nearing expiry, attempting refresh")

    if not tokens.can_refresh():
        logger.info(f"No refresh token in session {sid}...")
        store.delete_tokens(session_id)
        return Reject(RejectReason.SESSION_EXPIRED_NO_REFRESH_TOKEN)

    try:
        data = oauth.refresh(tokens.refresh_token)
    except OAuthError as e:
        logger.error(f"Error refreshing access token for session {sid}...: {e}")
        store.delete_tokens(session_id)
        return Reject(RejectReason.REFRESH_FAILED)

    refreshed = tokens.merged(data, now)
    store.put_tokens(session_id, refreshed)
    logger.info(f"Session {sid}... updated with refreshed tokens")
    return Allow(refreshed, refreshed=True)
