"""
Credential bundle for one authenticated browser session.

A bundle holds the delegated Gmail access granted through the OAuth
consent flow: the access token, the optional refresh token, and the
absolute expiry of the access token.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

# Refresh if the access token expires within this window
NEAR_EXPIRY_WINDOW = timedelta(minutes=5)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CredentialBundle:
    """Access/refresh token pair plus expiry."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @classmethod
    def from_token_response(cls, data: dict, now: datetime | None = None) -> "CredentialBundle":
        """
        Build a bundle from a token endpoint response.

        Args:
            data: Parsed JSON from the token endpoint
            now: Reference time for ``expires_in`` (defaults to current UTC time)

        Raises:
            KeyError: If the response has no access_token
        """
        now = now or utcnow()
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=_expiry_from(data, now),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )

    def is_near_expiry(self, now: datetime | None = None) -> bool:
        """True if the access token expires within the near-expiry window.

        A bundle without an expiry is never considered expiring.
        """
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at <= now + NEAR_EXPIRY_WINDOW

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def merged(self, data: dict, now: datetime | None = None) -> "CredentialBundle":
        """
        Return a copy with fields from a refresh response applied.

        Refresh responses do not always re-issue a refresh token, so the
        existing one is kept when the response omits it.
        """
        now = now or utcnow()
        changes = {}
        if data.get("access_token"):
            changes["access_token"] = data["access_token"]
        if data.get("refresh_token"):
            changes["refresh_token"] = data["refresh_token"]
        expires_at = _expiry_from(data, now)
        if expires_at is not None:
            changes["expires_at"] = expires_at
        if data.get("token_type"):
            changes["token_type"] = data["token_type"]
        if data.get("scope"):
            changes["scope"] = data["scope"]
        return replace(self, **changes)

    def authorization_header(self) -> dict:
        return {"Authorization": f"{self.token_type} {self.access_token}"}


def _expiry_from(data: dict, now: datetime) -> datetime | None:
    """Absolute expiry from ``expires_in`` seconds or an ``expiry_date`` in epoch ms."""
    if data.get("expires_in") is not None:
        try:
            return now + timedelta(seconds=int(data["expires_in"]))
        except (TypeError, ValueError):
            return None
    if data.get("expiry_date") is not None:
        try:
            return datetime.fromtimestamp(int(data["expiry_date"]) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
    return None
