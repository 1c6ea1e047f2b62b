"""
Configuration for the webmail gateway.

Settings come from environment variables. A ``.env`` file in the working
directory is loaded first when python-dotenv finds one.
"""

import os
from dataclasses import dataclass

from dotenv import find_dotenv, load_dotenv

DEFAULT_FRONTEND_URL = "http://localhost:3000"
DEFAULT_AUDIT_LOG_PATH = os.path.expanduser("~/.local/state/webmail/audit.jsonl")


@dataclass
class Settings:
    """Runtime settings for the gateway."""

    session_secret: str
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    frontend_url: str = DEFAULT_FRONTEND_URL
    port: int = 8080
    session_ttl_minutes: int = 60
    audit_log_path: str = DEFAULT_AUDIT_LOG_PATH
    upstream_timeout: int = 30
    token_timeout: int = 10

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "Settings":
        """
        Build settings from the process environment.

        Raises:
            ValueError: If SESSION_SECRET is not set.
        """
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))

        secret = os.environ.get("SESSION_SECRET")
        if not secret:
            raise ValueError(
                "Missing SESSION_SECRET configuration. "
                "Set the SESSION_SECRET environment variable before starting the server."
            )

        return cls(
            session_secret=secret,
            client_id=os.environ.get("GOOGLE_CLIENT_ID"),
            client_secret=os.environ.get("GOOGLE_CLIENT_SECRET"),
            redirect_uri=os.environ.get("GOOGLE_REDIRECT_URI"),
            frontend_url=os.environ.get("FRONTEND_URL", DEFAULT_FRONTEND_URL),
            port=_int_env("PORT", 8080),
            session_ttl_minutes=_int_env("SESSION_TTL_MINUTES", 60),
            audit_log_path=os.environ.get("AUDIT_LOG_PATH", DEFAULT_AUDIT_LOG_PATH),
            upstream_timeout=_int_env("UPSTREAM_TIMEOUT", 30),
            token_timeout=_int_env("TOKEN_TIMEOUT", 10),
        )


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None
