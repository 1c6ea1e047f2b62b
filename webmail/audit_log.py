"""
Audit logging for the webmail gateway

Appends structured JSON Lines entries to a log file for security-relevant
events: logins, logouts, token refreshes, session invalidation, and
upstream mail API calls.

Each line is a self-contained JSON object. Thread-safe file writing.
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only JSON Lines audit logger."""

    def __init__(self, log_path: str):
        self._log_path = log_path
        self._lock = threading.Lock()
        directory = os.path.dirname(self._log_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        logger.info(f"Audit log: {self._log_path}")

    def _write(self, entry: dict) -> None:
        """Write a single JSON line to the log file."""
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        try:
            line = json.dumps(entry, separators=(",", ":"))
            with self._lock:
                with open(self._log_path, "a") as f:
                    f.write(line + "\n")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def login(self, session_id: str) -> None:
        self._write({"event": "login", "session_id": session_id[:8]})

    def login_failed(self, reason: str) -> None:
        self._write({"event": "login_failed", "reason": reason})

    def logout(self, session_id: str | None) -> None:
        self._write({"event": "logout", "session_id": session_id[:8] if session_id else None})

    def token_refreshed(self, session_id: str) -> None:
        self._write({"event": "token_refreshed", "session_id": session_id[:8]})

    def session_invalidated(self, session_id: str | None, reason: str) -> None:
        self._write(
            {
                "event": "session_invalidated",
                "session_id": session_id[:8] if session_id else None,
                "reason": reason,
            }
        )

    def session_expired(self, session_id: str) -> None:
        self._write({"event": "session_expired", "session_id": session_id[:8]})

    def upstream_request(self, session_id: str | None, method: str, url: str, status_code: int) -> None:
        self._write(
            {
                "event": "upstream_request",
                "session_id": session_id[:8] if session_id else None,
                "method": method,
                "url": url,
                "status": status_code,
            }
        )
