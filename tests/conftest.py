"""
Shared test fixtures for Flask app integration tests.

CRITICAL: SESSION_SECRET must be set at module level before importing
webmail.server, because the server reads its settings at import time.
"""

import os
import tempfile

# Set required env vars BEFORE any server imports
os.environ.setdefault("SESSION_SECRET", "test-secret-key-for-testing")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GOOGLE_REDIRECT_URI", "http://localhost:8080/oauth2callback")
os.environ.setdefault("AUDIT_LOG_PATH", os.path.join(tempfile.mkdtemp(), "audit.jsonl"))

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402

from webmail.credentials import CredentialBundle, utcnow  # noqa: E402
from webmail.server import app, limiter, session_store  # noqa: E402


@pytest.fixture
def flask_app():
    """Provide the Flask app configured for testing."""
    app.config["TESTING"] = True
    app.config["RATELIMIT_ENABLED"] = False  # Disable rate limiting in tests
    limiter.enabled = False
    return app


@pytest.fixture
def client(flask_app):
    """Provide a Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def fresh_tokens():
    """A credential bundle that is nowhere near expiry."""
    return CredentialBundle(
        access_token="access-abc",
        refresh_token="refresh-xyz",
        expires_at=utcnow() + timedelta(hours=1),
    )


@pytest.fixture
def logged_in(client, fresh_tokens):
    """Create a server-side session and attach its id to the client's cookie."""
    session = session_store.create(fresh_tokens)
    with client.session_transaction() as cookie_session:
        cookie_session["sid"] = session.session_id
    yield session
    session_store.revoke(session.session_id)
