"""
Integration tests for Flask routes.

Tests endpoint behavior via Flask test client.
Uses fixtures from conftest.py (flask_app, client, logged_in).
The Gmail client and the OAuth client are mocked; no network access.
"""

import base64
import io
from datetime import timedelta
from unittest.mock import patch

import pytest

from webmail.credentials import CredentialBundle, utcnow
from webmail.gmail import UpstreamError, UpstreamUnauthorized
from webmail.oauth import OAuthError
from webmail.server import oauth_client, parse_label_request, session_store


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode()


def _pending_state(client) -> str:
    """Start a login and return the state stored in the cookie."""
    client.get("/login")
    with client.session_transaction() as cookie_session:
        return cookie_session["oauth_state"]


@pytest.fixture
def gmail():
    """Patch the per-request Gmail client and return the mock instance."""
    with patch("webmail.server.GmailClient") as cls:
        yield cls.return_value


# =============================================================================
# Health endpoint
# =============================================================================


class TestHealth:
    def test_health_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "healthy"

    def test_expired_sessions_pruned_on_request(self, client):
        abandoned = session_store.create()
        abandoned.expires_at = utcnow() - timedelta(minutes=1)
        session_store._last_cleanup = utcnow() - timedelta(hours=1)

        client.get("/health")

        assert abandoned.session_id not in session_store._sessions

    def test_cors_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert resp.headers["Access-Control-Allow-Credentials"] == "true"


# =============================================================================
# Authentication
# =============================================================================


class TestAuth:
    def test_status_unauthenticated(self, client):
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": False}

    def test_status_authenticated(self, client, logged_in):
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": True}

    def test_login_redirects_to_consent(self, client):
        resp = client.get("/login")
        assert resp.status_code == 302
        location = resp.headers["Location"]
        assert location.startswith("https://accounts.google.com/")
        assert "access_type=offline" in location
        assert "prompt=consent" in location

    def test_callback_requires_code(self, client):
        resp = client.get("/oauth2callback")
        assert resp.status_code == 400

    def test_callback_creates_session(self, client):
        tokens = CredentialBundle(access_token="a", refresh_token="r", expires_at=utcnow() + timedelta(hours=1))
        with patch.object(oauth_client, "exchange_code", return_value=tokens) as exchange:
            resp = client.get("/oauth2callback", query_string={"code": "abc", "state": _pending_state(client)})

        assert resp.status_code == 200
        assert b"authSuccess" in resp.data
        assert b"'http://localhost:3000'" in resp.data
        exchange.assert_called_once_with("abc")
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": True}

    def test_callback_state_checked(self, client):
        client.get("/login")  # stores the expected state in the cookie
        resp = client.get("/oauth2callback?code=abc&state=forged")
        assert resp.status_code == 400

    def test_callback_without_pending_login_rejected(self, client):
        with patch.object(oauth_client, "exchange_code") as exchange:
            resp = client.get("/oauth2callback?code=abc&state=anything")
        assert resp.status_code == 400
        exchange.assert_not_called()
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": False}

    def test_callback_exchange_failure(self, client):
        with patch.object(oauth_client, "exchange_code", side_effect=OAuthError("invalid_grant")):
            resp = client.get("/oauth2callback", query_string={"code": "bad", "state": _pending_state(client)})
        assert resp.status_code == 500
        assert b"Authentication failed" in resp.data
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": False}

    def test_logout_destroys_session(self, client, logged_in):
        resp = client.get("/api/logout")
        assert resp.status_code == 200
        assert session_store.get(logged_in.session_id) is None
        assert client.get("/api/auth/status").get_json() == {"isAuthenticated": False}


# =============================================================================
# Guard on protected routes
# =============================================================================


class TestGuard:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/user/profile"),
            ("get", "/api/emails"),
            ("get", "/api/emails/m1"),
            ("get", "/api/emails/m1/attachments/a1"),
            ("post", "/api/emails/m1/modify"),
            ("delete", "/api/emails/m1"),
            ("post", "/api/send"),
        ],
    )
    def test_protected_routes_require_session(self, client, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.get_json()["reason"] == "unauthenticated"

    def test_expired_without_refresh_token(self, client, logged_in):
        logged_in.tokens = CredentialBundle(access_token="a", expires_at=utcnow() - timedelta(minutes=1))

        resp = client.get("/api/user/profile")

        assert resp.status_code == 401
        assert resp.get_json()["reason"] == "session_expired_no_refresh_token"
        assert session_store.get_tokens(logged_in.session_id) is None

    def test_refresh_failure(self, client, logged_in):
        logged_in.tokens = CredentialBundle(
            access_token="a", refresh_token="r", expires_at=utcnow() + timedelta(minutes=2)
        )
        with patch.object(oauth_client, "refresh", side_effect=OAuthError("revoked")):
            resp = client.get("/api/user/profile")

        assert resp.status_code == 401
        assert resp.get_json()["reason"] == "refresh_failed"
        assert session_store.get_tokens(logged_in.session_id) is None

    def test_refresh_success_proceeds(self, client, logged_in, gmail):
        logged_in.tokens = CredentialBundle(
            access_token="old", refresh_token="keep", expires_at=utcnow() + timedelta(minutes=2)
        )
        gmail.get_profile.return_value = {"email": "me@example.com", "name": "Me", "picture": None}
        with patch.object(oauth_client, "refresh", return_value={"access_token": "new", "expires_in": 3600}):
            resp = client.get("/api/user/profile")

        assert resp.status_code == 200
        stored = session_store.get_tokens(logged_in.session_id)
        assert stored.access_token == "new"
        assert stored.refresh_token == "keep"

    def test_upstream_unauthorized_invalidates(self, client, logged_in, gmail):
        gmail.get_message.side_effect = UpstreamUnauthorized()

        resp = client.get("/api/emails/m1")

        assert resp.status_code == 401
        assert resp.get_json()["reason"] == "upstream_unauthorized"
        assert session_store.get_tokens(logged_in.session_id) is None


# =============================================================================
# Messages
# =============================================================================


class TestParseLabels:
    def test_default_inbox(self):
        assert parse_label_request(None) == (["INBOX"], None)
        assert parse_label_request("") == (["INBOX"], None)

    def test_snoozed_becomes_query(self):
        assert parse_label_request("SNOOZED") == ([], "in:snoozed")
        assert parse_label_request("STARRED,SNOOZED") == (["STARRED"], "in:snoozed")

    def test_plain_labels(self):
        assert parse_label_request("SENT,IMPORTANT") == (["SENT", "IMPORTANT"], None)


class TestListEmails:
    def _metadata(self, msg_id, labels=("INBOX",)):
        return {
            "id": msg_id,
            "threadId": f"t-{msg_id}",
            "snippet": "hello there",
            "labelIds": list(labels),
            "payload": {
                "headers": [
                    {"name": "Subject", "value": f"Subject {msg_id}"},
                    {"name": "From", "value": "Alice <alice@example.com>"},
                    {"name": "Date", "value": "Tue, 14 Jan 2025 10:30:00 +0000"},
                ]
            },
        }

    def test_lists_page(self, client, logged_in, gmail):
        gmail.list_messages.return_value = {"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "next"}
        gmail.get_message.side_effect = [self._metadata("m1", ("INBOX", "UNREAD")), self._metadata("m2")]

        resp = client.get("/api/emails?pageToken=p1")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["nextPageToken"] == "next"
        assert [e["id"] for e in data["emails"]] == ["m1", "m2"]
        first = data["emails"][0]
        assert first["subject"] == "Subject m1"
        assert first["from"] == "Alice <alice@example.com>"
        assert first["date"] == "2025-01-14T10:30:00+00:00"
        assert first["read"] is False
        assert data["emails"][1]["read"] is True
        gmail.list_messages.assert_called_once_with(
            label_ids=["INBOX"], query=None, page_token="p1", max_results=25
        )

    def test_snoozed_request(self, client, logged_in, gmail):
        gmail.list_messages.return_value = {}

        resp = client.get("/api/emails?labelIds=SNOOZED")

        assert resp.get_json() == {"emails": [], "nextPageToken": None}
        kwargs = gmail.list_messages.call_args[1]
        assert kwargs["label_ids"] == []
        assert kwargs["query"] == "in:snoozed"

    def test_failed_detail_is_dropped(self, client, logged_in, gmail):
        gmail.list_messages.return_value = {"messages": [{"id": "m1"}, {"id": "m2"}]}
        gmail.get_message.side_effect = [UpstreamError("gone", 404), self._metadata("m2")]

        data = client.get("/api/emails").get_json()

        assert [e["id"] for e in data["emails"]] == ["m2"]

    def test_missing_headers_defaults(self, client, logged_in, gmail):
        gmail.list_messages.return_value = {"messages": [{"id": "m1"}]}
        gmail.get_message.return_value = {"id": "m1", "payload": {"headers": []}}

        email = client.get("/api/emails").get_json()["emails"][0]

        assert email["subject"] == "(No Subject)"
        assert email["from"] == "Unknown Sender"
        assert email["date"]

    def test_list_upstream_failure(self, client, logged_in, gmail):
        gmail.list_messages.side_effect = UpstreamError("backend error", 500)
        resp = client.get("/api/emails")
        assert resp.status_code == 500
        assert resp.get_json()["what"] == "Failed to list emails"

    def test_insufficient_scope(self, client, logged_in, gmail):
        gmail.list_messages.side_effect = UpstreamError("Request had insufficient authentication scopes.", 403)
        resp = client.get("/api/emails")
        assert resp.status_code == 403
        assert resp.get_json()["code"] == "INSUFFICIENT_SCOPE"


class TestGetEmail:
    def test_detail_with_html_and_attachment(self, client, logged_in, gmail):
        gmail.get_message.return_value = {
            "id": "m1",
            "threadId": "t1",
            "snippet": "snip",
            "labelIds": ["INBOX"],
            "payload": {
                "mimeType": "multipart/mixed",
                "headers": [
                    {"name": "subject", "value": "Report"},
                    {"name": "From", "value": "bob@example.com"},
                    {"name": "To", "value": "me@example.com"},
                ],
                "body": {"size": 0},
                "parts": [
                    {
                        "mimeType": "multipart/alternative",
                        "body": {},
                        "parts": [
                            {"mimeType": "text/plain", "body": {"data": _b64("plain")}},
                            {"mimeType": "text/html", "body": {"data": _b64("<p>html</p>")}},
                        ],
                    },
                    {
                        "mimeType": "application/pdf",
                        "filename": "report.pdf",
                        "body": {"attachmentId": "att-1", "size": 2048},
                    },
                ],
            },
        }

        resp = client.get("/api/emails/m1")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["subject"] == "Report"
        assert data["to"] == "me@example.com"
        assert data["cc"] == ""
        assert data["body"] == "<p>html</p>"
        assert data["bodyText"] == "plain"
        assert data["attachments"] == [
            {"filename": "report.pdf", "mimeType": "application/pdf", "size": 2048, "attachmentId": "att-1"}
        ]
        gmail.get_message.assert_called_once_with("m1", format="full")

    def test_detail_without_content(self, client, logged_in, gmail):
        gmail.get_message.return_value = {"id": "m1", "payload": {"mimeType": "application/octet-stream"}}

        data = client.get("/api/emails/m1").get_json()

        assert data["body"] == "(no content)"
        assert data["bodyHtml"] == ""
        assert data["attachments"] == []

    def test_detail_not_found(self, client, logged_in, gmail):
        gmail.get_message.side_effect = UpstreamError("Requested entity was not found.", 404)
        resp = client.get("/api/emails/missing")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Email not found."

    def test_detail_with_malformed_headers(self, client, logged_in, gmail):
        gmail.get_message.return_value = {
            "id": "m1",
            "payload": {
                "mimeType": "text/plain",
                "headers": [None, {"name": None, "value": "x"}, {"name": "Subject", "value": "Hi"}],
                "body": {"data": _b64("hello")},
            },
        }

        resp = client.get("/api/emails/m1")

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["subject"] == "Hi"
        assert data["from"] == ""
        assert data["body"] == "hello"


class TestAttachment:
    def test_download(self, client, logged_in, gmail):
        gmail.get_attachment.return_value = b"%PDF-1.4"

        resp = client.get(
            "/api/emails/m1/attachments/a1",
            query_string={"filename": "my report.pdf", "mimetype": "application/pdf"},
        )

        assert resp.status_code == 200
        assert resp.data == b"%PDF-1.4"
        assert resp.mimetype == "application/pdf"
        assert resp.headers["Content-Disposition"] == 'attachment; filename="my%20report.pdf"'

    def test_download_defaults(self, client, logged_in, gmail):
        gmail.get_attachment.return_value = b"x"

        resp = client.get("/api/emails/m1/attachments/a1")

        assert resp.mimetype == "application/octet-stream"
        assert 'filename="attachment"' in resp.headers["Content-Disposition"]

    def test_no_data(self, client, logged_in, gmail):
        gmail.get_attachment.return_value = None
        assert client.get("/api/emails/m1/attachments/a1").status_code == 404


class TestModifyAndTrash:
    def test_modify(self, client, logged_in, gmail):
        resp = client.post("/api/emails/m1/modify", json={"removeLabelIds": ["UNREAD"]})

        assert resp.status_code == 200
        gmail.modify_labels.assert_called_once_with("m1", None, ["UNREAD"])

    def test_modify_requires_labels(self, client, logged_in, gmail):
        resp = client.post("/api/emails/m1/modify", json={})
        assert resp.status_code == 400
        gmail.modify_labels.assert_not_called()

    def test_modify_empty_list_forwarded(self, client, logged_in, gmail):
        resp = client.post("/api/emails/m1/modify", json={"addLabelIds": []})

        assert resp.status_code == 200
        gmail.modify_labels.assert_called_once_with("m1", [], None)

    def test_modify_rejects_non_list(self, client, logged_in, gmail):
        resp = client.post("/api/emails/m1/modify", json={"addLabelIds": "STARRED"})
        assert resp.status_code == 400

    def test_modify_not_found(self, client, logged_in, gmail):
        gmail.modify_labels.side_effect = UpstreamError("not found", 404)
        assert client.post("/api/emails/m1/modify", json={"addLabelIds": ["STARRED"]}).status_code == 404

    def test_trash(self, client, logged_in, gmail):
        resp = client.delete("/api/emails/m1")
        assert resp.status_code == 200
        assert "moved to trash" in resp.get_json()["message"]
        gmail.trash.assert_called_once_with("m1")


class TestSend:
    def test_send_requires_fields(self, client, logged_in, gmail):
        resp = client.post("/api/send", data={"to": "bob@example.com", "subject": "Hi"})
        assert resp.status_code == 400
        gmail.send_raw.assert_not_called()

    def test_send_plain(self, client, logged_in, gmail):
        resp = client.post("/api/send", data={"to": "bob@example.com", "subject": "Hi", "body": "<p>Hello</p>"})

        assert resp.status_code == 200
        raw = gmail.send_raw.call_args[0][0]
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        assert b"To: bob@example.com" in decoded
        assert b"Subject: Hi" in decoded

    def test_send_with_attachments(self, client, logged_in, gmail):
        data = {
            "to": "bob@example.com",
            "subject": "Files",
            "body": "<p>attached</p>",
            "attachments": [
                (io.BytesIO(b"first file"), "one.txt", "text/plain"),
                (io.BytesIO(b"second file"), "two.csv", "text/csv"),
            ],
        }

        resp = client.post("/api/send", data=data, content_type="multipart/form-data")

        assert resp.status_code == 200
        raw = gmail.send_raw.call_args[0][0]
        decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        assert b"multipart/mixed" in decoded
        assert b'filename="one.txt"' in decoded
        assert b'filename="two.csv"' in decoded

    def test_send_upstream_failure(self, client, logged_in, gmail):
        gmail.send_raw.side_effect = UpstreamError("boom", 500)
        resp = client.post("/api/send", data={"to": "a@b.c", "subject": "s", "body": "b"})
        assert resp.status_code == 500
