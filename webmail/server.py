#!/usr/bin/env python3
"""
Webmail Gateway Server

Provides:
- Google OAuth login with server-side sessions
- Transparent access-token refresh on every protected route
- JSON endpoints over the Gmail API for a browser mail client

Tokens never reach the browser. The browser holds a signed cookie that
carries only an opaque session id.
"""

import logging
import secrets
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from functools import wraps
from urllib.parse import quote

from flask import Flask, Response, g, jsonify, redirect, request, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from webmail.audit_log import AuditLog
from webmail.compose import OutgoingAttachment, build_raw_message
from webmail.config import Settings
from webmail.error_utils import error_response
from webmail.gmail import GmailClient, UpstreamError, UpstreamUnauthorized
from webmail.guard import REJECT_MESSAGES, Allow, RejectReason, guard
from webmail.oauth import OAuthClient, OAuthError
from webmail.payload import extract, extract_headers, preferred_body
from webmail.sessions import SessionStore

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Configuration
settings = Settings.from_env()

app = Flask(__name__)
app.secret_key = settings.session_secret
app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024  # Gmail's message size limit
app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

limiter = Limiter(get_remote_address, app=app, default_limits=[], storage_uri="memory://")

# Initialize audit log, session store (with expiry callback), and OAuth client
audit_log = AuditLog(settings.audit_log_path)
session_store = SessionStore(
    ttl_minutes=settings.session_ttl_minutes,
    on_session_expired=lambda sid: audit_log.session_expired(sid),
)
oauth_client = OAuthClient(
    client_id=settings.client_id,
    client_secret=settings.client_secret,
    redirect_uri=settings.redirect_uri,
    timeout=settings.token_timeout,
)

if not oauth_client.is_configured():
    logger.warning("GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET or GOOGLE_REDIRECT_URI missing - login will fail")

LIST_PAGE_SIZE = 25
LIST_HEADERS = ["Subject", "From", "Date"]

AUTH_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authentication Success</title></head>
<body>
  <p>Authentication successful. Closing this window...</p>
  <script>
    if (window.opener) {{
      window.opener.postMessage('authSuccess', {origin});
    }}
    window.close();
  </script>
</body>
</html>
"""

AUTH_FAILURE_PAGE = """<!DOCTYPE html>
<html>
<head><title>Authentication Failed</title></head>
<body>
  <p>Authentication failed. Please close this window and try again.</p>
  <script>window.close();</script>
</body>
</html>
"""


def current_session_id() -> str | None:
    return session.get("sid")


def unauthorized(reason: RejectReason):
    return jsonify({"error": REJECT_MESSAGES[reason], "reason": reason.value}), 401


def require_auth(view):
    """
    Run the session/token guard before a protected view.

    On success, ``g.tokens`` holds the current credential bundle and
    ``g.gmail`` a client bound to it.
    """

    @wraps(view)
    def wrapper(*args, **kwargs):
        session_id = current_session_id()
        result = guard(session_store, session_id, oauth_client)

        if not isinstance(result, Allow):
            if result.reason is not RejectReason.UNAUTHENTICATED:
                audit_log.session_invalidated(session_id, result.reason.value)
            return unauthorized(result.reason)

        if result.refreshed:
            audit_log.token_refreshed(session_id)

        g.session_id = session_id
        g.tokens = result.tokens
        g.gmail = GmailClient(
            result.tokens,
            timeout=settings.upstream_timeout,
            on_request=lambda method, url, status: audit_log.upstream_request(session_id, method, url, status),
        )
        return view(*args, **kwargs)

    return wrapper


def upstream_failure(e: UpstreamError, what: str, not_found: str | None = None):
    """Translate an upstream error into the gateway's response."""
    if isinstance(e, UpstreamUnauthorized):
        logger.warning(f"Gmail rejected the access token for session {g.session_id[:8]}...")
        session_store.delete_tokens(g.session_id)
        audit_log.session_invalidated(g.session_id, RejectReason.UPSTREAM_UNAUTHORIZED.value)
        return unauthorized(RejectReason.UPSTREAM_UNAUTHORIZED)

    if e.status_code == 404 and not_found:
        return jsonify({"error": not_found}), 404

    if e.is_insufficient_scope():
        return error_response(
            what=what,
            why="Insufficient permissions",
            action="Please re-authenticate with the required scopes",
            code="INSUFFICIENT_SCOPE",
            status=403,
        )

    if e.status_code == 403:
        return error_response(what=what, why="Forbidden: access denied", action="Check account permissions", status=403)

    # Log full details locally; the client only gets a generic message
    logger.error(f"{what}: {e} (status {e.status_code})")
    return error_response(what=what, why="The mail service returned an error", action="Try again later", status=500)


@app.before_request
def prune_expired_sessions() -> None:
    removed = session_store.cleanup_if_due()
    if removed:
        logger.info(f"{len(session_store)} session(s) still active")


@app.after_request
def add_cors_headers(response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = settings.frontend_url
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Vary"] = "Origin"
    return response


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint (no sensitive data exposed)"""
    return jsonify({"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()})


# =============================================================================
# Authentication
# =============================================================================


@app.route("/api/auth/status", methods=["GET"])
def auth_status():
    """Report whether the session holds a credential bundle (no refresh attempted)."""
    return jsonify({"isAuthenticated": session_store.get_tokens(current_session_id()) is not None})


@app.route("/login", methods=["GET"])
@limiter.limit("20 per minute")
def login():
    """Redirect to the Google consent screen."""
    state = secrets.token_urlsafe(16)
    session["oauth_state"] = state
    return redirect(oauth_client.authorization_url(state))


@app.route("/oauth2callback", methods=["GET"])
@limiter.limit("20 per minute")
def oauth2callback():
    """
    Handle the consent redirect.

    Exchanges the code for tokens, starts a server-side session and answers
    with a page that notifies the opener window and closes itself.
    """
    code = request.args.get("code")
    if not code:
        return jsonify({"error": "Authorization code missing."}), 400

    # A callback without a pending /login from this browser is rejected
    expected_state = session.pop("oauth_state", None)
    state = request.args.get("state")
    if not expected_state or state != expected_state:
        logger.warning(f"OAuth state mismatch from {request.remote_addr}")
        audit_log.login_failed("state_mismatch")
        return jsonify({"error": "OAuth state mismatch."}), 400

    try:
        tokens = oauth_client.exchange_code(code)
    except OAuthError as e:
        logger.error(f"Error getting tokens: {e}")
        audit_log.login_failed("code_exchange_failed")
        return Response(AUTH_FAILURE_PAGE, status=500, mimetype="text/html")

    # Replace any previous session so an old id cannot be reused
    session_store.revoke(current_session_id())
    new_session = session_store.create(tokens)
    session["sid"] = new_session.session_id
    audit_log.login(new_session.session_id)
    logger.info(f"Created session {new_session.session_id[:8]}...")

    page = AUTH_SUCCESS_PAGE.format(origin=_js_string(settings.frontend_url))
    return Response(page, status=200, mimetype="text/html")


@app.route("/api/logout", methods=["GET"])
def logout():
    """Destroy the server-side session and clear the cookie."""
    session_id = current_session_id()
    session_store.revoke(session_id)
    session.clear()
    audit_log.logout(session_id)
    return jsonify({"message": "Logged out successfully."})


@app.route("/api/user/profile", methods=["GET"])
@require_auth
def user_profile():
    try:
        return jsonify(g.gmail.get_profile())
    except UpstreamError as e:
        return upstream_failure(e, "Failed to retrieve user profile")


# =============================================================================
# Messages
# =============================================================================


def parse_label_request(label_ids: str | None) -> tuple[list[str], str | None]:
    """
    Turn the ``labelIds`` query parameter into (label ids, search query).

    ``SNOOZED`` is not a real label for listing; it becomes the
    ``in:snoozed`` query. With neither labels nor a query, ``INBOX`` is used.
    """
    labels = [label for label in (label_ids or "").split(",") if label] or ["INBOX"]
    query = None
    if "SNOOZED" in labels:
        query = "in:snoozed"
        labels = [label for label in labels if label != "SNOOZED"]
    if not labels and not query:
        labels = ["INBOX"]
    return labels, query


def _iso_date(value: str | None) -> str:
    if value:
        try:
            return parsedate_to_datetime(value).isoformat()
        except (TypeError, ValueError):
            pass
    return datetime.now(timezone.utc).isoformat()


def summarize_message(msg: dict) -> dict:
    headers = extract_headers(msg.get("payload", {}), LIST_HEADERS)
    labels = msg.get("labelIds") or []
    return {
        "id": msg.get("id"),
        "threadId": msg.get("threadId"),
        "subject": headers.get("Subject") or "(No Subject)",
        "from": headers.get("From") or "Unknown Sender",
        "date": _iso_date(headers.get("Date")),
        "snippet": msg.get("snippet", ""),
        "read": "UNREAD" not in labels,
        "labels": labels,
    }


@app.route("/api/emails", methods=["GET"])
@require_auth
def list_emails():
    """
    List one page of messages.

    Query: labelIds (comma separated, default INBOX), pageToken.
    Output: {"emails": [...], "nextPageToken": "..."}
    """
    labels, query = parse_label_request(request.args.get("labelIds"))
    page_token = request.args.get("pageToken")

    try:
        listing = g.gmail.list_messages(
            label_ids=labels, query=query, page_token=page_token, max_results=LIST_PAGE_SIZE
        )
    except UpstreamError as e:
        return upstream_failure(e, "Failed to list emails")

    stubs = listing.get("messages") or []
    if not stubs:
        return jsonify({"emails": [], "nextPageToken": None})

    emails = []
    for stub in stubs:
        try:
            msg = g.gmail.get_message(stub["id"], format="metadata", metadata_headers=LIST_HEADERS)
        except UpstreamError as e:
            # One bad message should not fail the whole page
            logger.error(f"Error fetching details for message {stub.get('id')}: {e}")
            continue
        emails.append(summarize_message(msg))

    return jsonify({"emails": emails, "nextPageToken": listing.get("nextPageToken")})


@app.route("/api/emails/<message_id>", methods=["GET"])
@require_auth
def get_email(message_id: str):
    """Fetch one message with its decoded body and attachment list."""
    try:
        message = g.gmail.get_message(message_id, format="full")
    except UpstreamError as e:
        return upstream_failure(e, "Error fetching email details", not_found="Email not found.")

    payload = message.get("payload") or {}
    headers = extract_headers(payload)
    extracted = extract(payload)

    return jsonify(
        {
            "id": message.get("id"),
            "threadId": message.get("threadId"),
            "snippet": message.get("snippet", ""),
            "labelIds": message.get("labelIds") or [],
            "subject": headers.get("Subject", ""),
            "from": headers.get("From", ""),
            "date": headers.get("Date", ""),
            "to": headers.get("To", ""),
            "cc": headers.get("Cc", ""),
            "body": preferred_body(extracted),
            **extracted.to_dict(),
        }
    )


@app.route("/api/emails/<message_id>/attachments/<attachment_id>", methods=["GET"])
@require_auth
def get_attachment(message_id: str, attachment_id: str):
    """
    Download one attachment.

    The filename and mimetype query parameters come from the detail
    response, since the attachment endpoint does not return them.
    """
    filename = request.args.get("filename") or "attachment"
    mimetype = request.args.get("mimetype") or "application/octet-stream"

    try:
        data = g.gmail.get_attachment(message_id, attachment_id)
    except UpstreamError as e:
        return upstream_failure(e, "Error fetching attachment", not_found="Attachment or Email not found.")

    if data is None:
        logger.error(f"No attachment data found for message {message_id}, attachment {attachment_id}")
        return jsonify({"error": "Attachment data not found."}), 404

    return Response(
        data,
        status=200,
        mimetype=mimetype,
        headers={"Content-Disposition": f'attachment; filename="{quote(filename)}"'},
    )


@app.route("/api/emails/<message_id>/modify", methods=["POST"])
@require_auth
def modify_email(message_id: str):
    """
    Add or remove labels.

    Input: {"addLabelIds": [...], "removeLabelIds": [...]}
    """
    data = request.get_json(silent=True) or {}
    add_label_ids = data.get("addLabelIds")
    remove_label_ids = data.get("removeLabelIds")

    if add_label_ids is None and remove_label_ids is None:
        return error_response(
            what="Invalid modify request",
            why="Either addLabelIds or removeLabelIds must be provided",
            action="Send at least one label list",
            code="MISSING_LABELS",
            status=400,
        )

    for value in (add_label_ids, remove_label_ids):
        if value is not None and not isinstance(value, list):
            return error_response(
                what="Invalid modify request",
                why="Label ids must be lists",
                action="Send addLabelIds/removeLabelIds as JSON arrays",
                code="INVALID_LABELS",
                status=400,
            )

    try:
        g.gmail.modify_labels(message_id, add_label_ids, remove_label_ids)
    except UpstreamError as e:
        return upstream_failure(e, "Failed to modify email labels", not_found="Email not found.")

    return jsonify({"message": f"Email {message_id} modified successfully."})


@app.route("/api/emails/<message_id>", methods=["DELETE"])
@require_auth
def trash_email(message_id: str):
    """Move a message to the trash."""
    try:
        g.gmail.trash(message_id)
    except UpstreamError as e:
        return upstream_failure(e, "Failed to move email to trash", not_found="Email not found.")

    return jsonify({"message": f"Email {message_id} moved to trash."})


@app.route("/api/send", methods=["POST"])
@limiter.limit("30 per minute")
@require_auth
def send_email():
    """
    Send an email.

    Input: multipart/form-data with to, subject, body and any number of
    ``attachments`` files.
    """
    to = request.form.get("to")
    subject = request.form.get("subject")
    body = request.form.get("body")

    if not to or not subject or not body:
        return error_response(
            what="Invalid send request",
            why="Missing required fields: to, subject, body",
            action="Fill in the recipient, subject and body",
            code="MISSING_FIELDS",
            status=400,
        )

    attachments = [
        OutgoingAttachment(
            filename=f.filename or "attachment",
            content_type=f.mimetype or "application/octet-stream",
            data=f.read(),
        )
        for f in request.files.getlist("attachments")
    ]

    raw = build_raw_message(to, subject, body, attachments)

    try:
        g.gmail.send_raw(raw)
    except UpstreamError as e:
        return upstream_failure(e, "Failed to send email")

    logger.info(f"Sent email with {len(attachments)} attachment(s)")
    return jsonify({"message": "Email sent successfully!"})


def _js_string(value: str) -> str:
    """Quote a value for safe embedding as a JavaScript string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'").replace("<", "\\x3c").replace(">", "\\x3e")
    return f"'{escaped}'"


def main() -> None:
    logger.info("Starting Webmail Gateway")
    logger.info(f"Frontend origin: {settings.frontend_url}")
    logger.info(f"Session lifetime: {settings.session_ttl_minutes} minutes")

    # Debug is always off to prevent the interactive debugger
    # and code reloading in production. Use logging for diagnostics.
    app.run(host="127.0.0.1", port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
