"""Structured JSON error responses."""

from flask import jsonify


def error_response(what: str, why: str, action: str, code: str | None = None, status: int = 500):
    """
    Build a JSON error response with a what/why/action triple.

    Args:
        what: Short description of what failed
        why: Reason for the failure, safe to show to the client
        action: What the caller can do about it
        code: Optional machine-readable error code
        status: HTTP status code

    Returns:
        (response, status) tuple suitable for returning from a Flask view
    """
    body = {"what": what, "why": why, "action": action}
    if code:
        body["code"] = code
    return jsonify(body), status
