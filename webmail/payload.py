"""
Message payload extraction.

Works on the ``payload`` object of a Gmail ``messages.get`` response with
``format=full``: a tree of MIME part nodes, each a plain dict with
``mimeType``, ``body`` (``data``, ``attachmentId``, ``size``), an optional
``filename``, and optional nested ``parts``.

All traversal is depth-first pre-order: a node is checked before its
children, and children are visited left to right. The first match wins.
"""

import base64
import binascii
from dataclasses import asdict, dataclass, field

NO_CONTENT = "(no content)"


@dataclass(frozen=True)
class Attachment:
    filename: str
    mimeType: str
    size: int | None
    attachmentId: str


@dataclass(frozen=True)
class ExtractionResult:
    bodyHtml: str = ""
    bodyText: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def decode_body(data: str | None) -> str:
    """Decode a base64-encoded body part to text.

    Accepts the URL-safe and the standard alphabet, with or without padding.
    Returns an empty string for missing or undecodable data.
    """
    if not data or not isinstance(data, str):
        return ""
    normalized = data.strip().replace("+", "-").replace("/", "_")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw = base64.urlsafe_b64decode(normalized)
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def _body(node: dict) -> dict:
    body = node.get("body")
    return body if isinstance(body, dict) else {}


def _children(node: dict) -> list[dict]:
    parts = node.get("parts")
    if not isinstance(parts, list):
        return []
    return [p for p in parts if isinstance(p, dict)]


def _has_data(node: dict) -> bool:
    data = _body(node).get("data")
    return isinstance(data, str) and bool(data)


def find_part(parts: list[dict], mime_type: str) -> dict | None:
    """
    Find the first part of ``mime_type`` that carries body data.

    A part whose type matches but has no data does not count; the search
    moves on to its children and then its siblings.
    """
    for part in parts:
        if not isinstance(part, dict):
            continue
        if part.get("mimeType") == mime_type and _has_data(part):
            return part
        found = find_part(_children(part), mime_type)
        if found is not None:
            return found
    return None


def _find_body(payload: dict, mime_type: str) -> str:
    part = find_part(_children(payload), mime_type)
    if part is not None:
        return decode_body(_body(part).get("data"))
    return ""


def _root_body(payload: dict, mime_type: str) -> str:
    if payload.get("mimeType") == mime_type and _has_data(payload):
        return decode_body(_body(payload).get("data"))
    return ""


def collect_attachments(payload: dict) -> list[Attachment]:
    """Collect every node, root included, with a filename and an attachment id."""
    attachments: list[Attachment] = []

    def visit(node: dict) -> None:
        body = _body(node)
        filename = node.get("filename")
        if filename and body.get("attachmentId"):
            attachments.append(
                Attachment(
                    filename=filename,
                    mimeType=node.get("mimeType", ""),
                    size=body.get("size"),
                    attachmentId=body["attachmentId"],
                )
            )
        for child in _children(node):
            visit(child)

    if isinstance(payload, dict):
        visit(payload)
    return attachments


def extract(payload: dict | None) -> ExtractionResult:
    """
    Extract the HTML body, the plain-text body and the attachment list.

    The parts tree is searched first. The root node's own body is used
    only as a fallback: for HTML when no HTML part was found, for plain
    text when neither a plain-text part nor any HTML body was found.
    """
    if not isinstance(payload, dict):
        return ExtractionResult()

    body_html = _find_body(payload, "text/html")
    if not body_html:
        body_html = _root_body(payload, "text/html")

    body_text = _find_body(payload, "text/plain")
    if not body_text and not body_html:
        body_text = _root_body(payload, "text/plain")

    return ExtractionResult(
        bodyHtml=body_html,
        bodyText=body_text,
        attachments=collect_attachments(payload),
    )


def preferred_body(result: ExtractionResult) -> str:
    """HTML if present, else plain text, else the no-content placeholder."""
    return result.bodyHtml or result.bodyText or NO_CONTENT


def extract_headers(payload: dict | None, names: list[str] | None = None) -> dict[str, str]:
    """Extract headers from a message payload.

    Matching is case-insensitive. The returned dict uses the requested
    casing. Defaults to ``["From", "To", "Cc", "Subject", "Date"]``.
    """
    if names is None:
        names = ["From", "To", "Cc", "Subject", "Date"]
    target = {n.lower(): n for n in names}
    result: dict[str, str] = {}
    if not isinstance(payload, dict):
        return result
    headers = payload.get("headers")
    if not isinstance(headers, list):
        return result
    for header in headers:
        if not isinstance(header, dict):
            continue
        name = header.get("name")
        if not isinstance(name, str):
            continue
        requested = target.get(name.lower())
        if requested is not None and requested not in result:
            value = header.get("value")
            result[requested] = value if isinstance(value, str) else ""
    return result
