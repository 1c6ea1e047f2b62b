"""
Outgoing message construction.

Builds an HTML message, with optional file attachments, and encodes it as
base64url without padding for the Gmail ``messages.send`` call.
"""

import base64
from dataclasses import dataclass
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText


@dataclass(frozen=True)
class OutgoingAttachment:
    filename: str
    content_type: str
    data: bytes


def build_message(to: str, subject: str, body: str, attachments: list[OutgoingAttachment] | None = None):
    """Build the MIME message. Multipart/mixed only when there are attachments."""
    if not attachments:
        msg = MIMEText(body, "html", "utf-8")
    else:
        msg = MIMEMultipart("mixed")
        msg.attach(MIMEText(body, "html", "utf-8"))
        for attachment in attachments:
            maintype, _, subtype = (attachment.content_type or "application/octet-stream").partition("/")
            part = MIMEBase(maintype or "application", subtype or "octet-stream", name=attachment.filename)
            part.set_payload(attachment.data)
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(part)

    msg["To"] = to
    msg["Subject"] = subject
    return msg


def encode_raw(msg) -> str:
    """Encode a message as base64url with the padding stripped."""
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


def build_raw_message(to: str, subject: str, body: str, attachments: list[OutgoingAttachment] | None = None) -> str:
    return encode_raw(build_message(to, subject, body, attachments))
