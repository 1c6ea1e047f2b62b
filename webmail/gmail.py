"""
Gmail API client bound to one request's access token.

Routes create a client from the credential bundle the guard allowed and
call the high-level helpers below. Failures surface as ``UpstreamError``;
a 401 from Gmail surfaces as ``UpstreamUnauthorized`` so the caller can
invalidate the session the same way the guard does.
"""

import base64
import logging
from collections.abc import Callable

import requests

from webmail.credentials import CredentialBundle

logger = logging.getLogger(__name__)

GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_TIMEOUT = 30


class UpstreamError(Exception):
    """Raised when the mail API fails or answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    def is_insufficient_scope(self) -> bool:
        text = str(self).lower()
        return self.status_code == 403 and "insufficient" in text


class UpstreamUnauthorized(UpstreamError):
    """Raised when the mail API rejects the access token."""

    def __init__(self, message: str = "Upstream rejected the access token"):
        super().__init__(message, status_code=401)


class GmailClient:
    """Thin wrapper over the Gmail REST API for the ``me`` user."""

    def __init__(
        self,
        tokens: CredentialBundle,
        base_url: str = GMAIL_BASE_URL,
        timeout: int = DEFAULT_TIMEOUT,
        on_request: Callable[[str, str, int], None] | None = None,
    ):
        self._tokens = tokens
        self._base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.on_request = on_request

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = self._tokens.authorization_header()
        try:
            response = requests.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout calling Gmail: {method} {url}")
            raise UpstreamError("upstream timeout", status_code=504) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Connection error calling Gmail: {method} {url}: {e}")
            raise UpstreamError("upstream connection failed", status_code=502) from e

        if self.on_request is not None:
            self.on_request(method, url, response.status_code)

        if response.status_code == 401:
            raise UpstreamUnauthorized()
        if response.status_code >= 400:
            raise UpstreamError(_error_message(response), status_code=response.status_code)
        return response

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path}"

    def get(self, path: str, params: dict | None = None) -> dict:
        return self._request("GET", self._url(path), params=params).json()

    def post(self, path: str, json: dict | None = None) -> dict:
        response = self._request("POST", self._url(path), json=json)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # -----------------------------------------------------------------------
    # High-level operations
    # -----------------------------------------------------------------------

    def get_profile(self) -> dict:
        """Fetch the signed-in user's email, name and picture."""
        data = self._request("GET", USERINFO_URL).json()
        return {
            "email": data.get("email"),
            "name": data.get("name"),
            "picture": data.get("picture"),
        }

    def list_messages(
        self,
        label_ids: list[str] | None = None,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = 25,
    ) -> dict:
        """List message stubs (``id``, ``threadId``) for one page."""
        params: dict = {"maxResults": max_results}
        if label_ids:
            params["labelIds"] = label_ids
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token
        return self.get("messages", params)

    def get_message(self, message_id: str, format: str = "full", metadata_headers: list[str] | None = None) -> dict:
        params: dict = {"format": format}
        if metadata_headers:
            params["metadataHeaders"] = metadata_headers
        return self.get(f"messages/{message_id}", params)

    def get_attachment(self, message_id: str, attachment_id: str) -> bytes | None:
        """Fetch and decode one attachment. Returns None if Gmail sent no data."""
        data = self.get(f"messages/{message_id}/attachments/{attachment_id}").get("data")
        if not data:
            return None
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))

    def modify_labels(
        self,
        message_id: str,
        add_label_ids: list[str] | None = None,
        remove_label_ids: list[str] | None = None,
    ) -> dict:
        return self.post(
            f"messages/{message_id}/modify",
            {"addLabelIds": add_label_ids or [], "removeLabelIds": remove_label_ids or []},
        )

    def trash(self, message_id: str) -> dict:
        return self.post(f"messages/{message_id}/trash")

    def send_raw(self, raw: str) -> dict:
        """Send a base64url-encoded RFC 5322 message."""
        return self.post("messages/send", {"raw": raw})


def _error_message(response: requests.Response) -> str:
    """Pull the Gmail error message out of a failed response."""
    try:
        error = response.json().get("error")
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    if isinstance(error, str):
        return error
    return f"HTTP {response.status_code}"
