"""
OAuth2 client for the Google token endpoint.

Covers the two grants the gateway needs: exchanging an authorization code
after the consent redirect, and refreshing an access token.
"""

import logging
from urllib.parse import urlencode

import requests

from webmail.credentials import CredentialBundle

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.compose",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


class OAuthError(Exception):
    """Raised when the token endpoint rejects a request or cannot be reached."""


class OAuthClient:
    """Authorization-code and refresh-token grants against one token endpoint."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        token_url: str = TOKEN_URL,
        auth_url: str = AUTH_URL,
        scopes: list[str] | None = None,
        timeout: int = 10,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_url = token_url
        self.auth_url = auth_url
        self.scopes = scopes or SCOPES
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self, state: str | None = None) -> str:
        """
        Build the consent URL.

        Requests offline access and forces the consent prompt so Google
        issues a refresh token on every login.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{self.auth_url}?{urlencode(params)}"

    def exchange_code(self, code: str) -> CredentialBundle:
        """
        Exchange an authorization code for a credential bundle.

        Raises:
            OAuthError: On transport failure, a non-2xx answer, or a
                response without an access token.
        """
        data = self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            }
        )
        try:
            bundle = CredentialBundle.from_token_response(data)
        except KeyError:
            raise OAuthError("Token response did not include an access token") from None
        logger.info("Exchanged authorization code for tokens")
        return bundle

    def refresh(self, refresh_token: str) -> dict:
        """
        Refresh an access token.

        Returns the raw token response. It may omit ``refresh_token``.

        Raises:
            OAuthError: On transport failure, a non-2xx answer, or a
                response without an access token.
        """
        data = self._post(
            {
                "grant_type": "refresh_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
            }
        )
        if not data.get("access_token"):
            raise OAuthError("Refresh response did not include an access token")
        logger.info("Refreshed OAuth2 access token")
        return data

    def _post(self, form: dict) -> dict:
        try:
            response = requests.post(self.token_url, data=form, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            # Only log the grant type; the form carries secrets
            logger.error(f"Token endpoint request failed ({form.get('grant_type')}): {e}")
            raise OAuthError(str(e)) from e
        except ValueError as e:
            logger.error(f"Token endpoint returned invalid JSON: {e}")
            raise OAuthError("Invalid JSON from token endpoint") from e
