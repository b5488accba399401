from __future__ import annotations
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from app.core.config import Settings
from app.core.errors import (
    ProviderError,
    ReauthorizationRequired,
    ServerMisconfigured,
    TokenExchangeFailed,
)

log = logging.getLogger(__name__)

GOOGLE_AUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"

SEARCH_CONSOLE_SCOPE = "https://www.googleapis.com/auth/webmasters.readonly"
ANALYTICS_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"
EMAIL_SCOPE = "https://www.googleapis.com/auth/userinfo.email"

REQUIRED_SCOPES = [SEARCH_CONSOLE_SCOPE, ANALYTICS_SCOPE, EMAIL_SCOPE]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _error_summary(resp: httpx.Response) -> str:
    try:
        j = resp.json()
    except ValueError:
        return f"{resp.status_code} {resp.text[:200]}"
    if isinstance(j, dict):
        desc = j.get("error_description") or j.get("error")
        if isinstance(desc, dict):
            desc = desc.get("message")
        if desc:
            return f"{resp.status_code} {desc}"
    return f"{resp.status_code} {resp.text[:200]}"


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints: consent URL, code exchange, refresh, userinfo."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport)

    def _ensure_client_config(self) -> None:
        if not self.settings.GOOGLE_CLIENT_ID or not self.settings.GOOGLE_CLIENT_SECRET:
            raise ServerMisconfigured("Missing GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET in environment")

    def build_consent_url(self, state: str) -> str:
        self._ensure_client_config()
        params = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "redirect_uri": self.settings.GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(REQUIRED_SCOPES),
            "state": state,
            "access_type": "offline",     # ask for a refresh_token
            "include_granted_scopes": "true",
            "prompt": "consent",          # Google omits refresh_token on silent re-grants
        }
        return f"{GOOGLE_AUTH_ENDPOINT}?{urlencode(params)}"

    @staticmethod
    def _parse_token_response(j: Dict[str, Any]) -> Dict[str, Any]:
        expires_in = j.get("expires_in")
        expiry_date = None
        if expires_in is not None:
            try:
                expiry_date = _now_ms() + int(expires_in) * 1000
            except (TypeError, ValueError):
                expiry_date = None
        return {
            "access_token": j.get("access_token"),
            "refresh_token": j.get("refresh_token"),
            "expiry_date": expiry_date,
            "scope": j.get("scope"),
            "token_type": j.get("token_type"),
        }

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange authorization code for tokens.
        Returns: {access_token, refresh_token, expiry_date (ms epoch), scope, token_type}; any may be None.
        """
        self._ensure_client_config()
        data = {
            "code": code,
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            "redirect_uri": self.settings.GOOGLE_REDIRECT_URI,
            "grant_type": "authorization_code",
        }
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_TOKEN_ENDPOINT, data=data)
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(f"token exchange failed: {e.__class__.__name__}") from e

        if resp.status_code != 200:
            raise TokenExchangeFailed(f"token exchange failed: {_error_summary(resp)}")
        try:
            return self._parse_token_response(resp.json())
        except ValueError as e:
            raise TokenExchangeFailed("token exchange returned a non-JSON body") from e

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        """
        Mint a new access token from a refresh token.
        A rejected refresh token (revoked, expired) can only be fixed by the user re-consenting.
        """
        self._ensure_client_config()
        data = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_TOKEN_ENDPOINT, data=data)
        except httpx.HTTPError as e:
            raise ProviderError(f"token refresh failed: {e.__class__.__name__}") from e

        if resp.status_code in (400, 401):
            raise ReauthorizationRequired(f"refresh failed: {_error_summary(resp)}")
        if resp.status_code != 200:
            raise ProviderError(f"refresh failed: {_error_summary(resp)}", provider_status=resp.status_code)

        try:
            out = self._parse_token_response(resp.json())
        except ValueError as e:
            raise ProviderError("refresh returned a non-JSON body") from e
        if not out["access_token"] or not out["expiry_date"]:
            raise ProviderError("refresh response missing access_token/expires_in")
        return out

    async def fetch_user_email(self, access_token: str) -> str:
        async with self._client() as client:
            resp = await client.get(GOOGLE_USERINFO_ENDPOINT, headers={"Authorization": f"Bearer {access_token}"})
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            return ""
        return str(data.get("email") or "")
