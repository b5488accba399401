from __future__ import annotations
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from app.services.google_oauth import ANALYTICS_SCOPE, SEARCH_CONSOLE_SCOPE
from app.services.provider_errors import ProviderHTTPError

SEARCH_CONSOLE_BASE = "https://www.googleapis.com/webmasters/v3"
ANALYTICS_DATA_BASE = "https://analyticsdata.googleapis.com/v1beta"


class GoogleApiClient:
    """Thin REST client bound to one access token. Non-2xx answers raise ProviderHTTPError."""

    name = "google"
    required_scope: Optional[str] = None

    def __init__(self, access_token: str, *, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._timeout = timeout
        self._transport = transport

    async def _request(self, method: str, url: str, *, params: dict | None = None,
                       json: dict | None = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            r = await client.request(method, url, headers=self._headers, params=params, json=json)
        if r.status_code >= 400:
            raise ProviderHTTPError.from_response(r)
        if not r.content:
            return {}
        return r.json()


class SearchConsoleClient(GoogleApiClient):
    name = "search_console"
    required_scope = SEARCH_CONSOLE_SCOPE

    async def list_sites(self) -> List[str]:
        data = await self._request("GET", f"{SEARCH_CONSOLE_BASE}/sites")
        return [s["siteUrl"] for s in data.get("siteEntry", []) if s.get("siteUrl")]

    async def query(self, site_url: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{SEARCH_CONSOLE_BASE}/sites/{quote(site_url, safe='')}/searchAnalytics/query"
        data = await self._request("POST", url, json=body)
        return data.get("rows", [])


class AnalyticsDataClient(GoogleApiClient):
    name = "ga4"
    required_scope = ANALYTICS_SCOPE

    async def run_report(self, property_id: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{ANALYTICS_DATA_BASE}/properties/{quote(property_id, safe='')}:runReport"
        data = await self._request("POST", url, json=body)
        return data.get("rows", [])
