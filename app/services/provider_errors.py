"""
Boundary between Google's error payloads and the connector's error codes.

Google APIs report failures in a few shapes (v1 `{"error": {"code", "status", "details"}}`,
legacy `{"error": {"errors": [{"reason"}]}}`, bare text from proxies). Everything is parsed
into a `ProviderFailure` first and only then mapped to a `ConnectorError`.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.core.errors import (
    ConnectorError,
    InsufficientScope,
    InvalidProperty,
    ProviderError,
    RateLimited,
    ReauthorizationRequired,
)

_SCOPE_REASONS = {"insufficientpermissions", "access_token_scope_insufficient", "insufficient_scope"}
_QUOTA_REASONS = {"ratelimitexceeded", "userratelimitexceeded", "quotaexceeded", "rate_limit_exceeded"}


class ProviderHTTPError(Exception):
    """Non-2xx answer from a Google API."""

    def __init__(self, status_code: int, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self.payload = payload
        self.text = text
        super().__init__(f"google api error: {status_code} {text[:200]}")

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "ProviderHTTPError":
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        return cls(resp.status_code, payload, resp.text)


class FailureKind(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    SCOPE = "scope"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    BAD_REQUEST = "bad_request"
    SERVER = "server"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProviderFailure:
    kind: FailureKind
    status: Optional[int] = None
    reason: str = ""
    message: str = ""


def _error_body(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


def _reasons(err: Dict[str, Any]) -> set:
    out = set()
    for item in err.get("errors") or []:
        if isinstance(item, dict) and item.get("reason"):
            out.add(str(item["reason"]).lower())
    for item in err.get("details") or []:
        if isinstance(item, dict) and item.get("reason"):
            out.add(str(item["reason"]).lower())
    return out


def _from_http(exc: ProviderHTTPError) -> ProviderFailure:
    err = _error_body(exc.payload)
    status = exc.status_code
    reasons = _reasons(err)
    message = str(err.get("message") or exc.text[:200] or f"HTTP {status}")
    reason = ",".join(sorted(reasons)) or str(err.get("status") or "")

    if status == 401:
        kind = FailureKind.UNAUTHENTICATED
    elif status == 429 or reasons & _QUOTA_REASONS or err.get("status") == "RESOURCE_EXHAUSTED":
        kind = FailureKind.RATE_LIMIT
    elif status == 403:
        scope_hit = reasons & _SCOPE_REASONS or "insufficient authentication scopes" in message.lower()
        kind = FailureKind.SCOPE if scope_hit else FailureKind.PERMISSION
    elif status == 404:
        kind = FailureKind.NOT_FOUND
    elif 500 <= status <= 599:
        kind = FailureKind.SERVER
    elif 400 <= status <= 499:
        kind = FailureKind.BAD_REQUEST
    else:
        kind = FailureKind.UNKNOWN
    return ProviderFailure(kind=kind, status=status, reason=reason, message=message)


def parse_provider_failure(exc: BaseException) -> ProviderFailure:
    if isinstance(exc, ProviderHTTPError):
        return _from_http(exc)
    if isinstance(exc, httpx.HTTPStatusError):
        return _from_http(ProviderHTTPError.from_response(exc.response))
    if isinstance(exc, httpx.TimeoutException):
        return ProviderFailure(kind=FailureKind.TIMEOUT, message="Google API request timed out")
    if isinstance(exc, httpx.HTTPError):
        return ProviderFailure(kind=FailureKind.TRANSPORT, message=f"network error: {exc.__class__.__name__}")
    return ProviderFailure(kind=FailureKind.UNKNOWN, message=exc.__class__.__name__)


def handle_provider_error(exc: BaseException) -> ConnectorError:
    """Total mapping: every exception becomes exactly one connector error."""
    if isinstance(exc, ConnectorError):
        return exc

    f = parse_provider_failure(exc)
    if f.kind is FailureKind.UNAUTHENTICATED:
        return ReauthorizationRequired("Google rejected the access token; user must reconnect")
    if f.kind is FailureKind.RATE_LIMIT:
        return RateLimited()
    if f.kind is FailureKind.SCOPE:
        return InsufficientScope(f.message)
    if f.kind is FailureKind.PERMISSION:
        return InsufficientScope(f"permission denied: {f.message}")
    if f.kind is FailureKind.NOT_FOUND:
        return InvalidProperty(f.message)
    return ProviderError(f"google api error: {f.message}", provider_status=f.status)
