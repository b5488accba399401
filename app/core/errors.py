from __future__ import annotations
from typing import Any, Dict, List, Optional


class ConnectorError(Exception):
    """
    Base for every failure surfaced to callers.
    Carries a stable code (independent of Google's wording), an HTTP status and a message.
    """
    code = "PROVIDER_ERROR"
    status_code = 502
    default_message = "request failed"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update({k: v for k, v in self.extra.items() if v is not None})
        return body


class NotConnected(ConnectorError):
    code = "NOT_CONNECTED"
    status_code = 404
    default_message = "no Google connection for this website"


class ReauthorizationRequired(ConnectorError):
    code = "REAUTHORIZATION_REQUIRED"
    status_code = 409
    default_message = "Google authorization revoked or expired; user must reconnect"


class InsufficientScope(ConnectorError):
    code = "INSUFFICIENT_SCOPE"
    status_code = 403
    default_message = "granted scopes do not cover this operation"


class RateLimited(ConnectorError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Google API quota exhausted; try again later"


class InvalidProperty(ConnectorError):
    code = "INVALID_PROPERTY"
    status_code = 400
    default_message = "Property not found or not accessible"

    def __init__(self, message: Optional[str] = None, available: Optional[List[str]] = None):
        super().__init__(message, availableProperties=available)


class NoProperty(ConnectorError):
    code = "NO_PROPERTY"
    status_code = 400
    default_message = "property not configured"


class Unauthorized(ConnectorError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Missing or invalid service credential"


class ServerMisconfigured(ConnectorError):
    code = "SERVER_MISCONFIGURED"
    status_code = 500
    default_message = "server is missing required configuration"


class InvalidState(ConnectorError):
    code = "INVALID_STATE"
    status_code = 400
    default_message = "Invalid state parameter"


class AuthorizationDenied(ConnectorError):
    code = "OAUTH_ERROR"
    status_code = 400
    default_message = "authorization was not granted"


class TokenExchangeFailed(ConnectorError):
    code = "TOKEN_EXCHANGE_FAILED"
    status_code = 400
    default_message = "authorization code exchange failed"


class IncompleteGrant(ConnectorError):
    code = "INCOMPLETE_GRANT"
    status_code = 502
    default_message = "Failed to obtain tokens"


class BadRequest(ConnectorError):
    code = "BAD_REQUEST"
    status_code = 400
    default_message = "bad request"


class ProviderError(ConnectorError):
    code = "PROVIDER_ERROR"
    status_code = 502
    default_message = "Google API error"

    def __init__(self, message: Optional[str] = None, provider_status: Optional[int] = None):
        super().__init__(message, providerStatus=provider_status)
