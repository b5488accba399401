from __future__ import annotations
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Header, Request
from jose import JWTError, jwt

from app.core.errors import ServerMisconfigured, Unauthorized
from app.core.logging import key_fingerprint

log = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class ServiceIdentity:
    """Marks a request as coming from a trusted internal service. Not scoped to any website."""
    method: str  # "api_key" | "jwt"
    claims: Dict[str, Any] = field(default_factory=dict)


class ServiceIdentityVerifier:
    def __init__(self, secret: str):
        self._secret = secret or ""

    def _require_secret(self) -> str:
        # fail closed: no configured secret means nobody gets in
        if not self._secret:
            raise ServerMisconfigured("service shared secret not configured")
        return self._secret

    def _matches_secret(self, presented: str) -> bool:
        return hmac.compare_digest(presented.encode("utf-8"), self._secret.encode("utf-8"))

    def verify_api_key(self, api_key: str) -> ServiceIdentity:
        self._require_secret()
        if not api_key or not self._matches_secret(api_key):
            log.warning("rejected api key", extra={"key_fp": key_fingerprint(api_key or "")})
            raise Unauthorized("missing or invalid X-API-Key")
        return ServiceIdentity(method="api_key")

    def verify_bearer(self, token: str) -> ServiceIdentity:
        secret = self._require_secret()
        if not token:
            raise Unauthorized("Missing or invalid Authorization header")
        try:
            claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
            return ServiceIdentity(method="jwt", claims=claims)
        except JWTError:
            pass
        # raw shared secret presented as a bearer value
        if self._matches_secret(token):
            return ServiceIdentity(method="api_key")
        raise Unauthorized("Invalid or expired token")

    def verify(self, *, api_key: Optional[str], authorization: Optional[str]) -> ServiceIdentity:
        self._require_secret()
        if authorization:
            scheme, _, value = authorization.partition(" ")
            if scheme.lower() != "bearer" or not value.strip():
                raise Unauthorized("Missing or invalid Authorization header")
            return self.verify_bearer(value.strip())
        if api_key:
            return self.verify_api_key(api_key)
        raise Unauthorized("Missing or invalid Authorization header")

    def sign(self, claims: Dict[str, Any]) -> str:
        """Mint a token the verifier accepts; used by callers' tooling and tests."""
        return jwt.encode(claims, self._require_secret(), algorithm=JWT_ALGORITHM)


async def require_service_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> ServiceIdentity:
    verifier: ServiceIdentityVerifier = request.app.state.verifier
    identity = verifier.verify(api_key=x_api_key, authorization=authorization)
    request.state.service_identity = identity
    return identity
