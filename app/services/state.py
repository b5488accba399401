from __future__ import annotations
import hmac, json, os, time, hashlib
from base64 import urlsafe_b64encode, urlsafe_b64decode
from typing import Any, Dict

from app.core.errors import InvalidState, ServerMisconfigured

STATE_PURPOSE = "google_oauth"

def _b64e(b: bytes) -> str:
    return urlsafe_b64encode(b).rstrip(b"=").decode("ascii")

def _b64d(s: str) -> bytes:
    pad = '=' * (-len(s) % 4)
    return urlsafe_b64decode((s + pad).encode("ascii"))

def _sign(message: bytes, secret: str) -> str:
    if not secret:
        raise ServerMisconfigured("SERVICE_SHARED_SECRET not configured")
    sig = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return _b64e(sig)

def create_state(website_id: str, *, secret: str, ttl_seconds: int = 300) -> str:
    """
    Signed, self-contained correlation token for one consent round-trip.
    Nothing is stored server-side; the signature and `exp` are the whole proof.
    """
    if not website_id:
        raise ValueError("website_id required")

    ttl = max(int(ttl_seconds), 30)

    header = {"alg": "HS256", "typ": "STATE"}
    now = int(time.time())
    payload: Dict[str, Any] = {
        "website_id": website_id,
        "p": STATE_PURPOSE,
        "iat": now,
        "exp": now + ttl,
        "n": _b64e(os.urandom(8)),
    }

    h = _b64e(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    p = _b64e(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    s = _sign(f"{h}.{p}".encode("utf-8"), secret)
    return f"{h}.{p}.{s}"

def verify_state(token: str, *, secret: str, leeway_seconds: int = 5) -> Dict[str, Any]:
    try:
        h, p, s = token.split(".")
    except (AttributeError, ValueError) as e:
        raise InvalidState("Malformed state") from e

    expected = _sign(f"{h}.{p}".encode("utf-8"), secret)
    if not hmac.compare_digest(s.encode("utf-8"), expected.encode("utf-8")):
        raise InvalidState("Invalid state signature")

    try:
        payload = json.loads(_b64d(p).decode("utf-8"))
    except ValueError as e:
        raise InvalidState("Invalid state payload") from e
    if not isinstance(payload, dict) or payload.get("p") != STATE_PURPOSE:
        raise InvalidState("Unexpected state purpose")

    try:
        exp = int(payload["exp"])
        iat = int(payload["iat"])
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidState("Invalid exp/iat in state") from e

    now = int(time.time())
    if iat - now > leeway_seconds:
        raise InvalidState("State issued in the future")
    if now - exp > leeway_seconds:
        raise InvalidState("State expired")

    if not payload.get("website_id"):
        raise InvalidState("Missing website_id in state")

    return payload
