from __future__ import annotations
from base64 import urlsafe_b64decode
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

class CryptoError(RuntimeError):
    pass

def build_fernet(key_str: str) -> Fernet:
    """
    Build a Fernet instance from ENCRYPTION_KEY.
    Key must be a urlsafe base64 string that decodes to 32 bytes.
    """
    key_str = (key_str or "").strip()
    if not key_str:
        raise CryptoError("ENCRYPTION_KEY is empty. Set it in .env")

    try:
        raw = urlsafe_b64decode(key_str.encode())
    except Exception as e:
        raise CryptoError("Invalid ENCRYPTION_KEY format (must be urlsafe base64 of 32 bytes)") from e
    if len(raw) != 32:
        raise CryptoError("ENCRYPTION_KEY must decode to exactly 32 bytes")

    return Fernet(key_str.encode())

class TokenCipher:
    """Encrypts OAuth token material at rest. Never log the output of either method."""

    def __init__(self, key_str: str):
        self._fernet = build_fernet(key_str)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str | None) -> Optional[str]:
        """Returns None if the token is empty or was encrypted under another key."""
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            return None
