from __future__ import annotations
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import IncompleteGrant, NotConnected, ReauthorizationRequired
from app.db.models import Connection
from app.services.connections import ConnectionStore
from app.services.google_oauth import REQUIRED_SCOPES, GoogleOAuthClient
from app.services.state import create_state, verify_state

log = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class GrantManager:
    """
    Per-website OAuth grant lifecycle: NoGrant -> PendingAuthorization -> Granted (-> refreshed).

    PendingAuthorization lives only inside the signed state token; nothing is persisted
    until the code exchange yields a complete grant.
    """

    def __init__(self, settings: Settings, store: ConnectionStore, oauth: GoogleOAuthClient):
        self.settings = settings
        self.store = store
        self.oauth = oauth
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def begin_authorization(self, website_id: str) -> str:
        state = create_state(
            website_id,
            secret=self.settings.SERVICE_SHARED_SECRET,
            ttl_seconds=self.settings.STATE_TTL_SECONDS,
        )
        return self.oauth.build_consent_url(state)

    async def complete_authorization(self, db: Session, *, code: str, state: str) -> Connection:
        payload = verify_state(state, secret=self.settings.SERVICE_SHARED_SECRET)
        website_id = payload["website_id"]

        tokens = await self.oauth.exchange_code(code)
        missing = [k for k in ("access_token", "refresh_token", "expiry_date") if not tokens.get(k)]
        if missing:
            log.warning("incomplete grant", extra={"website_id": website_id, "missing": missing})
            raise IncompleteGrant(f"Failed to obtain tokens (missing {', '.join(missing)})")

        email = ""
        try:
            email = await self.oauth.fetch_user_email(tokens["access_token"])
        except (httpx.HTTPError, ValueError) as e:
            # informational only; keep the grant
            log.warning("userinfo lookup failed", extra={"website_id": website_id, "err": e.__class__.__name__})

        scopes = tokens["scope"].split() if tokens.get("scope") else list(REQUIRED_SCOPES)
        return self.store.upsert_grant(
            db,
            website_id=website_id,
            access_token=tokens["access_token"],
            refresh_token=tokens["refresh_token"],
            expiry_date=tokens["expiry_date"],
            scopes=scopes,
            google_user_email=email,
        )

    def _is_fresh(self, row: Connection) -> bool:
        buffer_ms = self.settings.TOKEN_REFRESH_BUFFER_SECONDS * 1000
        return row.expiry_date - _now_ms() > buffer_ms

    @asynccontextmanager
    async def _tenant_lock(self, website_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(website_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[website_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[website_id]
            if users <= 1:
                del self._locks[website_id]
            else:
                self._locks[website_id] = (lock, users - 1)

    def load(self, db: Session, website_id: str) -> Connection:
        row = self.store.get(db, website_id)
        if row is None:
            raise NotConnected()
        return row

    async def ensure_fresh_access_token(self, db: Session, website_id: str) -> str:
        """
        Return an access token valid for at least TOKEN_REFRESH_BUFFER_SECONDS,
        refreshing (once per website at a time) when it is closer to expiry than that.
        """
        row = self.load(db, website_id)
        token = self.store.access_token(row)
        if token and self._is_fresh(row):
            return token

        async with self._tenant_lock(website_id):
            # a concurrent caller may have refreshed while we waited
            row = self.store.get(db, website_id, fresh=True)
            if row is None:
                raise NotConnected()
            token = self.store.access_token(row)
            if token and self._is_fresh(row):
                return token

            refresh_token = self.store.refresh_token(row)
            if not refresh_token:
                raise ReauthorizationRequired("stored refresh token unreadable; user must reconnect")

            new = await self.oauth.refresh(refresh_token)
            scopes: Optional[list] = new["scope"].split() if new.get("scope") else None
            self.store.save_refreshed(
                db,
                row,
                access_token=new["access_token"],
                expiry_date=new["expiry_date"],
                refresh_token=new.get("refresh_token"),
                scopes=scopes,
            )
            log.info("access token refreshed", extra={"website_id": website_id})
            return new["access_token"]
