from __future__ import annotations
import json
import logging
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.db.models import Connection
from app.services.crypto import TokenCipher

log = logging.getLogger(__name__)


def _scopes_json(scopes: Iterable[str] | None) -> str:
    return json.dumps(sorted(set(scopes or [])))


class ConnectionStore:
    """
    Credential record store: one Connection row per website_id.
    Every write is an upsert by primary key, so concurrent writers race on last-write-wins only.
    """

    def __init__(self, cipher: TokenCipher):
        self.cipher = cipher

    def get(self, db: Session, website_id: str, *, fresh: bool = False) -> Optional[Connection]:
        # fresh=True bypasses the identity map so a write from another session is visible
        return db.get(Connection, website_id, populate_existing=fresh)

    def upsert_grant(
        self,
        db: Session,
        *,
        website_id: str,
        access_token: str,
        refresh_token: str,
        expiry_date: int,
        scopes: Iterable[str],
        google_user_email: str = "",
    ) -> Connection:
        """
        Persist a completed grant. A new grant replaces the previous one wholesale,
        including property selections, which belonged to the old consent.
        """
        if not (access_token and refresh_token and expiry_date):
            raise ValueError("access_token, refresh_token and expiry_date are all required")

        values = dict(
            access_token_enc=self.cipher.encrypt(access_token),
            refresh_token_enc=self.cipher.encrypt(refresh_token),
            expiry_date=int(expiry_date),
            scopes_json=_scopes_json(scopes),
            google_user_email=google_user_email or "",
            sc_property=None,
            ga4_property_id=None,
        )

        row = self.get(db, website_id, fresh=True)
        if row is None:
            db.add(Connection(website_id=website_id, **values))
            try:
                db.commit()
            except IntegrityError:
                # another callback for the same website inserted first; overwrite it
                db.rollback()
                row = self.get(db, website_id, fresh=True)
                if row is None:
                    raise
                self._apply(row, values)
                db.commit()
        else:
            self._apply(row, values)
            db.commit()

        row = self.get(db, website_id)
        db.refresh(row)
        log.info("connection stored", extra={"website_id": website_id})
        return row

    def save_refreshed(
        self,
        db: Session,
        row: Connection,
        *,
        access_token: str,
        expiry_date: int,
        refresh_token: str | None = None,
        scopes: Iterable[str] | None = None,
    ) -> Connection:
        row.access_token_enc = self.cipher.encrypt(access_token)
        row.expiry_date = int(expiry_date)
        if refresh_token:
            # Google may rotate the refresh token; keep the old one otherwise
            row.refresh_token_enc = self.cipher.encrypt(refresh_token)
        if scopes:
            row.scopes_json = _scopes_json(scopes)
        db.commit()
        db.refresh(row)
        return row

    def set_sc_property(self, db: Session, row: Connection, site_url: str) -> Connection:
        row.sc_property = site_url
        db.commit()
        db.refresh(row)
        return row

    def set_ga4_property(self, db: Session, row: Connection, property_id: str) -> Connection:
        row.ga4_property_id = property_id
        db.commit()
        db.refresh(row)
        return row

    def access_token(self, row: Connection) -> Optional[str]:
        return self.cipher.decrypt(row.access_token_enc)

    def refresh_token(self, row: Connection) -> Optional[str]:
        return self.cipher.decrypt(row.refresh_token_enc)

    @staticmethod
    def scopes(row: Connection) -> List[str]:
        try:
            return json.loads(row.scopes_json) if row.scopes_json else []
        except ValueError:
            return []

    @staticmethod
    def _apply(row: Connection, values: dict) -> None:
        for k, v in values.items():
            setattr(row, k, v)
