from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import BigInteger, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from .session import Base

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Connection(Base):
    """One Google grant per website; rows are only ever upserted by website_id."""
    __tablename__ = "connections"

    website_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Fernet-encrypted
    access_token_enc: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_enc: Mapped[str] = mapped_column(Text, nullable=False)

    expiry_date: Mapped[int] = mapped_column(BigInteger, nullable=False)  # ms since epoch
    scopes_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    sc_property: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ga4_property_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    google_user_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
