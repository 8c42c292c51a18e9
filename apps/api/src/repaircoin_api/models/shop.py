"""Partner shop model."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, String, func
from sqlalchemy.orm import validates

from repaircoin_api.db.base import Base


class Shop(Base):
    """Repair shop allowed to issue rewards and request redemptions."""

    __tablename__ = "shops"

    shop_id = Column(String(64), primary_key=True)
    name = Column(String, nullable=False)
    wallet_address = Column(String(64), nullable=True)
    active = Column(Boolean, nullable=False, default=True, server_default="true")
    verified = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @validates("wallet_address")
    def _normalize_wallet(self, key: str, value: str | None) -> str | None:  # noqa: ARG002
        return value.strip().lower() if value else value
