"""Customer aggregate model backing the RCN balance."""

from __future__ import annotations

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Numeric, String, func
from sqlalchemy.orm import validates

from repaircoin_api.db.base import Base


class Customer(Base):
    """Customer wallet with cached ledger aggregates.

    ``lifetime_earnings`` only ever grows; ``total_redemptions`` and
    ``pending_mint_balance`` are debits held against it. The columns are a
    cache of the ``transactions`` ledger and are updated in the same database
    transaction as the ledger row that changes them.
    """

    __tablename__ = "customers"
    __table_args__ = (
        CheckConstraint("address = lower(address)", name="ck_customers_address_lowercase"),
    )

    address = Column(String(64), primary_key=True)
    name = Column(String, nullable=True)
    lifetime_earnings = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    total_redemptions = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    pending_mint_balance = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    daily_earnings = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    monthly_earnings = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    last_earned_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @validates("address")
    def _normalize_address(self, key: str, value: str) -> str:  # noqa: ARG002
        return value.strip().lower() if value else value
