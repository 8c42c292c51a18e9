"""Append-only RCN ledger."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import validates

from repaircoin_api.db.base import Base


class TransactionType(str, Enum):
    """Direction of a ledger movement."""

    MINT = "mint"
    REDEEM = "redeem"


class TransactionStatus(str, Enum):
    """Settlement status of a ledger row."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionOrigin(str, Enum):
    """What produced a ledger row."""

    SHOP_REWARD = "shop_reward"
    WALLET_DIRECT_MINT = "wallet_direct_mint"
    REDEMPTION = "redemption"

    @classmethod
    def from_legacy(
        cls,
        transaction_type: TransactionType | str,
        metadata: Mapping[str, Any] | None,
    ) -> "TransactionOrigin":
        """Classify rows written before the origin column existed."""

        kind = TransactionType(transaction_type)
        if kind is TransactionType.REDEEM:
            return cls.REDEMPTION
        metadata = metadata or {}
        if metadata.get("mintType") == "instant_mint" or metadata.get("source") == "customer_dashboard":
            return cls.WALLET_DIRECT_MINT
        return cls.SHOP_REWARD


class LedgerTransaction(Base):
    """Single credit or debit against a customer's RCN balance.

    Rows are never deleted. The only permitted mutation is the status moving
    from ``pending`` to ``confirmed`` or ``failed``.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_customer_type_status", "customer_address", "type", "status"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    type = Column(
        SqlEnum(TransactionType, name="transaction_type", values_callable=lambda enum: [item.value for item in enum]),
        nullable=False,
    )
    status = Column(
        SqlEnum(TransactionStatus, name="transaction_status", values_callable=lambda enum: [item.value for item in enum]),
        nullable=False,
        default=TransactionStatus.CONFIRMED,
        server_default=TransactionStatus.CONFIRMED.value,
    )
    origin = Column(
        SqlEnum(TransactionOrigin, name="transaction_origin", values_callable=lambda enum: [item.value for item in enum]),
        nullable=False,
    )
    amount = Column(Numeric(14, 2), nullable=False)
    customer_address = Column(
        String(64),
        ForeignKey("customers.address", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    shop_id = Column(String(64), ForeignKey("shops.shop_id"), nullable=True, index=True)
    reason = Column(Text, nullable=True)
    transaction_hash = Column(String(128), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @validates("customer_address")
    def _normalize_address(self, key: str, value: str) -> str:  # noqa: ARG002
        return value.strip().lower() if value else value

    @validates("amount")
    def _validate_amount(self, key: str, value):  # noqa: ARG002
        if value is not None and value < 0:
            raise ValueError("Ledger amounts must be non-negative")
        return value
