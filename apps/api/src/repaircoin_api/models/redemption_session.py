"""Shop-initiated, customer-approved redemption sessions."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import validates

from repaircoin_api.db.base import Base


class RedemptionSessionStatus(str, Enum):
    """Lifecycle states for a redemption session."""

    PENDING = "pending"
    APPROVED = "approved"
    USED = "used"
    EXPIRED = "expired"
    REJECTED = "rejected"


TERMINAL_SESSION_STATUSES = frozenset(
    {
        RedemptionSessionStatus.USED,
        RedemptionSessionStatus.EXPIRED,
        RedemptionSessionStatus.REJECTED,
    }
)


def _new_session_id() -> str:
    return str(uuid4())


class RedemptionSession(Base):
    """Request by a shop to debit up to ``max_amount`` RCN from a customer."""

    __tablename__ = "redemption_sessions"
    __table_args__ = (
        Index("ix_redemption_sessions_customer_shop_status", "customer_address", "shop_id", "status"),
    )

    session_id = Column(String(64), primary_key=True, default=_new_session_id)
    customer_address = Column(
        String(64),
        ForeignKey("customers.address", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    shop_id = Column(String(64), ForeignKey("shops.shop_id"), nullable=False, index=True)
    max_amount = Column(Numeric(14, 2), nullable=False)
    status = Column(
        SqlEnum(
            RedemptionSessionStatus,
            name="redemption_session_status",
            values_callable=lambda enum: [item.value for item in enum],
        ),
        nullable=False,
        default=RedemptionSessionStatus.PENDING,
        server_default=RedemptionSessionStatus.PENDING.value,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    signature = Column(String(256), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    @validates("customer_address")
    def _normalize_address(self, key: str, value: str) -> str:  # noqa: ARG002
        return value.strip().lower() if value else value
