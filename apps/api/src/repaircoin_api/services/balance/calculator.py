"""Single source of truth for a customer's spendable RCN balance."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.domain.ledger import CustomerNotFoundError
from repaircoin_api.domain.redemption import as_amount, normalize_address
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.transaction import (
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)


def available_balance_formula(
    lifetime_earnings: Any,
    total_redemptions: Any,
    pending_mint_balance: Any,
    minted_to_wallet: Any,
) -> Decimal:
    """Spendable balance, clamped at zero. Missing inputs count as zero."""

    available = (
        as_amount(lifetime_earnings)
        - as_amount(total_redemptions)
        - as_amount(pending_mint_balance)
        - as_amount(minted_to_wallet)
    )
    return max(Decimal("0.00"), available)


@dataclass(frozen=True)
class BalanceBreakdown:
    address: str
    lifetime_earnings: Decimal
    total_redemptions: Decimal
    pending_mint_balance: Decimal
    minted_to_wallet: Decimal
    available_balance: Decimal

    def as_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "lifetime_earnings": float(self.lifetime_earnings),
            "total_redemptions": float(self.total_redemptions),
            "pending_mint_balance": float(self.pending_mint_balance),
            "minted_to_wallet": float(self.minted_to_wallet),
            "available_balance": float(self.available_balance),
        }


def minted_to_wallet_subquery():
    """Correlated sum of confirmed wallet-direct mints for ``Customer``."""

    return (
        select(func.coalesce(func.sum(LedgerTransaction.amount), 0))
        .where(
            LedgerTransaction.customer_address == Customer.address,
            LedgerTransaction.type == TransactionType.MINT,
            LedgerTransaction.status == TransactionStatus.CONFIRMED,
            LedgerTransaction.origin == TransactionOrigin.WALLET_DIRECT_MINT,
        )
        .correlate(Customer)
        .scalar_subquery()
    )


class BalanceCalculator:
    """Read-only balance lookups shared by the API and redemption validation."""

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def lookup(self, address: str) -> BalanceBreakdown | None:
        normalized = normalize_address(address)
        stmt = select(
            Customer.address,
            Customer.lifetime_earnings,
            Customer.total_redemptions,
            Customer.pending_mint_balance,
            minted_to_wallet_subquery().label("minted_to_wallet"),
        ).where(Customer.address == normalized)
        result = await self._db.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return self.breakdown_from_row(row)

    async def compute(self, address: str) -> Decimal:
        breakdown = await self.lookup(address)
        if breakdown is None:
            raise CustomerNotFoundError(normalize_address(address))
        return breakdown.available_balance

    @staticmethod
    def breakdown_from_row(row: Any) -> BalanceBreakdown:
        mapping = row._mapping
        lifetime = as_amount(mapping["lifetime_earnings"])
        redemptions = as_amount(mapping["total_redemptions"])
        pending = as_amount(mapping["pending_mint_balance"])
        minted = as_amount(mapping["minted_to_wallet"])
        return BalanceBreakdown(
            address=mapping["address"],
            lifetime_earnings=lifetime,
            total_redemptions=redemptions,
            pending_mint_balance=pending,
            minted_to_wallet=minted,
            available_balance=available_balance_formula(lifetime, redemptions, pending, minted),
        )


__all__ = [
    "BalanceBreakdown",
    "BalanceCalculator",
    "available_balance_formula",
    "minted_to_wallet_subquery",
]
