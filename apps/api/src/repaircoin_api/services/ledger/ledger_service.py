"""Ledger writes that feed the customer balance."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.domain.ledger import (
    CustomerNotFoundError,
    InsufficientBalanceError,
    InvalidTransactionStateError,
    ShopNotFoundError,
)
from repaircoin_api.domain.redemption import as_amount, ensure_utc, normalize_address, utcnow
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.shop import Shop
from repaircoin_api.models.transaction import (
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)
from repaircoin_api.services.balance import BalanceCalculator


class LedgerService:
    """Append ledger rows and keep the customer aggregate columns in step.

    Every method flushes but never commits; callers own the transaction so the
    ledger append and the aggregate update land together.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session
        self._balances = BalanceCalculator(session)

    async def get_customer(self, address: str, *, lock: bool = False) -> Customer | None:
        stmt = select(Customer).where(Customer.address == normalize_address(address))
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_shop(self, shop_id: str) -> Shop | None:
        return await self._db.get(Shop, shop_id)

    async def register_customer(self, address: str, *, name: str | None = None) -> Customer:
        existing = await self.get_customer(address)
        if existing:
            return existing

        customer = Customer(address=address, name=name)
        self._db.add(customer)
        try:
            await self._db.flush()
            logger.info("Registered customer", address=customer.address)
        except IntegrityError:
            await self._db.rollback()
            logger.warning("Detected race when registering customer", address=normalize_address(address))
            existing = await self.get_customer(address)
            if existing is None:
                raise
            return existing
        return customer

    async def record_shop_reward(
        self,
        address: str,
        *,
        shop_id: str,
        amount: Decimal,
        reason: str | None = None,
        status: TransactionStatus = TransactionStatus.CONFIRMED,
        transaction_hash: str | None = None,
        metadata: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> LedgerTransaction:
        amount = as_amount(amount)
        if amount <= 0:
            raise ValueError("Reward amount must be positive")
        if status is TransactionStatus.FAILED:
            raise ValueError("Rewards cannot be recorded as failed")

        customer = await self.get_customer(address, lock=True)
        if customer is None:
            raise CustomerNotFoundError(normalize_address(address))
        if await self.get_shop(shop_id) is None:
            raise ShopNotFoundError(shop_id)

        entry = LedgerTransaction(
            type=TransactionType.MINT,
            origin=TransactionOrigin.SHOP_REWARD,
            status=status,
            amount=amount,
            customer_address=customer.address,
            shop_id=shop_id,
            reason=reason,
            transaction_hash=transaction_hash,
            metadata_json=metadata or {},
            timestamp=occurred_at or utcnow(),
        )
        self._db.add(entry)
        if status is TransactionStatus.CONFIRMED:
            self._apply_confirmed_effects(customer, entry)
        await self._db.flush()

        logger.info(
            "Recorded shop reward",
            transaction_id=str(entry.id),
            address=customer.address,
            shop_id=shop_id,
            amount=float(amount),
            status=status.value,
        )
        return entry

    async def confirm_transaction(self, transaction_id: UUID) -> LedgerTransaction:
        entry = await self._get_transaction_for_update(transaction_id)
        if entry.status is not TransactionStatus.PENDING:
            raise InvalidTransactionStateError(
                f"Transaction {transaction_id} is {entry.status.value}; only pending rows can be confirmed"
            )

        customer = await self.get_customer(entry.customer_address, lock=True)
        if customer is None:
            raise CustomerNotFoundError(entry.customer_address)

        if entry.origin is not TransactionOrigin.SHOP_REWARD:
            # Debits re-check the balance at settlement time.
            available = await self._balances.compute(customer.address)
            amount = as_amount(entry.amount)
            if amount > available:
                raise InsufficientBalanceError(requested=amount, available=available)

        entry.status = TransactionStatus.CONFIRMED
        self._apply_confirmed_effects(customer, entry)
        await self._db.flush()
        logger.info("Confirmed ledger transaction", transaction_id=str(entry.id), origin=entry.origin.value)
        return entry

    async def fail_transaction(self, transaction_id: UUID, *, reason: str | None = None) -> LedgerTransaction:
        entry = await self._get_transaction_for_update(transaction_id)
        if entry.status is not TransactionStatus.PENDING:
            raise InvalidTransactionStateError(
                f"Transaction {transaction_id} is {entry.status.value}; only pending rows can fail"
            )

        entry.status = TransactionStatus.FAILED
        if reason:
            metadata = dict(entry.metadata_json or {})
            metadata["failureReason"] = reason
            entry.metadata_json = metadata
        await self._db.flush()
        logger.warning("Failed ledger transaction", transaction_id=str(entry.id), reason=reason)
        return entry

    async def queue_for_minting(self, address: str, amount: Decimal) -> Customer:
        """Hold spendable balance until the on-chain mint completes."""

        amount = as_amount(amount)
        if amount <= 0:
            raise ValueError("Mint amount must be positive")

        customer = await self._lock_customer(address)
        available = await self._balances.compute(customer.address)
        if amount > available:
            raise InsufficientBalanceError(requested=amount, available=available)

        customer.pending_mint_balance = as_amount(customer.pending_mint_balance) + amount
        await self._db.flush()
        logger.info("Queued balance for minting", address=customer.address, amount=float(amount))
        return customer

    async def complete_mint(
        self,
        address: str,
        amount: Decimal,
        *,
        transaction_hash: str | None = None,
    ) -> LedgerTransaction:
        """Release a pending-mint hold and record the confirmed wallet mint."""

        amount = as_amount(amount)
        if amount <= 0:
            raise ValueError("Mint amount must be positive")

        customer = await self._lock_customer(address)
        pending = as_amount(customer.pending_mint_balance)
        if amount > pending:
            raise InsufficientBalanceError(requested=amount, available=pending)

        customer.pending_mint_balance = pending - amount
        entry = self._wallet_mint_entry(
            customer,
            amount,
            transaction_hash=transaction_hash,
            metadata={"mintType": "queued_mint"},
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info(
            "Completed queued mint",
            transaction_id=str(entry.id),
            address=customer.address,
            amount=float(amount),
        )
        return entry

    async def record_instant_mint(
        self,
        address: str,
        amount: Decimal,
        *,
        transaction_hash: str | None = None,
    ) -> LedgerTransaction:
        """Mint spendable balance straight to the customer's wallet."""

        amount = as_amount(amount)
        if amount <= 0:
            raise ValueError("Mint amount must be positive")

        customer = await self._lock_customer(address)
        available = await self._balances.compute(customer.address)
        if amount > available:
            raise InsufficientBalanceError(requested=amount, available=available)

        entry = self._wallet_mint_entry(
            customer,
            amount,
            transaction_hash=transaction_hash,
            metadata={"mintType": "instant_mint"},
        )
        self._db.add(entry)
        await self._db.flush()
        logger.info(
            "Recorded instant mint",
            transaction_id=str(entry.id),
            address=customer.address,
            amount=float(amount),
        )
        return entry

    async def record_redemption(
        self,
        customer: Customer,
        *,
        shop_id: str,
        amount: Decimal,
        session_id: str,
        occurred_at: datetime | None = None,
    ) -> LedgerTransaction:
        """Append the confirmed debit for a consumed session.

        ``customer`` must already be locked by the caller.
        """

        amount = as_amount(amount)
        entry = LedgerTransaction(
            type=TransactionType.REDEEM,
            origin=TransactionOrigin.REDEMPTION,
            status=TransactionStatus.CONFIRMED,
            amount=amount,
            customer_address=customer.address,
            shop_id=shop_id,
            reason=f"Redemption at {shop_id}",
            metadata_json={"sessionId": session_id},
            timestamp=occurred_at or utcnow(),
        )
        self._db.add(entry)
        self._apply_confirmed_effects(customer, entry)
        await self._db.flush()
        logger.info(
            "Recorded redemption debit",
            transaction_id=str(entry.id),
            address=customer.address,
            shop_id=shop_id,
            session_id=session_id,
            amount=float(amount),
        )
        return entry

    async def list_transactions(self, address: str, *, limit: int = 50) -> Sequence[LedgerTransaction]:
        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.customer_address == normalize_address(address))
            .order_by(LedgerTransaction.timestamp.desc(), LedgerTransaction.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    def _apply_confirmed_effects(self, customer: Customer, entry: LedgerTransaction) -> None:
        amount = as_amount(entry.amount)
        if entry.origin is TransactionOrigin.SHOP_REWARD:
            customer.lifetime_earnings = as_amount(customer.lifetime_earnings) + amount
            self._roll_earning_counters(customer, amount, ensure_utc(entry.timestamp) or utcnow())
        elif entry.origin is TransactionOrigin.REDEMPTION:
            customer.total_redemptions = as_amount(customer.total_redemptions) + amount
        # Wallet-direct mints are summed from the ledger, not cached.

    @staticmethod
    def _roll_earning_counters(customer: Customer, amount: Decimal, earned_at: datetime) -> None:
        last = ensure_utc(customer.last_earned_date)
        daily = as_amount(customer.daily_earnings)
        monthly = as_amount(customer.monthly_earnings)
        if last is None or last.date() != earned_at.date():
            daily = Decimal("0.00")
        if last is None or (last.year, last.month) != (earned_at.year, earned_at.month):
            monthly = Decimal("0.00")
        customer.daily_earnings = daily + amount
        customer.monthly_earnings = monthly + amount
        customer.last_earned_date = earned_at

    def _wallet_mint_entry(
        self,
        customer: Customer,
        amount: Decimal,
        *,
        transaction_hash: str | None,
        metadata: dict[str, Any],
    ) -> LedgerTransaction:
        return LedgerTransaction(
            type=TransactionType.MINT,
            origin=TransactionOrigin.WALLET_DIRECT_MINT,
            status=TransactionStatus.CONFIRMED,
            amount=amount,
            customer_address=customer.address,
            shop_id=None,
            reason="Mint to wallet",
            transaction_hash=transaction_hash,
            metadata_json=metadata,
            timestamp=utcnow(),
        )

    async def _lock_customer(self, address: str) -> Customer:
        customer = await self.get_customer(address, lock=True)
        if customer is None:
            raise CustomerNotFoundError(normalize_address(address))
        return customer

    async def _get_transaction_for_update(self, transaction_id: UUID) -> LedgerTransaction:
        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        entry = result.scalar_one_or_none()
        if entry is None:
            raise InvalidTransactionStateError(f"Transaction {transaction_id} not found")
        return entry


__all__ = ["LedgerService"]
