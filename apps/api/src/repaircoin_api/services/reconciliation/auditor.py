"""Offline ledger diagnostics: stale approvals, duplicate mints, aggregate drift."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from loguru import logger
from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.domain.redemption import as_amount, ensure_utc, normalize_address
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.redemption_session import RedemptionSession, RedemptionSessionStatus
from repaircoin_api.models.transaction import (
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)
from repaircoin_api.observability.redemption import get_redemption_store
from repaircoin_api.services.balance import BalanceBreakdown, BalanceCalculator
from repaircoin_api.services.redemption import RedemptionSessionValidator


@dataclass
class InvalidSessionFinding:
    session_id: str
    customer_address: str
    shop_id: str
    max_amount: Decimal
    available_balance: Decimal
    deficit: Decimal
    fixed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "customer_address": self.customer_address,
            "shop_id": self.shop_id,
            "max_amount": float(self.max_amount),
            "available_balance": float(self.available_balance),
            "deficit": float(self.deficit),
            "fixed": self.fixed,
        }


@dataclass
class DuplicateMintGroup:
    customer_address: str
    amount: Decimal
    shop_id: str | None
    timestamp: datetime | None
    count: int
    transaction_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "customer_address": self.customer_address,
            "amount": float(self.amount),
            "shop_id": self.shop_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "count": self.count,
            "transaction_ids": list(self.transaction_ids),
        }


@dataclass
class AggregateDrift:
    address: str
    cached_lifetime_earnings: Decimal
    ledger_lifetime_earnings: Decimal
    cached_total_redemptions: Decimal
    ledger_total_redemptions: Decimal
    fixed: bool = False

    @property
    def lifetime_delta(self) -> Decimal:
        return self.cached_lifetime_earnings - self.ledger_lifetime_earnings

    @property
    def redemption_delta(self) -> Decimal:
        return self.cached_total_redemptions - self.ledger_total_redemptions

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "cached_lifetime_earnings": float(self.cached_lifetime_earnings),
            "ledger_lifetime_earnings": float(self.ledger_lifetime_earnings),
            "cached_total_redemptions": float(self.cached_total_redemptions),
            "ledger_total_redemptions": float(self.ledger_total_redemptions),
            "lifetime_delta": float(self.lifetime_delta),
            "redemption_delta": float(self.redemption_delta),
            "fixed": self.fixed,
        }


class ReconciliationAuditor:
    """Flag ledger anomalies for human review.

    Runs outside the request path. A database failure is logged and reported
    as an empty result so the scan can simply be re-run.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session
        self._balances = BalanceCalculator(session)
        self._validator = RedemptionSessionValidator(session, balance_calculator=self._balances)
        self._store = get_redemption_store()

    async def find_invalid_approved_sessions(self, *, fix: bool = False) -> List[InvalidSessionFinding]:
        try:
            findings = await self._scan_approved_sessions(fix=fix)
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Invalid approved session scan failed", error=str(exc))
            return []

        self._store.record_audit("invalid_approved_sessions", len(findings))
        logger.info(
            "Invalid approved session scan completed",
            flagged=len(findings),
            fixed=sum(1 for finding in findings if finding.fixed),
        )
        return findings

    async def find_duplicate_mints(self, customer_address: str | None = None) -> List[DuplicateMintGroup]:
        try:
            groups = await self._scan_duplicate_mints(customer_address)
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Duplicate mint scan failed", error=str(exc))
            return []

        self._store.record_audit("duplicate_mints", len(groups))
        logger.info(
            "Duplicate mint scan completed",
            customer_address=normalize_address(customer_address) if customer_address else None,
            groups=len(groups),
        )
        return groups

    async def reconcile_customer_aggregates(
        self,
        customer_address: str | None = None,
        *,
        fix: bool = False,
    ) -> List[AggregateDrift]:
        """Compare cached customer totals against a fresh ledger aggregation."""

        try:
            drifts = await self._scan_aggregates(customer_address, fix=fix)
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.exception("Customer aggregate reconciliation failed", error=str(exc))
            return []

        self._store.record_audit("customer_aggregates", len(drifts))
        logger.info(
            "Customer aggregate reconciliation completed",
            drifted=len(drifts),
            fixed=fix,
        )
        return drifts

    async def _scan_approved_sessions(self, *, fix: bool) -> List[InvalidSessionFinding]:
        stmt = (
            select(RedemptionSession)
            .where(
                RedemptionSession.status == RedemptionSessionStatus.APPROVED,
                RedemptionSession.used_at.is_(None),
            )
            .order_by(RedemptionSession.created_at.asc())
        )
        result = await self._db.execute(stmt)
        sessions = result.scalars().all()

        balances: Dict[str, BalanceBreakdown | None] = {}
        findings: List[InvalidSessionFinding] = []
        for redemption in sessions:
            address = redemption.customer_address
            if address not in balances:
                balances[address] = await self._balances.lookup(address)
            breakdown = balances[address]
            available = breakdown.available_balance if breakdown else Decimal("0.00")
            max_amount = as_amount(redemption.max_amount)
            if max_amount <= available:
                continue

            finding = InvalidSessionFinding(
                session_id=redemption.session_id,
                customer_address=address,
                shop_id=redemption.shop_id,
                max_amount=max_amount,
                available_balance=available,
                deficit=max_amount - available,
            )
            if fix:
                finding.fixed = await self._validator.expire(
                    redemption,
                    reason="insufficient_balance",
                    expired_by="reconciliation_auditor",
                    deficit=finding.deficit,
                )
                if not finding.fixed:
                    # Consumed or otherwise closed since the scan read it.
                    continue
            findings.append(finding)
        return findings

    async def _scan_duplicate_mints(self, customer_address: str | None) -> List[DuplicateMintGroup]:
        mint_filter = and_(
            LedgerTransaction.type == TransactionType.MINT,
            LedgerTransaction.status == TransactionStatus.CONFIRMED,
        )
        if customer_address:
            mint_filter = and_(
                mint_filter,
                LedgerTransaction.customer_address == normalize_address(customer_address),
            )

        group_stmt = (
            select(
                LedgerTransaction.customer_address,
                LedgerTransaction.amount,
                LedgerTransaction.shop_id,
                LedgerTransaction.timestamp,
                func.count(LedgerTransaction.id).label("count"),
            )
            .where(mint_filter)
            .group_by(
                LedgerTransaction.customer_address,
                LedgerTransaction.amount,
                LedgerTransaction.shop_id,
                LedgerTransaction.timestamp,
            )
            .having(func.count(LedgerTransaction.id) > 1)
            .order_by(LedgerTransaction.timestamp.asc())
        )
        result = await self._db.execute(group_stmt)
        rows = result.all()

        groups: List[DuplicateMintGroup] = []
        for row in rows:
            shop_clause = (
                LedgerTransaction.shop_id.is_(None)
                if row.shop_id is None
                else LedgerTransaction.shop_id == row.shop_id
            )
            ids_stmt = (
                select(LedgerTransaction.id)
                .where(
                    mint_filter,
                    LedgerTransaction.customer_address == row.customer_address,
                    LedgerTransaction.amount == row.amount,
                    LedgerTransaction.timestamp == row.timestamp,
                    shop_clause,
                )
                .order_by(LedgerTransaction.created_at.asc())
            )
            ids = (await self._db.execute(ids_stmt)).scalars().all()
            groups.append(
                DuplicateMintGroup(
                    customer_address=row.customer_address,
                    amount=as_amount(row.amount),
                    shop_id=row.shop_id,
                    timestamp=ensure_utc(row.timestamp),
                    count=int(row.count),
                    transaction_ids=[str(identifier) for identifier in ids],
                )
            )
        return groups

    async def _scan_aggregates(self, customer_address: str | None, *, fix: bool) -> List[AggregateDrift]:
        confirmed = LedgerTransaction.status == TransactionStatus.CONFIRMED
        earned = func.coalesce(
            func.sum(
                case(
                    (
                        and_(confirmed, LedgerTransaction.origin == TransactionOrigin.SHOP_REWARD),
                        LedgerTransaction.amount,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        redeemed = func.coalesce(
            func.sum(
                case(
                    (
                        and_(confirmed, LedgerTransaction.origin == TransactionOrigin.REDEMPTION),
                        LedgerTransaction.amount,
                    ),
                    else_=0,
                )
            ),
            0,
        )
        totals_stmt = select(
            LedgerTransaction.customer_address,
            earned.label("earned"),
            redeemed.label("redeemed"),
        ).group_by(LedgerTransaction.customer_address)

        customers_stmt = select(Customer).order_by(Customer.address.asc())
        if customer_address:
            address = normalize_address(customer_address)
            totals_stmt = totals_stmt.where(LedgerTransaction.customer_address == address)
            customers_stmt = customers_stmt.where(Customer.address == address)
        if fix:
            customers_stmt = customers_stmt.with_for_update()

        totals_result = await self._db.execute(totals_stmt)
        totals = {
            row.customer_address: (as_amount(row.earned), as_amount(row.redeemed))
            for row in totals_result.all()
        }
        customers = (await self._db.execute(customers_stmt)).scalars().all()

        drifts: List[AggregateDrift] = []
        for customer in customers:
            ledger_earned, ledger_redeemed = totals.get(customer.address, (Decimal("0.00"), Decimal("0.00")))
            cached_earned = as_amount(customer.lifetime_earnings)
            cached_redeemed = as_amount(customer.total_redemptions)
            if cached_earned == ledger_earned and cached_redeemed == ledger_redeemed:
                continue

            drift = AggregateDrift(
                address=customer.address,
                cached_lifetime_earnings=cached_earned,
                ledger_lifetime_earnings=ledger_earned,
                cached_total_redemptions=cached_redeemed,
                ledger_total_redemptions=ledger_redeemed,
            )
            if fix:
                customer.lifetime_earnings = ledger_earned
                customer.total_redemptions = ledger_redeemed
                drift.fixed = True
            drifts.append(drift)

        if fix and drifts:
            await self._db.flush()
        return drifts


__all__ = [
    "AggregateDrift",
    "DuplicateMintGroup",
    "InvalidSessionFinding",
    "ReconciliationAuditor",
]
