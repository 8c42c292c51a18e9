"""Redemption session workflow: request, approve, reject, cancel, consume."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Sequence

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.core.settings import settings
from repaircoin_api.domain.redemption import (
    ConsumptionOutcome,
    RedemptionFailure,
    RedemptionFailureKind,
    SessionOutcome,
    as_amount,
    ensure_utc,
    normalize_address,
    utcnow,
)
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.redemption_session import RedemptionSession, RedemptionSessionStatus
from repaircoin_api.models.shop import Shop
from repaircoin_api.observability.redemption import get_redemption_store
from repaircoin_api.services.balance import BalanceCalculator
from repaircoin_api.services.ledger import LedgerService

from .validator import RedemptionSessionValidator, parse_requested_amount

# 65-byte ECDSA signature, hex encoded, optional 0x prefix.
SIGNATURE_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")

ACTIVE_SESSION_STATUSES = (RedemptionSessionStatus.PENDING, RedemptionSessionStatus.APPROVED)


def _failure(kind: RedemptionFailureKind, message: str, **extra: Any) -> RedemptionFailure:
    return RedemptionFailure(kind=kind, message=message, **extra)


class RedemptionSessionService:
    """Drive redemption sessions through their lifecycle.

    Methods flush but do not commit. ``consume_session`` must run inside a
    single database transaction that the caller commits afterwards.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        pending_ttl: timedelta | None = None,
        approved_ttl: timedelta | None = None,
    ) -> None:
        self._db = session
        self._balances = BalanceCalculator(session)
        self._validator = RedemptionSessionValidator(session, balance_calculator=self._balances)
        self._ledger = LedgerService(session)
        self._store = get_redemption_store()
        self.pending_ttl = pending_ttl or timedelta(seconds=settings.redemption_session_pending_ttl_seconds)
        self.approved_ttl = approved_ttl or timedelta(seconds=settings.redemption_session_approved_ttl_seconds)

    @property
    def validator(self) -> RedemptionSessionValidator:
        return self._validator

    async def create_session(
        self,
        customer_address: str,
        shop_id: str,
        amount: Any,
        *,
        now: datetime | None = None,
    ) -> SessionOutcome:
        current_time = now or utcnow()
        address = normalize_address(customer_address)

        shop = await self._db.get(Shop, shop_id)
        if shop is None:
            return self._refuse(None, _failure(RedemptionFailureKind.NOT_FOUND, f"Shop {shop_id} not found"))
        if not shop.active or not shop.verified:
            return self._refuse(
                None,
                _failure(RedemptionFailureKind.FORBIDDEN, "Shop must be active and verified to request redemptions"),
            )

        decision = await self._validator.validate_for_approval(address, amount)
        if decision.failure is not None:
            return SessionOutcome(session=None, failure=decision.failure, available_balance=decision.available_balance)

        pending_stmt = select(RedemptionSession).where(
            RedemptionSession.customer_address == address,
            RedemptionSession.shop_id == shop_id,
            RedemptionSession.status == RedemptionSessionStatus.PENDING,
            RedemptionSession.expires_at > current_time,
        )
        existing = (await self._db.execute(pending_stmt.limit(1))).scalar_one_or_none()
        if existing is not None:
            return self._refuse(
                existing,
                _failure(
                    RedemptionFailureKind.INVALID_STATE,
                    "A pending redemption request already exists for this customer",
                    status=existing.status.value,
                ),
            )

        window_start = current_time - timedelta(minutes=settings.redemption_session_rate_window_minutes)
        count_stmt = select(func.count(RedemptionSession.session_id)).where(
            RedemptionSession.customer_address == address,
            RedemptionSession.shop_id == shop_id,
            RedemptionSession.created_at >= window_start,
        )
        recent = (await self._db.execute(count_stmt)).scalar_one()
        if recent >= settings.redemption_session_rate_limit:
            return self._refuse(
                None,
                _failure(
                    RedemptionFailureKind.RATE_LIMITED,
                    "Too many redemption requests for this customer; try again later",
                ),
            )

        redemption = RedemptionSession(
            customer_address=address,
            shop_id=shop_id,
            max_amount=decision.requested_amount,
            status=RedemptionSessionStatus.PENDING,
            created_at=current_time,
            expires_at=current_time + self.pending_ttl,
            metadata_json={},
        )
        self._db.add(redemption)
        await self._db.flush()

        self._store.record_transition(RedemptionSessionStatus.PENDING.value)
        logger.info(
            "Created redemption session",
            session_id=redemption.session_id,
            customer_address=address,
            shop_id=shop_id,
            max_amount=float(decision.requested_amount),
        )
        return SessionOutcome(session=redemption, available_balance=decision.available_balance)

    async def approve_session(
        self,
        session_id: str,
        customer_address: str,
        signature: str,
        *,
        transaction_hash: str | None = None,
        now: datetime | None = None,
    ) -> SessionOutcome:
        current_time = now or utcnow()
        redemption = await self._validator.load_session(session_id, lock=True)
        failure = self._check_pending_owner(redemption, session_id, customer_address)
        if failure is not None:
            return self._refuse(redemption, failure)

        if self._lapsed(redemption, current_time):
            if not await self._validator.expire(redemption, reason="ttl_elapsed", expired_by="approval"):
                return self._refuse(redemption, self._validator.state_failure(redemption))
            return self._refuse(
                redemption,
                _failure(
                    RedemptionFailureKind.INVALID_STATE,
                    "Session has expired",
                    status=RedemptionSessionStatus.EXPIRED.value,
                ),
            )

        if not signature or not SIGNATURE_PATTERN.match(signature):
            return self._refuse(
                redemption,
                _failure(RedemptionFailureKind.INVALID_REQUEST, "Invalid signature format"),
            )

        decision = await self._validator.validate_for_approval(redemption.customer_address, redemption.max_amount)
        if decision.failure is not None:
            if decision.failure.kind is RedemptionFailureKind.INSUFFICIENT_BALANCE:
                expired = await self._validator.expire(
                    redemption,
                    reason="insufficient_balance",
                    expired_by="approval",
                    deficit=decision.deficit,
                )
                if not expired:
                    return self._refuse(redemption, self._validator.state_failure(redemption))
            return self._refuse(redemption, decision.failure)

        metadata = dict(redemption.metadata_json or {})
        if transaction_hash:
            metadata["transactionHash"] = transaction_hash
        redemption.status = RedemptionSessionStatus.APPROVED
        redemption.approved_at = current_time
        redemption.expires_at = current_time + self.approved_ttl
        redemption.signature = signature
        redemption.metadata_json = metadata
        await self._db.flush()

        self._store.record_transition(RedemptionSessionStatus.APPROVED.value)
        logger.info(
            "Approved redemption session",
            session_id=redemption.session_id,
            customer_address=redemption.customer_address,
            shop_id=redemption.shop_id,
            max_amount=float(as_amount(redemption.max_amount)),
            available_balance=float(decision.available_balance or 0),
        )
        return SessionOutcome(session=redemption, available_balance=decision.available_balance)

    async def reject_session(self, session_id: str, customer_address: str) -> SessionOutcome:
        redemption = await self._validator.load_session(session_id, lock=True)
        failure = self._check_pending_owner(redemption, session_id, customer_address)
        if failure is not None:
            return self._refuse(redemption, failure)

        metadata = dict(redemption.metadata_json or {})
        metadata["rejectedByCustomer"] = True
        metadata["rejectedAt"] = utcnow().isoformat()
        redemption.status = RedemptionSessionStatus.REJECTED
        redemption.metadata_json = metadata
        await self._db.flush()

        self._store.record_transition(RedemptionSessionStatus.REJECTED.value)
        logger.info("Customer rejected redemption session", session_id=redemption.session_id)
        return SessionOutcome(session=redemption)

    async def cancel_session(self, session_id: str, shop_id: str) -> SessionOutcome:
        redemption = await self._validator.load_session(session_id, lock=True)
        if redemption is None:
            return self._refuse(
                None,
                _failure(RedemptionFailureKind.NOT_FOUND, f"Redemption session {session_id} not found"),
            )
        if redemption.shop_id != shop_id:
            return self._refuse(
                redemption,
                _failure(RedemptionFailureKind.FORBIDDEN, "Session belongs to a different shop"),
            )
        if redemption.status is not RedemptionSessionStatus.PENDING:
            return self._refuse(
                redemption,
                _failure(
                    RedemptionFailureKind.INVALID_STATE,
                    f"Session is {redemption.status.value}",
                    status=redemption.status.value,
                ),
            )

        metadata = dict(redemption.metadata_json or {})
        metadata["cancelledByShop"] = True
        metadata["cancelledAt"] = utcnow().isoformat()
        redemption.status = RedemptionSessionStatus.REJECTED
        redemption.metadata_json = metadata
        await self._db.flush()

        self._store.record_transition(RedemptionSessionStatus.REJECTED.value)
        logger.info("Shop cancelled redemption session", session_id=redemption.session_id, shop_id=shop_id)
        return SessionOutcome(session=redemption)

    async def consume_session(
        self,
        session_id: str,
        shop_id: str,
        amount: Any = None,
        *,
        now: datetime | None = None,
    ) -> ConsumptionOutcome:
        """Debit an approved session at most once.

        The customer row is locked before the balance is re-read so two
        consumers for the same customer serialize; the conditional status
        update guarantees a session flips to ``used`` exactly once.
        """

        current_time = now or utcnow()
        redemption = await self._validator.load_session(session_id)
        if redemption is None:
            return self._refuse_consumption(
                None,
                _failure(RedemptionFailureKind.NOT_FOUND, f"Redemption session {session_id} not found"),
            )
        if redemption.shop_id != shop_id:
            return self._refuse_consumption(
                redemption,
                _failure(RedemptionFailureKind.FORBIDDEN, "Session belongs to a different shop"),
            )

        customer = await self._lock_customer(redemption.customer_address)
        if customer is None:
            return self._refuse_consumption(
                redemption,
                _failure(RedemptionFailureKind.NOT_FOUND, f"Customer {redemption.customer_address} not found"),
            )

        outcome = await self._validator.revalidate_before_use(session_id, lock=True, now=current_time)
        if outcome.failure is not None:
            return self._refuse_consumption(outcome.session, outcome.failure)

        redemption = outcome.session
        max_amount = as_amount(redemption.max_amount)
        debit = max_amount if amount is None else parse_requested_amount(amount)
        if debit is None or debit <= 0 or debit > max_amount:
            return self._refuse_consumption(
                redemption,
                _failure(
                    RedemptionFailureKind.INVALID_REQUEST,
                    f"Redemption amount must be positive and at most {max_amount}",
                ),
            )

        stmt = (
            update(RedemptionSession)
            .where(
                RedemptionSession.session_id == session_id,
                RedemptionSession.shop_id == shop_id,
                RedemptionSession.status == RedemptionSessionStatus.APPROVED,
                RedemptionSession.used_at.is_(None),
                RedemptionSession.max_amount >= debit,
            )
            .values(status=RedemptionSessionStatus.USED, used_at=current_time)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        await self._db.refresh(redemption)
        if result.rowcount == 0:
            # Lost the race to a concurrent consumer; report the state it left behind.
            return self._refuse_consumption(
                redemption,
                _failure(
                    RedemptionFailureKind.CONCURRENCY_CONFLICT,
                    "Session already used",
                    status=redemption.status.value,
                ),
            )

        transaction = await self._ledger.record_redemption(
            customer,
            shop_id=shop_id,
            amount=debit,
            session_id=session_id,
            occurred_at=current_time,
        )

        self._store.record_transition(RedemptionSessionStatus.USED.value)
        logger.info(
            "Consumed redemption session",
            session_id=session_id,
            shop_id=shop_id,
            customer_address=customer.address,
            amount=float(debit),
            transaction_id=str(transaction.id),
        )
        return ConsumptionOutcome(session=redemption, transaction=transaction)

    async def expire_stale_sessions(self, *, now: datetime | None = None, limit: int = 500) -> int:
        """Soft-expire pending and approved sessions whose TTL lapsed."""

        current_time = now or utcnow()
        stmt = (
            select(RedemptionSession)
            .where(
                RedemptionSession.status.in_(ACTIVE_SESSION_STATUSES),
                RedemptionSession.expires_at <= current_time,
            )
            .order_by(RedemptionSession.expires_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._db.execute(stmt)
        expired = 0
        for redemption in result.scalars().all():
            if await self._validator.expire(redemption, reason="ttl_elapsed", expired_by="sweep"):
                expired += 1

        if expired:
            logger.info("Expired stale redemption sessions", count=expired)
        return expired

    async def get_session(self, session_id: str) -> RedemptionSession | None:
        return await self._validator.load_session(session_id)

    async def list_customer_sessions(
        self,
        customer_address: str,
        *,
        active_only: bool = False,
        limit: int = 50,
    ) -> Sequence[RedemptionSession]:
        stmt = select(RedemptionSession).where(
            RedemptionSession.customer_address == normalize_address(customer_address)
        )
        if active_only:
            stmt = stmt.where(
                RedemptionSession.status.in_(ACTIVE_SESSION_STATUSES),
                RedemptionSession.expires_at > utcnow(),
            )
        stmt = stmt.order_by(RedemptionSession.created_at.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def list_shop_pending_sessions(self, shop_id: str, *, limit: int = 50) -> Sequence[RedemptionSession]:
        stmt = (
            select(RedemptionSession)
            .where(
                RedemptionSession.shop_id == shop_id,
                RedemptionSession.status == RedemptionSessionStatus.PENDING,
                RedemptionSession.expires_at > utcnow(),
            )
            .order_by(RedemptionSession.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def _lock_customer(self, address: str) -> Customer | None:
        stmt = (
            select(Customer)
            .where(Customer.address == address)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    def _check_pending_owner(
        self,
        redemption: RedemptionSession | None,
        session_id: str,
        customer_address: str,
    ) -> RedemptionFailure | None:
        if redemption is None:
            return _failure(RedemptionFailureKind.NOT_FOUND, f"Redemption session {session_id} not found")
        if redemption.customer_address != normalize_address(customer_address):
            return _failure(RedemptionFailureKind.FORBIDDEN, "Session belongs to a different customer")
        if redemption.status is not RedemptionSessionStatus.PENDING:
            return _failure(
                RedemptionFailureKind.INVALID_STATE,
                f"Session is {redemption.status.value}",
                status=redemption.status.value,
            )
        return None

    @staticmethod
    def _lapsed(redemption: RedemptionSession, current_time: datetime) -> bool:
        expires_at = ensure_utc(redemption.expires_at)
        return expires_at is not None and expires_at <= current_time

    def _refuse(self, redemption: RedemptionSession | None, failure: RedemptionFailure) -> SessionOutcome:
        self._store.record_failure(failure.kind.value)
        logger.info(
            "Redemption session request refused",
            session_id=redemption.session_id if redemption is not None else None,
            kind=failure.kind.value,
            reason=failure.message,
        )
        return SessionOutcome(session=redemption, failure=failure)

    def _refuse_consumption(
        self,
        redemption: RedemptionSession | None,
        failure: RedemptionFailure,
    ) -> ConsumptionOutcome:
        self._store.record_failure(failure.kind.value)
        logger.info(
            "Redemption session consumption refused",
            session_id=redemption.session_id if redemption is not None else None,
            kind=failure.kind.value,
            reason=failure.message,
        )
        return ConsumptionOutcome(session=redemption, failure=failure)


__all__ = ["RedemptionSessionService", "SIGNATURE_PATTERN"]
