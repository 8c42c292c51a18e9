"""Approval and pre-consumption checks for redemption sessions."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.domain.redemption import (
    CENT,
    ApprovalDecision,
    RedemptionFailure,
    RedemptionFailureKind,
    SessionOutcome,
    as_amount,
    ensure_utc,
    normalize_address,
    utcnow,
)
from repaircoin_api.models.redemption_session import (
    TERMINAL_SESSION_STATUSES,
    RedemptionSession,
    RedemptionSessionStatus,
)
from repaircoin_api.observability.redemption import get_redemption_store
from repaircoin_api.services.balance import BalanceCalculator


def parse_requested_amount(value: Any) -> Decimal | None:
    """Exact amount in whole cents, or None when malformed or finer than a cent."""

    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not amount.is_finite() or amount != amount.quantize(CENT):
        return None
    return amount.quantize(CENT)


class RedemptionSessionValidator:
    """Decide whether a redemption can be approved or consumed.

    Both checks read the balance through :class:`BalanceCalculator`, so the
    number a shop is validated against is the number the customer sees.
    """

    def __init__(self, session: AsyncSession, *, balance_calculator: BalanceCalculator | None = None) -> None:
        self._db = session
        self._balances = balance_calculator or BalanceCalculator(session)
        self._store = get_redemption_store()

    async def validate_for_approval(self, customer_address: str, requested_amount: Any) -> ApprovalDecision:
        """Approvable iff ``0 < requested_amount <= available balance``. No writes."""

        requested = parse_requested_amount(requested_amount)
        if requested is None or requested <= 0:
            return ApprovalDecision(
                requested_amount=requested if requested is not None else Decimal("0.00"),
                available_balance=None,
                failure=RedemptionFailure(
                    kind=RedemptionFailureKind.INVALID_REQUEST,
                    message="Requested amount must be a positive amount with at most two decimal places",
                ),
            )

        breakdown = await self._balances.lookup(customer_address)
        if breakdown is None:
            return ApprovalDecision(
                requested_amount=requested,
                available_balance=None,
                failure=RedemptionFailure(
                    kind=RedemptionFailureKind.NOT_FOUND,
                    message=f"Customer {normalize_address(customer_address)} not found",
                ),
            )

        available = breakdown.available_balance
        if requested > available:
            return ApprovalDecision(
                requested_amount=requested,
                available_balance=available,
                failure=RedemptionFailure(
                    kind=RedemptionFailureKind.INSUFFICIENT_BALANCE,
                    message="insufficient balance",
                    deficit=requested - available,
                ),
            )
        return ApprovalDecision(requested_amount=requested, available_balance=available)

    async def revalidate_before_use(
        self,
        session_id: str,
        *,
        lock: bool = False,
        now: datetime | None = None,
    ) -> SessionOutcome:
        """Re-check an approved session; expire it when it can no longer be honored."""

        redemption = await self.load_session(session_id, lock=lock)
        if redemption is None:
            return SessionOutcome(
                session=None,
                failure=RedemptionFailure(
                    kind=RedemptionFailureKind.NOT_FOUND,
                    message=f"Redemption session {session_id} not found",
                ),
            )

        if redemption.status is not RedemptionSessionStatus.APPROVED:
            return SessionOutcome(session=redemption, failure=self.state_failure(redemption))

        current_time = now or utcnow()
        expires_at = ensure_utc(redemption.expires_at)
        if expires_at is not None and expires_at <= current_time:
            if not await self.expire(redemption, reason="ttl_elapsed", expired_by="revalidation"):
                return SessionOutcome(session=redemption, failure=self.state_failure(redemption))
            return SessionOutcome(
                session=redemption,
                failure=RedemptionFailure(
                    kind=RedemptionFailureKind.INVALID_STATE,
                    message="Session has expired",
                    status=RedemptionSessionStatus.EXPIRED.value,
                ),
            )

        decision = await self.validate_for_approval(redemption.customer_address, as_amount(redemption.max_amount))
        if decision.failure is not None:
            if decision.failure.kind is RedemptionFailureKind.INSUFFICIENT_BALANCE:
                expired = await self.expire(
                    redemption,
                    reason="insufficient_balance",
                    expired_by="revalidation",
                    deficit=decision.deficit,
                )
                if not expired:
                    return SessionOutcome(session=redemption, failure=self.state_failure(redemption))
                logger.warning(
                    "Expired approved session with insufficient balance",
                    session_id=redemption.session_id,
                    customer_address=redemption.customer_address,
                    max_amount=float(as_amount(redemption.max_amount)),
                    available_balance=float(decision.available_balance or 0),
                )
                return SessionOutcome(
                    session=redemption,
                    failure=RedemptionFailure(
                        kind=RedemptionFailureKind.INSUFFICIENT_BALANCE,
                        message="insufficient balance",
                        deficit=decision.deficit,
                        status=RedemptionSessionStatus.EXPIRED.value,
                    ),
                    available_balance=decision.available_balance,
                )
            return SessionOutcome(session=redemption, failure=decision.failure)

        return SessionOutcome(session=redemption, available_balance=decision.available_balance)

    async def load_session(self, session_id: str, *, lock: bool = False) -> RedemptionSession | None:
        stmt = select(RedemptionSession).where(RedemptionSession.session_id == session_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def expire(
        self,
        redemption: RedemptionSession,
        *,
        reason: str,
        expired_by: str,
        deficit: Decimal | None = None,
    ) -> bool:
        """Soft-expire ``redemption`` if it is still in the state it was read in.

        Returns False, with ``redemption`` refreshed, when another transaction
        already moved the session on (for example consumed it).
        """

        observed = redemption.status
        if observed in TERMINAL_SESSION_STATUSES:
            return False

        metadata = dict(redemption.metadata_json or {})
        metadata["expiredReason"] = reason
        metadata["expiredBy"] = expired_by
        metadata["expiredAt"] = utcnow().isoformat()
        if deficit is not None:
            metadata["deficit"] = str(deficit)

        stmt = (
            update(RedemptionSession)
            .where(
                RedemptionSession.session_id == redemption.session_id,
                RedemptionSession.status == observed,
                RedemptionSession.used_at.is_(None),
            )
            .values(
                {
                    RedemptionSession.status: RedemptionSessionStatus.EXPIRED,
                    RedemptionSession.metadata_json: metadata,
                }
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        await self._db.refresh(redemption)
        if result.rowcount == 0:
            logger.info(
                "Skipped expiring redemption session that changed concurrently",
                session_id=redemption.session_id,
                observed_status=observed.value,
                current_status=redemption.status.value,
                reason=reason,
            )
            return False

        self._store.record_transition(RedemptionSessionStatus.EXPIRED.value, reason=reason)
        return True

    @staticmethod
    def state_failure(redemption: RedemptionSession) -> RedemptionFailure:
        return RedemptionFailure(
            kind=RedemptionFailureKind.INVALID_STATE,
            message=f"Session is {redemption.status.value}",
            status=redemption.status.value,
        )


__all__ = ["RedemptionSessionValidator", "parse_requested_amount"]
