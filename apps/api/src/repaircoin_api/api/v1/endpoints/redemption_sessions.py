"""API endpoints for the shop-request / customer-approval redemption workflow."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.api.dependencies.customer import require_customer_address
from repaircoin_api.api.dependencies.security import require_shop_api_key
from repaircoin_api.db.session import get_session
from repaircoin_api.domain.redemption import (
    RedemptionFailure,
    RedemptionFailureKind,
    as_amount,
    ensure_utc,
)
from repaircoin_api.models.redemption_session import RedemptionSession
from repaircoin_api.services.balance import BalanceCalculator
from repaircoin_api.services.redemption import RedemptionSessionService, RedemptionSessionValidator


router = APIRouter(prefix="/redemption-sessions", tags=["redemption-sessions"])


FAILURE_STATUS_CODES: dict[RedemptionFailureKind, int] = {
    RedemptionFailureKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RedemptionFailureKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    RedemptionFailureKind.INSUFFICIENT_BALANCE: status.HTTP_400_BAD_REQUEST,
    RedemptionFailureKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    RedemptionFailureKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    RedemptionFailureKind.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    RedemptionFailureKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
}


class RedemptionSessionResponse(BaseModel):
    sessionId: str
    customerAddress: str
    shopId: str
    maxAmount: float
    status: str
    createdAt: Optional[datetime]
    expiresAt: Optional[datetime]
    approvedAt: Optional[datetime]
    usedAt: Optional[datetime]
    metadata: dict[str, Any]


class RedemptionValidateRequest(BaseModel):
    customerAddress: str = Field(..., min_length=1, description="Customer wallet address")
    amount: Decimal = Field(..., description="Requested redemption amount")


class RedemptionValidateResponse(BaseModel):
    approvable: bool
    requestedAmount: float
    availableBalance: float
    deficit: float
    reason: Optional[str]


class RedemptionSessionCreateRequest(BaseModel):
    customerAddress: str = Field(..., min_length=1, description="Customer wallet address")
    shopId: str = Field(..., min_length=1, description="Requesting shop identifier")
    amount: Decimal = Field(..., description="Maximum amount the shop may redeem")


class RedemptionSessionApproveRequest(BaseModel):
    signature: str = Field(..., description="Customer wallet signature over the session")
    transactionHash: Optional[str] = Field(None, description="Optional on-chain reference")


class RedemptionSessionShopRequest(BaseModel):
    shopId: str = Field(..., min_length=1, description="Shop acting on the session")


class RedemptionSessionConsumeRequest(RedemptionSessionShopRequest):
    amount: Optional[Decimal] = Field(None, description="Amount to debit; defaults to the approved maximum")


class RedemptionConsumeResponse(BaseModel):
    session: RedemptionSessionResponse
    transactionId: str
    amount: float
    remainingBalance: float


def serialize_session(redemption: RedemptionSession) -> RedemptionSessionResponse:
    return RedemptionSessionResponse(
        sessionId=redemption.session_id,
        customerAddress=redemption.customer_address,
        shopId=redemption.shop_id,
        maxAmount=float(as_amount(redemption.max_amount)),
        status=redemption.status.value,
        createdAt=ensure_utc(redemption.created_at),
        expiresAt=ensure_utc(redemption.expires_at),
        approvedAt=ensure_utc(redemption.approved_at),
        usedAt=ensure_utc(redemption.used_at),
        metadata=redemption.metadata_json or {},
    )


def raise_for_failure(failure: RedemptionFailure) -> None:
    raise HTTPException(
        status_code=FAILURE_STATUS_CODES.get(failure.kind, status.HTTP_400_BAD_REQUEST),
        detail=failure.as_dict(),
    )


@router.post(
    "/validate",
    response_model=RedemptionValidateResponse,
    dependencies=[Depends(require_shop_api_key)],
)
async def validate_redemption(
    payload: RedemptionValidateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionValidateResponse:
    """Check whether a redemption of ``amount`` could be approved right now."""

    validator = RedemptionSessionValidator(db)
    decision = await validator.validate_for_approval(payload.customerAddress, payload.amount)
    if decision.failure is not None and decision.failure.kind is not RedemptionFailureKind.INSUFFICIENT_BALANCE:
        raise_for_failure(decision.failure)
    return RedemptionValidateResponse(
        approvable=decision.approvable,
        requestedAmount=float(decision.requested_amount),
        availableBalance=float(decision.available_balance or 0),
        deficit=float(decision.deficit),
        reason=decision.failure.message if decision.failure else None,
    )


@router.post(
    "",
    response_model=RedemptionSessionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_shop_api_key)],
)
async def create_redemption_session(
    payload: RedemptionSessionCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionSessionResponse:
    service = RedemptionSessionService(db)
    outcome = await service.create_session(payload.customerAddress, payload.shopId, payload.amount)
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)
    await db.commit()
    await db.refresh(outcome.session)
    return serialize_session(outcome.session)


@router.get("/{session_id}", response_model=RedemptionSessionResponse)
async def get_redemption_session(
    session_id: str,
    db: AsyncSession = Depends(get_session),
) -> RedemptionSessionResponse:
    service = RedemptionSessionService(db)
    redemption = await service.get_session(session_id)
    if redemption is None:
        raise HTTPException(status_code=404, detail="Redemption session not found")
    return serialize_session(redemption)


@router.post("/{session_id}/approve", response_model=RedemptionSessionResponse)
async def approve_redemption_session(
    session_id: str,
    payload: RedemptionSessionApproveRequest,
    customer_address: str = Depends(require_customer_address),
    db: AsyncSession = Depends(get_session),
) -> RedemptionSessionResponse:
    """Customer approval; re-checks the balance before accepting."""

    service = RedemptionSessionService(db)
    outcome = await service.approve_session(
        session_id,
        customer_address,
        payload.signature,
        transaction_hash=payload.transactionHash,
    )
    # Expiries recorded while refusing must persist.
    await db.commit()
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)
    await db.refresh(outcome.session)
    return serialize_session(outcome.session)


@router.post("/{session_id}/reject", response_model=RedemptionSessionResponse)
async def reject_redemption_session(
    session_id: str,
    customer_address: str = Depends(require_customer_address),
    db: AsyncSession = Depends(get_session),
) -> RedemptionSessionResponse:
    service = RedemptionSessionService(db)
    outcome = await service.reject_session(session_id, customer_address)
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)
    await db.commit()
    await db.refresh(outcome.session)
    return serialize_session(outcome.session)


@router.post(
    "/{session_id}/cancel",
    response_model=RedemptionSessionResponse,
    dependencies=[Depends(require_shop_api_key)],
)
async def cancel_redemption_session(
    session_id: str,
    payload: RedemptionSessionShopRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionSessionResponse:
    service = RedemptionSessionService(db)
    outcome = await service.cancel_session(session_id, payload.shopId)
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)
    await db.commit()
    await db.refresh(outcome.session)
    return serialize_session(outcome.session)


@router.post(
    "/{session_id}/consume",
    response_model=RedemptionConsumeResponse,
    dependencies=[Depends(require_shop_api_key)],
)
async def consume_redemption_session(
    session_id: str,
    payload: RedemptionSessionConsumeRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionConsumeResponse:
    """Debit an approved session; succeeds at most once per session."""

    service = RedemptionSessionService(db)
    outcome = await service.consume_session(session_id, payload.shopId, payload.amount)
    await db.commit()
    if outcome.failure is not None:
        raise_for_failure(outcome.failure)

    await db.refresh(outcome.session)
    remaining = await BalanceCalculator(db).compute(outcome.session.customer_address)
    return RedemptionConsumeResponse(
        session=serialize_session(outcome.session),
        transactionId=str(outcome.transaction.id),
        amount=float(as_amount(outcome.transaction.amount)),
        remainingBalance=float(remaining),
    )
