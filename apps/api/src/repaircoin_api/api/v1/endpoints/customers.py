"""Customer-facing balance and redemption history endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.db.session import get_session
from repaircoin_api.services.balance import BalanceCalculator
from repaircoin_api.services.redemption import RedemptionSessionService

from .redemption_sessions import RedemptionSessionResponse, serialize_session


router = APIRouter(prefix="/customers", tags=["customers"])


class CustomerBalanceResponse(BaseModel):
    address: str
    availableBalance: float
    lifetimeEarnings: float
    totalRedemptions: float
    pendingMintBalance: float
    mintedToWallet: float


@router.get("/{address}/balance", response_model=CustomerBalanceResponse)
async def get_customer_balance(
    address: str,
    db: AsyncSession = Depends(get_session),
) -> CustomerBalanceResponse:
    """Spendable balance, computed by the same calculator shops are validated against."""

    breakdown = await BalanceCalculator(db).lookup(address)
    if breakdown is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    return CustomerBalanceResponse(
        address=breakdown.address,
        availableBalance=float(breakdown.available_balance),
        lifetimeEarnings=float(breakdown.lifetime_earnings),
        totalRedemptions=float(breakdown.total_redemptions),
        pendingMintBalance=float(breakdown.pending_mint_balance),
        mintedToWallet=float(breakdown.minted_to_wallet),
    )


@router.get("/{address}/redemption-sessions", response_model=List[RedemptionSessionResponse])
async def list_customer_redemption_sessions(
    address: str,
    active_only: bool = Query(False, alias="activeOnly"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionSessionResponse]:
    service = RedemptionSessionService(db)
    sessions = await service.list_customer_sessions(address, active_only=active_only, limit=limit)
    return [serialize_session(redemption) for redemption in sessions]
