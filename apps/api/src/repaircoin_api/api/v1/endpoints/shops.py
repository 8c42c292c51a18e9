"""Shop-facing redemption queue endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.api.dependencies.security import require_shop_api_key
from repaircoin_api.db.session import get_session
from repaircoin_api.models.shop import Shop
from repaircoin_api.services.redemption import RedemptionSessionService

from .redemption_sessions import RedemptionSessionResponse, serialize_session


router = APIRouter(prefix="/shops", tags=["shops"])


@router.get(
    "/{shop_id}/redemption-sessions/pending",
    response_model=List[RedemptionSessionResponse],
    dependencies=[Depends(require_shop_api_key)],
)
async def list_pending_redemption_sessions(
    shop_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionSessionResponse]:
    if await db.get(Shop, shop_id) is None:
        raise HTTPException(status_code=404, detail="Shop not found")
    service = RedemptionSessionService(db)
    sessions = await service.list_shop_pending_sessions(shop_id, limit=limit)
    return [serialize_session(redemption) for redemption in sessions]
