"""Shared-secret guard for shop-facing endpoints."""

import secrets

from fastapi import Header, HTTPException, Request, status
from loguru import logger

from repaircoin_api.core.settings import settings


async def require_shop_api_key(
    request: Request,
    x_api_key: str = Header("", alias="X-API-Key"),
) -> None:
    # An empty key leaves shop endpoints open (local development).
    if not settings.shop_api_key:
        return

    if not secrets.compare_digest(x_api_key.encode(), settings.shop_api_key.encode()):
        logger.warning("Rejected shop request with invalid API key", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
