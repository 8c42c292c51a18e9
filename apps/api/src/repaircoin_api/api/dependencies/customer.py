"""Caller identity for customer-facing redemption APIs."""

from __future__ import annotations

import re

from fastapi import Header, HTTPException, status

from repaircoin_api.domain.redemption import normalize_address

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


async def require_customer_address(
    customer_address: str | None = Header(None, alias="X-Customer-Address"),
) -> str:
    """Resolve the authenticated customer wallet from forwarded headers."""

    if not customer_address:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing customer address context",
        )

    address = normalize_address(customer_address)
    if not _ADDRESS_PATTERN.match(address):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid customer address",
        )
    return address
