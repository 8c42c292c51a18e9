"""Expire lapsed redemption sessions and approvals the balance can no longer cover."""

# meta: job: redemption-session-sweep

from __future__ import annotations

import datetime as dt
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.services.reconciliation import ReconciliationAuditor
from repaircoin_api.services.redemption import RedemptionSessionService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def run_redemption_session_sweep(
    *,
    session_factory: SessionFactory,
    fix_invalid: bool = True,
    now: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Soft-expire TTL-lapsed sessions, then audit the remaining approvals."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    async with session as managed_session:
        service = RedemptionSessionService(managed_session)
        reference_time = now or dt.datetime.now(dt.timezone.utc)
        expired = await service.expire_stale_sessions(now=reference_time)
        await managed_session.commit()

        auditor = ReconciliationAuditor(managed_session)
        findings = await auditor.find_invalid_approved_sessions(fix=fix_invalid)
        await managed_session.commit()

        summary = {
            "expired_sessions": expired,
            "invalid_approved_sessions": len(findings),
            "invalid_sessions_fixed": sum(1 for finding in findings if finding.fixed),
        }
        logger.bind(summary=summary).info("Redemption session sweep completed")
        return summary


__all__ = ["run_redemption_session_sweep"]
