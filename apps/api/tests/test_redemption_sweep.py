from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from repaircoin_api.jobs.redemption import run_redemption_session_sweep
from repaircoin_api.models.customer import Customer
from repaircoin_api.models.redemption_session import RedemptionSession, RedemptionSessionStatus
from repaircoin_api.models.shop import Shop
from repaircoin_api.workers.redemption_sweep import RedemptionSessionSweepWorker


ADDRESS = "0x9999999999999999999999999999999999999999"


async def _seed(session_factory, now: datetime) -> dict[str, str]:
    def _session(max_amount: str, status: RedemptionSessionStatus, expires_at: datetime) -> RedemptionSession:
        return RedemptionSession(
            customer_address=ADDRESS,
            shop_id="shop001",
            max_amount=Decimal(max_amount),
            status=status,
            created_at=now - timedelta(hours=1),
            approved_at=now - timedelta(hours=1) if status is RedemptionSessionStatus.APPROVED else None,
            expires_at=expires_at,
            metadata_json={},
        )

    sessions = {
        "lapsed_pending": _session("5", RedemptionSessionStatus.PENDING, now - timedelta(minutes=30)),
        "lapsed_approved": _session("5", RedemptionSessionStatus.APPROVED, now - timedelta(minutes=1)),
        "covered": _session("10", RedemptionSessionStatus.APPROVED, now + timedelta(hours=12)),
        "unbacked": _session("50", RedemptionSessionStatus.APPROVED, now + timedelta(hours=12)),
    }
    async with session_factory() as session:
        session.add(Shop(shop_id="shop001", name="Fix-It", active=True, verified=True))
        session.add(Customer(address=ADDRESS, lifetime_earnings=Decimal("40")))
        session.add_all(sessions.values())
        await session.commit()
        return {name: redemption.session_id for name, redemption in sessions.items()}


async def _statuses(session_factory, ids: dict[str, str]) -> dict[str, RedemptionSessionStatus]:
    async with session_factory() as session:
        return {name: (await session.get(RedemptionSession, session_id)).status for name, session_id in ids.items()}


@pytest.mark.asyncio
async def test_sweep_expires_lapsed_and_unbacked_sessions(session_factory) -> None:
    now = datetime.now(timezone.utc)
    ids = await _seed(session_factory, now)

    summary = await run_redemption_session_sweep(session_factory=session_factory, now=now)

    assert summary == {
        "expired_sessions": 2,
        "invalid_approved_sessions": 1,
        "invalid_sessions_fixed": 1,
    }
    statuses = await _statuses(session_factory, ids)
    assert statuses["lapsed_pending"] is RedemptionSessionStatus.EXPIRED
    assert statuses["lapsed_approved"] is RedemptionSessionStatus.EXPIRED
    assert statuses["covered"] is RedemptionSessionStatus.APPROVED
    assert statuses["unbacked"] is RedemptionSessionStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_report_only_leaves_unbacked_sessions(session_factory) -> None:
    now = datetime.now(timezone.utc)
    ids = await _seed(session_factory, now)

    summary = await run_redemption_session_sweep(session_factory=session_factory, fix_invalid=False, now=now)

    assert summary["invalid_approved_sessions"] == 1
    assert summary["invalid_sessions_fixed"] == 0
    statuses = await _statuses(session_factory, ids)
    assert statuses["unbacked"] is RedemptionSessionStatus.APPROVED


@pytest.mark.asyncio
async def test_worker_run_once_and_lifecycle(session_factory) -> None:
    now = datetime.now(timezone.utc)
    ids = await _seed(session_factory, now)

    worker = RedemptionSessionSweepWorker(session_factory, interval_seconds=3600, fix_invalid=True)
    summary = await worker.run_once()
    assert summary["expired_sessions"] == 2
    assert summary["invalid_sessions_fixed"] == 1

    worker.start()
    assert worker.is_running is True
    await worker.stop()
    assert worker.is_running is False

    statuses = await _statuses(session_factory, ids)
    assert statuses["covered"] is RedemptionSessionStatus.APPROVED
