"""Worker that periodically sweeps stale and unbacked redemption sessions."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from repaircoin_api.core.settings import settings
from repaircoin_api.jobs.redemption import run_redemption_session_sweep

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class RedemptionSessionSweepWorker:
    """Runs the redemption session sweep on a fixed interval."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        fix_invalid: bool | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.redemption_sweep_interval_seconds
        self.fix_invalid = settings.redemption_sweep_fix_invalid if fix_invalid is None else fix_invalid
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self._logger = logger.bind(worker="redemption_session_sweep")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        self._logger.info(
            "Redemption session sweep worker started",
            interval_seconds=self.interval_seconds,
            fix_invalid=self.fix_invalid,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        self._logger.info("Redemption session sweep worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        return await run_redemption_session_sweep(
            session_factory=self._session_factory,
            fix_invalid=self.fix_invalid,
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                summary = await self.run_once()
                self._logger.info("Redemption session sweep iteration", **summary)
            except Exception as exc:  # pragma: no cover - loop must survive a failed sweep
                self._logger.exception("Redemption session sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue


__all__ = ["RedemptionSessionSweepWorker"]
