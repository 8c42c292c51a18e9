#!/usr/bin/env python3
"""Execute the redemption session sweep once for cron/CI workflows."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Expire stale and unbacked redemption sessions")
    parser.add_argument(
        "--report-only",
        action="store_true",
        help="Expire TTL-lapsed sessions but only report invalid approvals.",
    )
    return parser.parse_args()


async def _run_once(*, fix_invalid: bool) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from repaircoin_api.db.session import async_session  # type: ignore import-position
    from repaircoin_api.jobs.redemption import run_redemption_session_sweep  # type: ignore import-position

    return await run_redemption_session_sweep(session_factory=async_session, fix_invalid=fix_invalid)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run_once(fix_invalid=not args.report_only))
    logger.info("Redemption session sweep complete", **summary)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
