#!/usr/bin/env python3
"""Report approved redemption sessions the customer balance no longer covers."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit approved-but-unused redemption sessions")
    parser.add_argument(
        "--fix",
        action="store_true",
        help="Expire every flagged session and annotate its metadata.",
    )
    parser.add_argument(
        "--fail-on-findings",
        action="store_true",
        help="Exit with status 1 when any session is flagged.",
    )
    return parser.parse_args()


async def _run_once(*, fix: bool) -> list[dict[str, object]]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from repaircoin_api.db.session import async_session  # type: ignore import-position
    from repaircoin_api.services.reconciliation import ReconciliationAuditor  # type: ignore import-position

    async with async_session() as session:
        auditor = ReconciliationAuditor(session)
        findings = await auditor.find_invalid_approved_sessions(fix=fix)
        if fix:
            await session.commit()
        logger.info(
            "Redemption session audit complete",
            flagged=len(findings),
            fixed=sum(1 for finding in findings if finding.fixed),
        )
        return [finding.as_dict() for finding in findings]


def main() -> int:
    args = parse_args()
    findings = asyncio.run(_run_once(fix=args.fix))
    print(json.dumps({"invalid_approved_sessions": findings}, indent=2))
    if findings and args.fail_on_findings:
        logger.error("Invalid approved redemption sessions detected", count=len(findings))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
