#!/usr/bin/env python3
"""Ledger diagnostics: duplicate confirmed mints and cached aggregate drift."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--customer", help="Restrict the scan to one customer address")
    common.add_argument(
        "--fail-on-findings",
        action="store_true",
        help="Exit with status 1 when anything is flagged.",
    )

    parser = argparse.ArgumentParser(description="Audit the RCN ledger")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser(
        "duplicates",
        parents=[common],
        help="Find confirmed mints sharing amount/shop/timestamp",
    )

    aggregates = subparsers.add_parser(
        "aggregates",
        parents=[common],
        help="Compare cached customer totals with the ledger",
    )
    aggregates.add_argument(
        "--fix",
        action="store_true",
        help="Rewrite drifted cached totals from the ledger.",
    )
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from repaircoin_api.db.session import async_session  # type: ignore import-position
    from repaircoin_api.services.reconciliation import ReconciliationAuditor  # type: ignore import-position

    async with async_session() as session:
        auditor = ReconciliationAuditor(session)
        if args.command == "duplicates":
            groups = await auditor.find_duplicate_mints(args.customer)
            return {"duplicate_mints": [group.as_dict() for group in groups]}

        drifts = await auditor.reconcile_customer_aggregates(args.customer, fix=args.fix)
        if args.fix:
            await session.commit()
        return {"aggregate_drift": [drift.as_dict() for drift in drifts]}


def main() -> int:
    args = parse_args()
    report = asyncio.run(_run(args))
    print(json.dumps(report, indent=2))
    flagged = sum(len(rows) for rows in report.values())
    logger.info("Ledger audit complete", command=args.command, flagged=flagged)
    if flagged and args.fail_on_findings:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
