"""Observability endpoints for redemption telemetry."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from repaircoin_api.api.dependencies.security import require_shop_api_key
from repaircoin_api.observability.redemption import get_redemption_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/redemptions",
    dependencies=[Depends(require_shop_api_key)],
    summary="Redemption session observability snapshot",
)
async def get_redemption_snapshot() -> dict[str, object]:
    return get_redemption_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_shop_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_redemption_store().snapshot()

    lines: list[str] = []
    for status_value, count in sorted(snapshot.transitions.items()):
        lines.extend(
            _format_metric(
                "repaircoin_redemption_session_transitions_total",
                "Redemption session transitions grouped by resulting status",
                count,
                labels={"status": status_value},
            )
        )
    for reason, count in sorted(snapshot.expirations.items()):
        lines.extend(
            _format_metric(
                "repaircoin_redemption_session_expirations_total",
                "Redemption session expirations grouped by reason",
                count,
                labels={"reason": reason},
            )
        )
    for kind, count in sorted(snapshot.failures.items()):
        lines.extend(
            _format_metric(
                "repaircoin_redemption_failures_total",
                "Refused redemption requests grouped by failure kind",
                count,
                labels={"kind": kind},
            )
        )
    for key, count in sorted(snapshot.audits.items()):
        check, _, measure = key.partition(":")
        lines.extend(
            _format_metric(
                "repaircoin_reconciliation_audit_total",
                "Reconciliation audit runs and flagged rows",
                count,
                labels={"check": check, "measure": measure},
            )
        )

    return PlainTextResponse("\n".join(lines) + "\n")
