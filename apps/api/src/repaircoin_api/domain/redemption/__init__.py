"""Redemption domain helpers."""

from .outcomes import (  # noqa: F401
    CENT,
    ApprovalDecision,
    ConsumptionOutcome,
    RedemptionFailure,
    RedemptionFailureKind,
    SessionOutcome,
    as_amount,
    ensure_utc,
    normalize_address,
    utcnow,
)
