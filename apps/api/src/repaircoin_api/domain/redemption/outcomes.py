"""Structured results for redemption validation and session transitions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repaircoin_api.models.redemption_session import RedemptionSession
    from repaircoin_api.models.transaction import LedgerTransaction


CENT = Decimal("0.01")


class RedemptionFailureKind(str, Enum):
    """Reasons a redemption request or session transition is refused."""

    NOT_FOUND = "not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVALID_STATE = "invalid_state"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class RedemptionFailure:
    kind: RedemptionFailureKind
    message: str
    deficit: Decimal | None = None
    status: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.deficit is not None:
            payload["deficit"] = float(self.deficit)
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(frozen=True)
class ApprovalDecision:
    """Outcome of checking a requested amount against the available balance."""

    requested_amount: Decimal
    available_balance: Decimal | None
    failure: RedemptionFailure | None = None

    @property
    def approvable(self) -> bool:
        return self.failure is None

    @property
    def deficit(self) -> Decimal:
        if self.failure is None or self.failure.deficit is None:
            return Decimal("0.00")
        return self.failure.deficit


@dataclass
class SessionOutcome:
    session: "RedemptionSession | None"
    failure: RedemptionFailure | None = None
    available_balance: Decimal | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass
class ConsumptionOutcome:
    session: "RedemptionSession | None"
    transaction: "LedgerTransaction | None" = None
    failure: RedemptionFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def as_amount(value: Any) -> Decimal:
    """Coerce database numerics (Decimal, float, int, None) to a 2dp Decimal."""

    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_address(address: str) -> str:
    return address.strip().lower()


def ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
