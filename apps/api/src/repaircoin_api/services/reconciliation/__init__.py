"""Ledger reconciliation exports."""

from .auditor import (  # noqa: F401
    AggregateDrift,
    DuplicateMintGroup,
    InvalidSessionFinding,
    ReconciliationAuditor,
)
