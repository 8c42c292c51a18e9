"""Ledger service exports."""

from .ledger_service import LedgerService  # noqa: F401
