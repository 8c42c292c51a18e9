"""Ledger domain errors."""

from .errors import (  # noqa: F401
    CustomerNotFoundError,
    InsufficientBalanceError,
    InvalidTransactionStateError,
    LedgerError,
    ShopNotFoundError,
)
