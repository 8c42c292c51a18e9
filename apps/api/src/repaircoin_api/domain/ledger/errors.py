"""Ledger rule violations raised by the service layer."""

from __future__ import annotations

from decimal import Decimal


class LedgerError(ValueError):
    """Base class for ledger rule violations."""


class CustomerNotFoundError(LedgerError):
    def __init__(self, address: str) -> None:
        super().__init__(f"Customer {address} not found")
        self.address = address


class ShopNotFoundError(LedgerError):
    def __init__(self, shop_id: str) -> None:
        super().__init__(f"Shop {shop_id} not found")
        self.shop_id = shop_id


class InsufficientBalanceError(LedgerError):
    def __init__(self, *, requested: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient balance: requested {requested}, available {available}"
        )
        self.requested = requested
        self.available = available
        self.deficit = requested - available


class InvalidTransactionStateError(LedgerError):
    """Raised when a ledger row is asked to make a forbidden status change."""
