"""Balance calculation exports."""

from .calculator import (  # noqa: F401
    BalanceBreakdown,
    BalanceCalculator,
    available_balance_formula,
    minted_to_wallet_subquery,
)
