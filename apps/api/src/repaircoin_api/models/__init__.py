"""SQLAlchemy models package."""

from .customer import Customer  # noqa: F401
from .redemption_session import RedemptionSession, RedemptionSessionStatus  # noqa: F401
from .shop import Shop  # noqa: F401
from .transaction import (  # noqa: F401
    LedgerTransaction,
    TransactionOrigin,
    TransactionStatus,
    TransactionType,
)
