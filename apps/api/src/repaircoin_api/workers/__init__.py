"""Background workers supporting async processing."""

from .redemption_sweep import RedemptionSessionSweepWorker

__all__ = [
    "RedemptionSessionSweepWorker",
]
