"""Redemption job exports."""

from .sweep import run_redemption_session_sweep  # noqa: F401

__all__ = [
    "run_redemption_session_sweep",
]
