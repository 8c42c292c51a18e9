"""Redemption workflow exports."""

from .session_service import SIGNATURE_PATTERN, RedemptionSessionService  # noqa: F401
from .validator import RedemptionSessionValidator  # noqa: F401
