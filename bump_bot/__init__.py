"""
Bump Bot - round-robin multi-wallet volume bumping on Base.

A pool of worker wallets trades a target token at a fixed interval using
pooled WETH credit, stopping on depletion or repeated failure.
"""

__version__ = "1.0.0"

from bump_bot.config import Config, ConfigManager
from bump_bot.ledger import CreditLedger
from bump_bot.models import (
    Failed,
    InsufficientBalance,
    Session,
    SessionStatus,
    StopReason,
    Success,
)
from bump_bot.rotation import RotationDecision, next_rotation
from bump_bot.scheduler import Scheduler, run_iteration, run_session_loop
from bump_bot.service import BumpService
from bump_bot.sessions import SessionStore

__all__ = [
    "BumpService",
    "Config",
    "ConfigManager",
    "CreditLedger",
    "Failed",
    "InsufficientBalance",
    "RotationDecision",
    "Scheduler",
    "Session",
    "SessionStatus",
    "SessionStore",
    "StopReason",
    "Success",
    "next_rotation",
    "run_iteration",
    "run_session_loop",
]
