"""
Rotation Policy
===============

Pure decision logic shared by every session driver: given the outcome of
one trade attempt, pick the next worker wallet and decide whether the
session keeps running.

    Success              -> counters reset, advance
    InsufficientBalance  -> skips + 1, failures reset; stop once every wallet was skipped
    Failed               -> failures + 1, skips reset; stop at the failure threshold

The cursor always advances round-robin. On a stop decision it stays at the
current index.
"""

from dataclasses import dataclass

from bump_bot.models import (
    Failed,
    InsufficientBalance,
    Outcome,
    RotationAction,
    Success,
)

DEFAULT_MAX_FAILURES = 5


@dataclass(frozen=True)
class RotationDecision:
    next_index: int
    action: RotationAction
    consecutive_failures: int
    consecutive_skips: int

    @property
    def should_stop(self) -> bool:
        return self.action is not RotationAction.CONTINUE


def next_rotation(
    current_index: int,
    wallet_count: int,
    outcome: Outcome,
    consecutive_failures: int = 0,
    consecutive_skips: int = 0,
    max_failures: int = DEFAULT_MAX_FAILURES,
) -> RotationDecision:
    """Decide the next wallet index and whether the session continues."""
    if wallet_count < 1:
        raise ValueError("wallet_count must be at least 1")
    if not 0 <= current_index < wallet_count:
        raise ValueError(f"Rotation index {current_index} out of range for {wallet_count} wallets")

    advanced = (current_index + 1) % wallet_count

    if isinstance(outcome, Success):
        return RotationDecision(advanced, RotationAction.CONTINUE, 0, 0)

    if isinstance(outcome, InsufficientBalance):
        skips = consecutive_skips + 1
        if skips >= wallet_count:
            return RotationDecision(current_index, RotationAction.STOP_ALL_DEPLETED, 0, skips)
        return RotationDecision(advanced, RotationAction.CONTINUE, 0, skips)

    if isinstance(outcome, Failed):
        failures = consecutive_failures + 1
        if failures >= max_failures:
            return RotationDecision(current_index, RotationAction.STOP_TOO_MANY_FAILURES, failures, 0)
        return RotationDecision(advanced, RotationAction.CONTINUE, failures, 0)

    raise TypeError(f"Unknown trade outcome: {outcome!r}")
