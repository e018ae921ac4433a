"""
Domain types for the bump scheduler.

Plain dataclasses passed between the ledger, session store, executor,
rotation policy and scheduler. Storage rows are converted with ``from_row``.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union


MAIN_SCOPE = "main"
WORKER_SCOPE_PREFIX = "worker:"


def worker_scope(wallet_index: int) -> str:
    """Ledger scope name for a worker wallet."""
    if wallet_index < 0:
        raise ValueError(f"Invalid wallet index: {wallet_index}")
    return f"{WORKER_SCOPE_PREFIX}{wallet_index}"


def parse_scope(scope: str) -> Optional[int]:
    """Return the wallet index of a worker scope, or None for ``main``."""
    if scope == MAIN_SCOPE:
        return None
    if scope.startswith(WORKER_SCOPE_PREFIX):
        index = scope[len(WORKER_SCOPE_PREFIX):]
        if index.isdigit():
            return int(index)
    raise ValueError(f"Unknown ledger scope: {scope}")


class SessionStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class StopReason(Enum):
    """Why a session left the running state."""
    USER = "user"
    ALL_DEPLETED = "all_depleted"
    TOO_MANY_FAILURES = "too_many_failures"
    NO_WALLETS = "no_wallets"


class RotationAction(Enum):
    CONTINUE = "continue"
    STOP_ALL_DEPLETED = "stop_all_depleted"
    STOP_TOO_MANY_FAILURES = "stop_too_many_failures"

    @property
    def stop_reason(self) -> Optional[StopReason]:
        if self is RotationAction.STOP_ALL_DEPLETED:
            return StopReason.ALL_DEPLETED
        if self is RotationAction.STOP_TOO_MANY_FAILURES:
            return StopReason.TOO_MANY_FAILURES
        return None


class ActivityStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    INFO = "info"


class ReceiptKind(Enum):
    DEPOSIT = "deposit"
    DISTRIBUTION = "distribution"
    TRADE = "trade"
    WITHDRAWAL = "withdrawal"


@dataclass
class Session:
    """A user's bump session."""
    session_id: str
    owner: str
    target_asset: str
    notional_usd: Decimal
    interval_seconds: int
    rotation_index: int = 0
    wallet_count: int = 5
    status: SessionStatus = SessionStatus.RUNNING
    stop_reason: Optional[StopReason] = None
    consecutive_failures: int = 0
    consecutive_skips: int = 0
    version: int = 1
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_trade_at: Optional[datetime] = None
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status is SessionStatus.RUNNING

    @classmethod
    def from_row(cls, row) -> "Session":
        return cls(
            session_id=row.session_id,
            owner=row.owner,
            target_asset=row.target_asset,
            notional_usd=Decimal(row.notional_usd),
            interval_seconds=row.interval_seconds,
            rotation_index=row.rotation_index,
            wallet_count=row.wallet_count,
            status=SessionStatus(row.status),
            stop_reason=StopReason(row.stop_reason) if row.stop_reason else None,
            consecutive_failures=row.consecutive_failures,
            consecutive_skips=row.consecutive_skips,
            version=row.version,
            started_at=row.started_at,
            stopped_at=row.stopped_at,
            last_trade_at=row.last_trade_at,
            lease_holder=row.lease_holder,
            lease_expires_at=row.lease_expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['notional_usd'] = str(self.notional_usd)
        data['status'] = self.status.value
        data['stop_reason'] = self.stop_reason.value if self.stop_reason else None
        for key in ('started_at', 'stopped_at', 'last_trade_at', 'lease_expires_at'):
            data[key] = data[key].isoformat() if data[key] else None
        return data


@dataclass
class WorkerWallet:
    owner: str
    wallet_index: int
    address: str
    created_at: Optional[datetime] = None

    @property
    def scope(self) -> str:
        return worker_scope(self.wallet_index)

    @classmethod
    def from_row(cls, row) -> "WorkerWallet":
        return cls(
            owner=row.owner,
            wallet_index=row.wallet_index,
            address=row.address,
            created_at=row.created_at,
        )


@dataclass
class CreditEntry:
    """Balance of one ledger scope, in credit units."""
    owner: str
    scope: str
    balance: int
    version: int = 1
    updated_at: Optional[datetime] = None

    @property
    def wallet_index(self) -> Optional[int]:
        return parse_scope(self.scope)

    @classmethod
    def from_row(cls, row) -> "CreditEntry":
        return cls(
            owner=row.owner,
            scope=row.scope,
            balance=row.balance,
            version=row.version,
            updated_at=row.updated_at,
        )


@dataclass
class DebitResult:
    """
    Result of a ledger debit.

    ``applied`` is False when the balance could not cover the amount; the
    row is then clamped to zero and ``shortfall`` holds the uncovered part.
    ``duplicate`` is True when the reference had already been applied.
    """
    applied: bool
    remaining: int
    shortfall: int = 0
    duplicate: bool = False


@dataclass
class ActivityRecord:
    owner: str
    status: ActivityStatus
    message: str
    amount: int = 0
    session_id: Optional[str] = None
    wallet_index: Optional[int] = None
    tx_ref: Optional[str] = None
    verified: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ActivityRecord":
        return cls(
            id=row.id,
            owner=row.owner,
            status=ActivityStatus(row.status),
            message=row.message,
            amount=row.amount,
            session_id=row.session_id,
            wallet_index=row.wallet_index,
            tx_ref=row.tx_ref,
            verified=row.verified,
            created_at=row.created_at,
        )


# Trade outcomes

@dataclass(frozen=True)
class Success:
    tx_ref: str
    spent_amount: int


@dataclass(frozen=True)
class InsufficientBalance:
    balance: int
    required: int


@dataclass(frozen=True)
class Failed:
    reason: str


Outcome = Union[Success, InsufficientBalance, Failed]


# Custody call batches

@dataclass(frozen=True)
class ContractCall:
    target: str
    data: str
    value: int = 0


@dataclass
class Batch:
    """Calls executed in order from one worker wallet."""
    calls: List[ContractCall]
    sell_token: str
    sell_amount: int
    description: str = ""


@dataclass
class Confirmation:
    """Final state of a submitted batch."""
    status: bool
    tx_ref: str
    spent_amount: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    tx_refs: List[str] = field(default_factory=list)
