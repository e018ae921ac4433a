"""
Trade Step Metrics and Structured Logs
======================================
Every trade walks the same external steps: price, quote, submit, confirm.
TradeMetrics times each step per owner and wallet so a slow aggregator or
a stuck custody backend shows up in the worker's exit summary.

JsonLogFormatter writes one JSON object per line for the log file, carrying
the owner/session/wallet context passed through ``extra=``.
"""

import json
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Deque, Dict, Any, Optional, List

from rich import box
from rich.console import Console
from rich.table import Table

STEPS = ("price", "quote", "submit", "confirm")

# LogRecord attributes copied into the JSON line when present
CONTEXT_FIELDS = ("owner", "session_id", "wallet_index", "tx_ref")


@dataclass
class StepTiming:
    """One timed call to an external service during a trade."""
    step: str
    owner: Optional[str] = None
    wallet_index: Optional[int] = None
    tx_ref: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    elapsed_ms: float = 0.0
    ok: bool = False
    error: Optional[str] = None

    def as_record(self) -> Dict[str, Any]:
        record = {
            'step': self.step,
            'started_at': datetime.fromtimestamp(self.started_at, tz=timezone.utc).isoformat(),
            'elapsed_ms': round(self.elapsed_ms, 1),
            'ok': self.ok,
        }
        for name in ('owner', 'wallet_index', 'tx_ref', 'error'):
            value = getattr(self, name)
            if value is not None:
                record[name] = value
        return record


@dataclass
class StepStats:
    calls: int = 0
    failures: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.calls if self.calls else 0.0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.calls * 100 if self.calls else 0.0


class TradeMetrics:
    """
    Rolling record of step timings plus running totals per step.

    Totals cover every call since start (or ``reset``); only the newest
    ``history`` timings are kept individually.
    """

    def __init__(self, history: int = 5000):
        self.timings: Deque[StepTiming] = deque(maxlen=history)
        self._stats: Dict[str, StepStats] = {}
        self._failures_by_owner: Dict[str, int] = {}
        self._lock = Lock()

    def record(self, timing: StepTiming):
        with self._lock:
            self.timings.append(timing)
            stats = self._stats.setdefault(timing.step, StepStats())
            stats.calls += 1
            stats.total_ms += timing.elapsed_ms
            stats.slowest_ms = max(stats.slowest_ms, timing.elapsed_ms)
            if not timing.ok:
                stats.failures += 1
                if timing.owner:
                    self._failures_by_owner[timing.owner] = self._failures_by_owner.get(timing.owner, 0) + 1

    @asynccontextmanager
    async def track(self, step: str, owner: Optional[str] = None,
                    wallet_index: Optional[int] = None, tx_ref: Optional[str] = None):
        """
        Time the awaited block as one ``step``.

        The yielded StepTiming can be annotated inside the block (e.g. with
        the tx hash once submit returns). Exceptions are recorded, then re-raised.
        """
        timing = StepTiming(step=step, owner=owner, wallet_index=wallet_index, tx_ref=tx_ref)
        began = time.perf_counter()
        try:
            yield timing
            timing.ok = True
        except BaseException as e:
            timing.error = str(e) or type(e).__name__
            raise
        finally:
            timing.elapsed_ms = (time.perf_counter() - began) * 1000
            self.record(timing)

    def stats(self) -> Dict[str, StepStats]:
        """Copy of the per-step totals, in trade order."""
        with self._lock:
            ordered = [s for s in STEPS if s in self._stats]
            ordered += sorted(s for s in self._stats if s not in STEPS)
            return {step: StepStats(**vars(self._stats[step])) for step in ordered}

    def failures_for(self, owner: str) -> int:
        with self._lock:
            return self._failures_by_owner.get(owner, 0)

    def recent(self, limit: int = 20, owner: Optional[str] = None) -> List[StepTiming]:
        with self._lock:
            timings = [t for t in self.timings if owner is None or t.owner == owner]
        return timings[-limit:]

    def reset(self):
        with self._lock:
            self.timings.clear()
            self._stats.clear()
            self._failures_by_owner.clear()

    def export(self, path: str):
        """Write totals and retained timings as JSON."""
        totals = {
            step: {
                'calls': s.calls,
                'failures': s.failures,
                'avg_ms': round(s.avg_ms, 1),
                'slowest_ms': round(s.slowest_ms, 1),
            }
            for step, s in self.stats().items()
        }
        with self._lock:
            timings = [t.as_record() for t in self.timings]
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps({'steps': totals, 'timings': timings}, indent=2))


class JsonLogFormatter(logging.Formatter):
    """One JSON object per log line, with any trade context attached."""

    def format(self, record: logging.LogRecord) -> str:
        line = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                line[name] = value
        if record.exc_info:
            line['exc'] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def step_table(metrics: TradeMetrics, console: Optional[Console] = None) -> Table:
    """Per-step timing summary; printed when a console is given."""
    table = Table(title="Trade Steps", box=box.SIMPLE_HEAVY)
    table.add_column("Step", style="cyan")
    table.add_column("Calls", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Fail %", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Slowest ms", justify="right")

    for step, s in metrics.stats().items():
        table.add_row(
            step, str(s.calls), str(s.failures), f"{s.failure_rate:.0f}%",
            f"{s.avg_ms:.0f}", f"{s.slowest_ms:.0f}",
        )

    if console is not None:
        console.print(table)
    return table
