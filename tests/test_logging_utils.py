"""Tests for trade step metrics and JSON log lines."""

import json
import logging

import pytest

from bump_bot.logging_utils import JsonLogFormatter, StepTiming, TradeMetrics, step_table


class TestTradeMetrics:

    async def test_track_records_success(self):
        metrics = TradeMetrics()
        async with metrics.track("submit", owner="alice", wallet_index=2) as timing:
            timing.tx_ref = "0xabc"

        stats = metrics.stats()["submit"]
        assert stats.calls == 1
        assert stats.failures == 0
        recorded = metrics.recent()[0]
        assert recorded.ok
        assert recorded.wallet_index == 2
        assert recorded.tx_ref == "0xabc"
        assert recorded.elapsed_ms >= 0

    async def test_track_records_failure_and_reraises(self):
        metrics = TradeMetrics()
        with pytest.raises(RuntimeError):
            async with metrics.track("submit", owner="alice"):
                raise RuntimeError("nonce too low")

        stats = metrics.stats()["submit"]
        assert stats.failures == 1
        assert stats.failure_rate == 100
        assert metrics.recent()[0].error == "nonce too low"
        assert metrics.failures_for("alice") == 1
        assert metrics.failures_for("bob") == 0

    def test_history_is_bounded_but_totals_are_not(self):
        metrics = TradeMetrics(history=3)
        for _ in range(5):
            metrics.record(StepTiming(step="price", ok=True, elapsed_ms=2.0))
        assert len(metrics.timings) == 3
        assert metrics.stats()["price"].calls == 5
        assert metrics.stats()["price"].avg_ms == 2.0

    def test_stats_follow_trade_order(self):
        metrics = TradeMetrics()
        for step in ("confirm", "price", "quote"):
            metrics.record(StepTiming(step=step, ok=True))
        assert list(metrics.stats()) == ["price", "quote", "confirm"]

    def test_recent_filters_by_owner(self):
        metrics = TradeMetrics()
        metrics.record(StepTiming(step="quote", owner="alice", ok=True))
        metrics.record(StepTiming(step="quote", owner="bob", ok=True))
        assert [t.owner for t in metrics.recent(owner="bob")] == ["bob"]

    async def test_export(self, tmp_path):
        metrics = TradeMetrics()
        async with metrics.track("confirm", tx_ref="0xdef"):
            pass
        path = tmp_path / "metrics" / "run.json"
        metrics.export(str(path))

        data = json.loads(path.read_text())
        assert data["steps"]["confirm"]["calls"] == 1
        assert data["timings"][0]["tx_ref"] == "0xdef"
        assert "owner" not in data["timings"][0]

    def test_reset(self):
        metrics = TradeMetrics()
        metrics.record(StepTiming(step="price", owner="alice"))
        metrics.reset()
        assert metrics.stats() == {}
        assert metrics.failures_for("alice") == 0

    async def test_step_table(self):
        metrics = TradeMetrics()
        async with metrics.track("price"):
            pass
        assert step_table(metrics).row_count == 1


class TestJsonLogFormatter:

    def test_includes_trade_context(self):
        record = logging.LogRecord("bump_bot", logging.INFO, __file__, 10, "trade %s", ("ok",), None)
        record.owner = "alice"
        record.wallet_index = 3

        line = json.loads(JsonLogFormatter().format(record))
        assert line["msg"] == "trade ok"
        assert line["level"] == "INFO"
        assert line["owner"] == "alice"
        assert line["wallet_index"] == 3
        assert "session_id" not in line
