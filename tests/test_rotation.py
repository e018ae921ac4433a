"""
Tests for the rotation policy.

Run with: python -m pytest tests/test_rotation.py -v
"""

import unittest

from bump_bot.models import Failed, InsufficientBalance, RotationAction, StopReason, Success
from bump_bot.rotation import DEFAULT_MAX_FAILURES, RotationDecision, next_rotation

SUCCESS = Success(tx_ref="0xabc", spent_amount=100)
SKIP = InsufficientBalance(balance=0, required=100)
FAIL = Failed(reason="quote failed")


class TestRotationAdvance(unittest.TestCase):
    """Cursor movement."""

    def test_success_advances_and_resets(self):
        decision = next_rotation(2, 5, SUCCESS, consecutive_failures=3, consecutive_skips=2)
        self.assertEqual(decision.next_index, 3)
        self.assertEqual(decision.action, RotationAction.CONTINUE)
        self.assertEqual(decision.consecutive_failures, 0)
        self.assertEqual(decision.consecutive_skips, 0)

    def test_wraps_around(self):
        self.assertEqual(next_rotation(4, 5, SUCCESS).next_index, 0)
        self.assertEqual(next_rotation(4, 5, SKIP).next_index, 0)
        self.assertEqual(next_rotation(4, 5, FAIL).next_index, 0)

    def test_single_wallet_stays_on_zero(self):
        decision = next_rotation(0, 1, SUCCESS)
        self.assertEqual(decision.next_index, 0)
        self.assertFalse(decision.should_stop)

    def test_skip_counts_and_resets_failures(self):
        decision = next_rotation(1, 5, SKIP, consecutive_failures=2, consecutive_skips=1)
        self.assertEqual(decision.next_index, 2)
        self.assertEqual(decision.consecutive_skips, 2)
        self.assertEqual(decision.consecutive_failures, 0)
        self.assertFalse(decision.should_stop)

    def test_failure_counts_and_resets_skips(self):
        decision = next_rotation(1, 5, FAIL, consecutive_failures=1, consecutive_skips=3)
        self.assertEqual(decision.next_index, 2)
        self.assertEqual(decision.consecutive_failures, 2)
        self.assertEqual(decision.consecutive_skips, 0)


class TestRotationStop(unittest.TestCase):
    """Stop conditions."""

    def test_stops_after_every_wallet_skipped(self):
        index, failures, skips = 0, 0, 0
        decisions = []
        for _ in range(5):
            decision = next_rotation(index, 5, SKIP, failures, skips)
            decisions.append(decision)
            index, failures, skips = decision.next_index, decision.consecutive_failures, decision.consecutive_skips
            if decision.should_stop:
                break

        self.assertEqual(len(decisions), 5)
        self.assertTrue(all(not d.should_stop for d in decisions[:4]))
        self.assertEqual(decisions[-1].action, RotationAction.STOP_ALL_DEPLETED)
        self.assertEqual(decisions[-1].action.stop_reason, StopReason.ALL_DEPLETED)

    def test_stop_keeps_current_index(self):
        decision = next_rotation(4, 5, SKIP, consecutive_skips=4)
        self.assertTrue(decision.should_stop)
        self.assertEqual(decision.next_index, 4)

    def test_success_between_skips_restarts_count(self):
        decision = next_rotation(2, 5, SKIP, consecutive_skips=3)
        decision = next_rotation(decision.next_index, 5, SUCCESS, 0, decision.consecutive_skips)
        decision = next_rotation(decision.next_index, 5, SKIP, 0, decision.consecutive_skips)
        self.assertEqual(decision.consecutive_skips, 1)
        self.assertFalse(decision.should_stop)

    def test_stops_at_failure_threshold(self):
        decision = next_rotation(0, 5, FAIL, consecutive_failures=DEFAULT_MAX_FAILURES - 1)
        self.assertEqual(decision.action, RotationAction.STOP_TOO_MANY_FAILURES)
        self.assertEqual(decision.action.stop_reason, StopReason.TOO_MANY_FAILURES)
        self.assertEqual(decision.next_index, 0)

    def test_four_failures_then_success_resets(self):
        index, failures = 0, 0
        for _ in range(4):
            decision = next_rotation(index, 5, FAIL, failures, 0)
            self.assertFalse(decision.should_stop)
            index, failures = decision.next_index, decision.consecutive_failures
        self.assertEqual(failures, 4)

        decision = next_rotation(index, 5, SUCCESS, failures, 0)
        self.assertEqual(decision.consecutive_failures, 0)
        decision = next_rotation(decision.next_index, 5, FAIL, decision.consecutive_failures, 0)
        self.assertEqual(decision.consecutive_failures, 1)
        self.assertFalse(decision.should_stop)

    def test_custom_failure_threshold(self):
        decision = next_rotation(0, 5, FAIL, consecutive_failures=1, max_failures=2)
        self.assertTrue(decision.should_stop)

    def test_skips_do_not_count_as_failures(self):
        decision = next_rotation(0, 5, SKIP, consecutive_failures=4)
        self.assertFalse(decision.should_stop)
        self.assertEqual(decision.consecutive_failures, 0)


class TestRotationInput(unittest.TestCase):

    def test_rejects_bad_wallet_count(self):
        with self.assertRaises(ValueError):
            next_rotation(0, 0, SUCCESS)

    def test_rejects_out_of_range_index(self):
        with self.assertRaises(ValueError):
            next_rotation(5, 5, SUCCESS)
        with self.assertRaises(ValueError):
            next_rotation(-1, 5, SUCCESS)

    def test_rejects_unknown_outcome(self):
        with self.assertRaises(TypeError):
            next_rotation(0, 5, "ok")

    def test_decision_is_immutable(self):
        decision = next_rotation(0, 5, SUCCESS)
        self.assertIsInstance(decision, RotationDecision)
        with self.assertRaises(Exception):
            decision.next_index = 3


if __name__ == "__main__":
    unittest.main()
