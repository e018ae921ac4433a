"""
Tests for formatting, validation and log sanitization helpers.

Run with: python -m pytest tests/test_utils.py -v
"""

import logging
import unittest

from bump_bot.activity import bot_prefix
from bump_bot.models import MAIN_SCOPE, parse_scope, worker_scope
from bump_bot.utils import (
    InsufficientTotalCreditError,
    SecureLogger,
    format_address,
    format_duration,
    format_tx_hash,
    format_units,
    format_wei,
    redact,
    sanitize_error_message,
    validate_address,
)


class TestUtils(unittest.TestCase):
    """Test utility functions."""

    def test_format_wei(self):
        """Test wei formatting."""
        self.assertEqual(format_wei(0), "0")
        self.assertEqual(format_wei(10**18), "1.0000")
        self.assertEqual(format_wei(5 * 10**17), "0.500000")

    def test_format_units(self):
        self.assertEqual(format_units(10**9), "1.0000 WETH")
        self.assertEqual(format_units(0), "0 WETH")

    def test_format_duration(self):
        """Test duration formatting."""
        self.assertEqual(format_duration(30), "30s")
        self.assertEqual(format_duration(90), "1m 30s")
        self.assertEqual(format_duration(600), "10m")
        self.assertEqual(format_duration(3660), "1h 1m")

    def test_format_address(self):
        """Test address formatting."""
        addr = "0x1234567890abcdef1234567890abcdef12345678"
        self.assertEqual(format_address(addr), "0x123456...345678")

    def test_format_tx_hash(self):
        tx = "0x" + "ab" * 32
        self.assertEqual(format_tx_hash(tx), "0xababab...abababab")

    def test_validate_address(self):
        """Test address validation."""
        self.assertTrue(validate_address("0x4200000000000000000000000000000000000006"))
        self.assertTrue(validate_address("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"))
        self.assertFalse(validate_address("0x1234"))
        self.assertFalse(validate_address(""))
        self.assertFalse(validate_address(None))

    def test_short_values_not_shortened(self):
        self.assertEqual(format_address("0x1234"), "0x1234")
        self.assertEqual(format_duration(0), "0s")
        self.assertEqual(format_duration(3600), "1h")


class TestSanitization(unittest.TestCase):

    def test_redacts_private_keys(self):
        message = sanitize_error_message("signing with 0x" + "a" * 64 + " failed")
        self.assertNotIn("a" * 64, message)
        self.assertIn("[PRIVATE_KEY]", message)

    def test_redacts_urls(self):
        message = sanitize_error_message("GET https://base-mainnet.example/v2/abc123 timed out")
        self.assertNotIn("abc123", message)

    def test_accepts_exceptions(self):
        self.assertEqual(sanitize_error_message(TimeoutError()), "TimeoutError")
        self.assertEqual(sanitize_error_message(ValueError("bad")), "bad")

    def test_redacts_passwords_and_api_keys(self):
        text = redact("password: hunter22 and 0x-api-key=abc123xyz")
        self.assertNotIn("hunter22", text)
        self.assertNotIn("abc123xyz", text)
        self.assertIn("password=[REDACTED]", text)

    def test_truncates(self):
        self.assertEqual(len(sanitize_error_message("x" * 2000)), 500)

    def test_secure_logger_redacts(self):
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record.getMessage())

        base = logging.getLogger("bump_bot.test_secure_logger")
        base.addHandler(Capture())
        base.setLevel(logging.INFO)
        secure = SecureLogger(base)

        secure.info("key 0x" + "b" * 64)
        secure.info("api_key=supersecret")

        self.assertNotIn("b" * 64, records[0])
        self.assertNotIn("supersecret", records[1])


class TestScopes(unittest.TestCase):

    def test_scope_names(self):
        self.assertEqual(worker_scope(0), "worker:0")
        self.assertIsNone(parse_scope(MAIN_SCOPE))
        self.assertEqual(parse_scope("worker:4"), 4)

    def test_rejects_unknown_scope(self):
        with self.assertRaises(ValueError):
            parse_scope("worker:x")
        with self.assertRaises(ValueError):
            worker_scope(-1)

    def test_bot_prefix(self):
        self.assertEqual(bot_prefix(0), "[Bot #1]")
        self.assertEqual(bot_prefix(None), "[System]")

    def test_insufficient_credit_error_carries_amounts(self):
        error = InsufficientTotalCreditError(available=5, required=10)
        self.assertEqual(error.available, 5)
        self.assertEqual(error.required, 10)


if __name__ == "__main__":
    unittest.main()
