import unittest

from tombola.errors import InsufficientAllowanceError, TransactionError, format_units


class FormatUnitsTests(unittest.TestCase):
    def test_fraction_is_trimmed(self):
        self.assertEqual(format_units(1_500, 3), "1.5")
        self.assertEqual(format_units(1, 6), "0.000001")

    def test_whole_amounts(self):
        self.assertEqual(format_units(5 * 10**18, 18), "5")
        self.assertEqual(format_units(1_000, 0), "1000")
        self.assertEqual(format_units(0, 18), "0")

    def test_full_uint256_is_exact(self):
        value = 2**256 - 1
        digits = str(value)
        self.assertEqual(format_units(value, 18), f"{digits[:-18]}.{digits[-18:]}")


class ErrorMessageTests(unittest.TestCase):
    def test_allowance_message_uses_token_units(self):
        exc = InsufficientAllowanceError(allowance=10**18, balance=25 * 10**17)
        self.assertIn("1 tokens", str(exc))
        self.assertIn("2.5", str(exc))

    def test_transaction_error_defaults(self):
        exc = TransactionError("not mined", tx_hash="0x" + "12" * 32)
        self.assertEqual(exc.tx_hash, "0x" + "12" * 32)
        self.assertFalse(exc.reverted)
