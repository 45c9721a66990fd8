import unittest
from datetime import timedelta

from tombola.config import DEFAULT_RPC_URL, DrawConfig


class DrawConfigTests(unittest.TestCase):
    def test_from_env_requires_private_key(self):
        with self.assertRaises(ValueError):
            DrawConfig.from_env({})

    def test_from_env_without_signer(self):
        config = DrawConfig.from_env({}, require_signer=False)
        self.assertIsNone(config.private_key)
        self.assertEqual(config.rpc_url, DEFAULT_RPC_URL)
        self.assertEqual(config.min_participants, 5)
        self.assertEqual(config.entropy_blocks, 5)
        self.assertEqual(config.confirmations, 3)
        self.assertIsNone(config.entropy_timeout)
        self.assertEqual(config.stale_after, timedelta(hours=24))

    def test_from_env_reads_overrides(self):
        config = DrawConfig.from_env(
            {
                "PRIVATE_KEY": "0x" + "11" * 32,
                "MIN_PARTICIPANTS": "3",
                "LOG_BATCH_SIZE": "1000",
                "POLL_INTERVAL": "2.5",
                "ENTROPY_TIMEOUT": "60",
                "STALE_AFTER_HOURS": "24",
                "SCHEDULE_DAY_OF_WEEK": "fri",
            }
        )
        self.assertEqual(config.min_participants, 3)
        self.assertEqual(config.log_batch_size, 1000)
        self.assertEqual(config.poll_interval, 2.5)
        self.assertEqual(config.entropy_timeout, 60.0)
        self.assertEqual(config.stale_after, timedelta(hours=24))
        self.assertEqual(config.schedule_day_of_week, "fri")

    def test_invalid_number_names_variable(self):
        with self.assertRaises(ValueError) as ctx:
            DrawConfig.from_env({"CONFIRMATIONS": "three"}, require_signer=False)
        self.assertIn("CONFIRMATIONS", str(ctx.exception))

    def test_rejects_non_positive_batch_size(self):
        with self.assertRaises(ValueError):
            DrawConfig(log_batch_size=0)


if __name__ == "__main__":
    unittest.main()
