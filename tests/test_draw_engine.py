import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from tombola.blockchain import LedgerSimulator
from tombola.blockchain.simulator import DEFAULT_GENESIS_TIMESTAMP as GENESIS
from tombola.config import DrawConfig
from tombola.db.utils import as_utc
from tombola.draw.engine import (
    DrawEngine,
    DrawOutcome,
    OutboxWriteError,
    PayoutNotRecordedError,
)
from tombola.errors import (
    InsufficientAllowanceError,
    LedgerError,
    ProtocolViolationError,
    TransactionError,
)
from tombola.models import Base, DrawRecord, DrawStatus, PendingDrawRecord
from tombola.workflows import mark_reconciled

A, B, C, D, E = ("0x" + c * 40 for c in "abcde")

# Reference time of every draw in these tests, block 10 of the simulated chain.
DRAW_TIME = datetime.fromtimestamp(GENESIS + 20, tz=timezone.utc)
SEED_INDEX_3 = (8).to_bytes(32, "big")


def _chain(buyers=(A, B, C, D, E), *, balance=1_000, allowance=None, **kwargs):
    chain = LedgerSimulator(
        bounty_balance=balance,
        allowance=balance if allowance is None else allowance,
        **kwargs,
    )
    for buyer in buyers:
        chain.buy(buyer, 1)
    # Enough blocks after DRAW_TIME for five entropy blocks three deep.
    chain.mine(20)
    return chain


def _transfers(chain):
    return [call for call in chain.submitted if call[0] == "transferBountyToWinner"]


class DrawEngineTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(
            bind=self.engine, future=True, expire_on_commit=False
        )
        self.config = DrawConfig(poll_interval=0, entropy_timeout=5.0)

    def tearDown(self):
        self.engine.dispose()

    def run_engine(self, chain):
        return DrawEngine(self.Session, chain, self.config, clock=lambda: DRAW_TIME).run()

    def status(self):
        with self.Session() as session:
            return DrawStatus.get(session)

    def count(self, model):
        with self.Session() as session:
            return session.scalar(select(func.count()).select_from(model))


class CompletedDrawTests(DrawEngineTestCase):
    def test_seed_selects_fourth_ticket(self):
        chain = _chain()
        with patch("tombola.draw.selection.combine_seed", return_value=SEED_INDEX_3):
            result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.COMPLETED)
        self.assertEqual(result.round_id, 1)
        self.assertEqual(result.record.winner, D)
        self.assertEqual(result.record.winner_index, 3)
        self.assertEqual(chain.submitted, [("transferBountyToWinner", D), ("startNewRound",)])
        self.assertEqual(chain.round_id, 2)

        with self.Session() as session:
            record = session.get(DrawRecord, 1)
            self.assertEqual(record.winner, D)
            self.assertEqual(record.prize_amount, "1000")
            self.assertEqual(record.burn_amount, "0")
            self.assertEqual(record.total_tickets, 5)
            self.assertEqual(record.participant_count, 5)
            self.assertTrue(record.new_round_started)
            self.assertEqual(record.new_round_tx_hash, result.new_round_tx_hash)
            self.assertEqual(as_utc(record.draw_date_utc), DRAW_TIME)
            self.assertEqual(record.report["block_numbers"], [10, 11, 12, 13, 14])
            self.assertEqual(record.report["seed_modulo"], 3)
        self.assertEqual(self.count(PendingDrawRecord), 0)

        status = self.status()
        self.assertEqual(status.status, "idle")
        self.assertIsNone(status.last_error)
        self.assertEqual(as_utc(status.last_draw_date), DRAW_TIME)

    def test_record_is_reproducible_from_report(self):
        from tombola.draw.selection import verify_selection

        chain = _chain(buyers=(A, B, B, C, D, E))
        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.COMPLETED)

        report = result.record.report
        tickets = [None] * report["total_tickets"]
        for address, indexes in report["participants"].items():
            for index in indexes:
                tickets[index] = address
        self.assertEqual(tickets, [A, B, B, C, D, E])
        self.assertTrue(
            verify_selection(tickets, report["block_hashes"], report["winner_index"])
        )
        self.assertEqual(tickets[report["winner_index"]], result.record.winner)

    def test_capped_prize_is_recorded_from_event(self):
        chain = _chain(balance=150, max_bounty=100)
        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.COMPLETED)
        self.assertEqual(result.record.prize_amount, "100")
        self.assertEqual(result.record.burn_amount, "50")
        self.assertEqual(result.record.report["max_bounty"], "100")


class SkippedDrawTests(DrawEngineTestCase):
    def test_below_threshold_keeps_round_open(self):
        chain = _chain(buyers=(A, B, C, D))
        result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.BELOW_THRESHOLD)
        self.assertEqual(chain.submitted, [])
        self.assertEqual(chain.round_id, 1)
        self.assertEqual(self.count(DrawRecord), 0)
        status = self.status()
        self.assertEqual(status.status, "idle")
        self.assertIsNone(status.last_draw_date)

    def test_empty_bounty_skips_draw(self):
        chain = _chain(balance=0)
        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.EMPTY_BOUNTY)
        self.assertEqual(chain.submitted, [])
        self.assertEqual(self.status().status, "idle")

    def test_no_tickets_advances_round_without_payout(self):
        chain = _chain(buyers=())
        chain.override_round_stats(total_participants=5, total_tickets=5)
        result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.NO_TICKETS)
        self.assertEqual(chain.submitted, [("startNewRound",)])
        self.assertEqual(chain.round_id, 2)
        self.assertIsNotNone(result.new_round_tx_hash)
        self.assertEqual(self.count(DrawRecord), 0)
        status = self.status()
        self.assertEqual(status.status, "idle")
        self.assertIsNone(status.last_draw_date)

    def test_trigger_while_running_is_ignored(self):
        chain = _chain()
        with self.Session.begin() as session:
            self.assertTrue(DrawStatus.claim(session))

        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.ALREADY_RUNNING)
        self.assertEqual(chain.submitted, [])
        self.assertEqual(self.status().status, "running")


class FailedDrawTests(DrawEngineTestCase):
    def test_insufficient_allowance_fails_before_payout(self):
        chain = _chain(balance=150, allowance=100)
        result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(result.error, InsufficientAllowanceError)
        self.assertEqual(chain.submitted, [])
        self.assertEqual(chain.round_id, 1)
        status = self.status()
        self.assertEqual(status.status, "error")
        self.assertIn("allowance", status.last_error)
        self.assertIsNone(status.last_draw_date)

    def test_missing_bounty_event_fails_the_draw(self):
        chain = _chain(emit_bounty_event=False)
        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(result.error, ProtocolViolationError)
        self.assertEqual(chain.round_id, 1)
        self.assertEqual(self.count(DrawRecord), 0)
        self.assertEqual(self.status().status, "error")

        # The mined transfer stays queued, so a later run does not pay again.
        chain.balance = chain.allowance = 500
        again = self.run_engine(chain)
        self.assertEqual(again.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(again.error, ProtocolViolationError)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertEqual(self.count(PendingDrawRecord), 1)

    def test_scan_failure_fails_without_payout(self):
        chain = _chain()
        chain.fail_next("get_purchase_events")
        result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(result.error, LedgerError)
        self.assertEqual(chain.submitted, [])
        status = self.status()
        self.assertEqual(status.status, "error")
        self.assertTrue(status.last_error.startswith("tickets:"))

    def test_next_run_after_error_can_start(self):
        chain = _chain()
        chain.fail_next("current_round_id")
        self.assertEqual(self.run_engine(chain).outcome, DrawOutcome.FAILED)
        self.assertEqual(self.run_engine(chain).outcome, DrawOutcome.COMPLETED)
        self.assertEqual(self.status().status, "idle")


class PaidRoundRecoveryTests(DrawEngineTestCase):
    def test_failed_round_advance_is_resumed_without_second_payout(self):
        chain = _chain()
        chain.fail_next("start_new_round")

        first = self.run_engine(chain)
        self.assertEqual(first.outcome, DrawOutcome.FAILED)
        self.assertEqual(chain.round_id, 1)
        with self.Session() as session:
            pending = session.get(PendingDrawRecord, 1)
            self.assertIsNotNone(pending)
            self.assertFalse(pending.new_round_started)
        self.assertEqual(self.status().status, "error")

        second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.RESUMED)
        self.assertEqual(chain.round_id, 2)
        transfers = _transfers(chain)
        self.assertEqual(len(transfers), 1)
        self.assertEqual(second.record.winner, transfers[0][1])
        self.assertEqual(self.count(PendingDrawRecord), 0)
        self.assertEqual(self.count(DrawRecord), 1)
        self.assertEqual(as_utc(self.status().last_draw_date), DRAW_TIME)

    def test_record_write_failure_is_inconsistent_then_drained(self):
        chain = _chain()
        with patch(
            "tombola.draw.engine.drain_one", side_effect=SQLAlchemyError("disk full")
        ):
            with self.assertLogs("tombola.draw.engine", level="CRITICAL") as logs:
                result = self.run_engine(chain)

        self.assertEqual(result.outcome, DrawOutcome.INCONSISTENT)
        self.assertIsInstance(result.error, PayoutNotRecordedError)
        self.assertIn("INCONSISTENCY", logs.output[0])
        self.assertIn("bounty_tx_hash", logs.output[0])
        self.assertEqual(self.count(DrawRecord), 0)
        self.assertEqual(self.count(PendingDrawRecord), 1)
        self.assertEqual(self.status().status, "error")
        self.assertEqual(chain.round_id, 2)
        self.assertEqual(self.status().unreconciled_round_id, 1)

        second = self.run_engine(chain)
        # The wallet was emptied by the first payout.
        self.assertEqual(second.outcome, DrawOutcome.EMPTY_BOUNTY)
        self.assertEqual(self.count(PendingDrawRecord), 0)
        with self.Session() as session:
            record = session.get(DrawRecord, 1)
            self.assertIsNotNone(record)
            self.assertEqual(record.new_round_tx_hash, result.error.context["new_round_tx_hash"])
        self.assertIsNone(self.status().unreconciled_round_id)
        transfers = _transfers(chain)
        self.assertEqual(len(transfers), 1)

    def test_recorded_current_round_is_protocol_violation(self):
        chain = _chain()
        self.assertEqual(self.run_engine(chain).outcome, DrawOutcome.COMPLETED)
        # Pretend the contract rolled back to the drawn round.
        chain._round.round_id = 1
        chain.balance = chain.allowance = 500

        result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(result.error, ProtocolViolationError)
        transfers = _transfers(chain)
        self.assertEqual(len(transfers), 1)


class DoublePayoutTests(DrawEngineTestCase):
    def pending(self, round_id=1):
        with self.Session() as session:
            return session.get(PendingDrawRecord, round_id)

    def test_outbox_write_failure_sends_nothing(self):
        chain = _chain()
        with patch(
            "tombola.draw.engine.write_pending", side_effect=SQLAlchemyError("database is locked")
        ):
            first = self.run_engine(chain)

        self.assertEqual(first.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(first.error, OutboxWriteError)
        self.assertEqual(chain.submitted, [])
        self.assertEqual(chain.balance, 1_000)
        self.assertIsNone(self.pending())

        second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.COMPLETED)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertEqual(self.count(DrawRecord), 1)

    def test_mined_transfer_with_failed_confirmation_is_resumed(self):
        chain = _chain()
        chain.fail_next("confirm_transfer", TransactionError("confirmation wait timed out"))

        first = self.run_engine(chain)
        self.assertEqual(first.outcome, DrawOutcome.FAILED)
        self.assertIsInstance(first.error, TransactionError)
        self.assertEqual(chain.round_id, 1)
        pending = self.pending()
        self.assertIsNotNone(pending)
        self.assertFalse(pending.payout_confirmed)

        # Wallet refilled before the next trigger; the round must not be paid twice.
        chain.balance = chain.allowance = 1_000
        second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.RESUMED)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertEqual(chain.round_id, 2)
        self.assertEqual(chain.balance, 1_000)
        with self.Session() as session:
            record = session.get(DrawRecord, 1)
            self.assertEqual(record.bounty_tx_hash, pending.bounty_tx_hash)
            self.assertEqual(record.prize_amount, "1000")
        self.assertIsNone(self.pending())

    def test_transfer_that_never_reached_the_node_is_discarded(self):
        chain = _chain()
        chain.fail_next("send_transaction")

        first = self.run_engine(chain)
        self.assertEqual(first.outcome, DrawOutcome.FAILED)
        self.assertEqual(chain.submitted, [])
        self.assertFalse(self.pending().payout_confirmed)

        with self.assertLogs("tombola.draw.outbox", level="WARNING"):
            second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.COMPLETED)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertEqual(self.count(DrawRecord), 1)

    def test_unknown_confirmation_state_keeps_the_row(self):
        chain = _chain()
        chain.fail_next("confirm_transfer", TransactionError("confirmation wait timed out"))
        self.run_engine(chain)
        chain.fail_next("wait_for_transaction", TransactionError("node unreachable"))
        chain.fail_next("transaction_known", LedgerError("node unreachable"))
        chain.balance = chain.allowance = 1_000

        second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.FAILED)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertIsNotNone(self.pending())

    def test_transfer_without_queued_payout_blocks_payouts(self):
        chain = _chain()
        # Paid outside this engine, e.g. by a run whose database was lost.
        chain.transfer_bounty_to_winner(A, confirmations=1)

        with self.assertLogs("tombola.draw.engine", level="CRITICAL"):
            first = self.run_engine(chain)
        self.assertEqual(first.outcome, DrawOutcome.INCONSISTENT)
        self.assertEqual(first.round_id, 1)
        self.assertIn("transfers", first.error.context)
        self.assertEqual(self.status().unreconciled_round_id, 1)

        chain.balance = chain.allowance = 500
        with self.assertLogs("tombola.draw.engine", level="CRITICAL"):
            second = self.run_engine(chain)
        self.assertEqual(second.outcome, DrawOutcome.INCONSISTENT)
        self.assertEqual(len(_transfers(chain)), 1)
        self.assertEqual(chain.round_id, 1)

        with self.Session.begin() as session:
            self.assertTrue(mark_reconciled(session, 1))
        chain.start_new_round()
        for buyer in (A, B, C, D, E):
            chain.buy(buyer, 1)

        third = self.run_engine(chain)
        self.assertEqual(third.outcome, DrawOutcome.COMPLETED)
        self.assertEqual(third.round_id, 2)
        self.assertEqual(len(_transfers(chain)), 2)
        self.assertIsNone(self.status().unreconciled_round_id)

    def test_unreconciled_earlier_round_blocks_later_rounds(self):
        chain = _chain()
        with self.Session.begin() as session:
            DrawStatus.ensure(session).unreconciled_round_id = 0

        with self.assertLogs("tombola.draw.engine", level="CRITICAL"):
            result = self.run_engine(chain)
        self.assertEqual(result.outcome, DrawOutcome.INCONSISTENT)
        self.assertEqual(result.round_id, 0)
        self.assertEqual(chain.submitted, [])


if __name__ == "__main__":
    unittest.main()
