import unittest

from tombola.blockchain import LedgerSimulator, PurchaseEvent
from tombola.draw.tickets import fetch_tickets, group_ticket_indexes
from tombola.errors import LedgerError, TicketOrderError

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "c" * 40


class FetchTicketsTests(unittest.TestCase):
    def test_expands_purchases_in_event_order(self):
        chain = LedgerSimulator()
        chain.buy(ALICE, 2)
        chain.buy_batch([(BOB, 1), (CAROL, 3)])
        chain.buy(ALICE, 1)

        tickets = fetch_tickets(chain, 1)
        self.assertEqual(
            tickets, [ALICE, ALICE, BOB, CAROL, CAROL, CAROL, ALICE]
        )

    def test_filters_other_rounds(self):
        chain = LedgerSimulator(round_id=2)
        chain.buy(ALICE, 1, round_id=1)
        chain.buy(BOB, 2)
        self.assertEqual(fetch_tickets(chain, 2), [BOB, BOB])
        self.assertEqual(fetch_tickets(chain, 1), [ALICE])

    def test_page_boundaries_neither_drop_nor_reorder(self):
        chain = LedgerSimulator()
        buyers = [ALICE, BOB, CAROL, BOB, ALICE, CAROL, CAROL]
        for buyer in buyers:
            chain.buy(buyer, 1)

        whole = fetch_tickets(chain, 1, batch_size=1_000)
        paged = fetch_tickets(chain, 1, batch_size=2)
        self.assertEqual(whole, buyers)
        self.assertEqual(paged, buyers)

        # Block windows are contiguous and cover [0, head].
        windows = chain.log_queries[1:]
        self.assertEqual(windows[0][0], 0)
        for previous, current in zip(windows, windows[1:]):
            self.assertEqual(current[0], previous[1] + 1)
        self.assertGreaterEqual(windows[-1][1], chain.head - 1)

    def test_page_failure_aborts_scan(self):
        chain = LedgerSimulator()
        chain.buy(ALICE, 1)
        chain.fail_next("get_purchase_events")
        with self.assertRaises(LedgerError):
            fetch_tickets(chain, 1)

    def test_out_of_order_events_are_flagged(self):
        class ShuffledLedger:
            def get_block_number(self):
                return 10

            def get_purchase_events(self, from_block, to_block):
                return [
                    PurchaseEvent(ALICE, 1, 1, block_number=5, log_index=0),
                    PurchaseEvent(BOB, 1, 1, block_number=4, log_index=0),
                ]

        with self.assertRaises(TicketOrderError):
            fetch_tickets(ShuffledLedger(), 1)

    def test_empty_round(self):
        chain = LedgerSimulator(initial_blocks=5)
        self.assertEqual(fetch_tickets(chain, 1), [])

    def test_batch_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            fetch_tickets(LedgerSimulator(), 1, batch_size=0)


class GroupTicketIndexesTests(unittest.TestCase):
    def test_groups_in_first_appearance_order(self):
        grouped = group_ticket_indexes([BOB, ALICE, BOB, CAROL, ALICE])
        self.assertEqual(list(grouped), [BOB, ALICE, CAROL])
        self.assertEqual(grouped[BOB], [0, 2])
        self.assertEqual(grouped[ALICE], [1, 4])
        self.assertEqual(grouped[CAROL], [3])


if __name__ == "__main__":
    unittest.main()
