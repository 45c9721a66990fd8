import unittest
from unittest.mock import patch

from tombola.draw.selection import combine_seed, select_winner, verify_selection

A, B, C, D, E = ("0x" + c * 40 for c in "abcde")
HASHES = ["0x" + f"{i:064x}" for i in (11, 22, 33, 44, 55)]

KECCAK_EMPTY = "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


class CombineSeedTests(unittest.TestCase):
    def test_keccak_of_concatenated_bytes(self):
        self.assertEqual(combine_seed(["0x"]).hex(), KECCAK_EMPTY)
        self.assertEqual(combine_seed(["0xab", "0xcd"]), combine_seed(["0xabcd"]))

    def test_order_matters(self):
        self.assertNotEqual(combine_seed(HASHES), combine_seed(list(reversed(HASHES))))

    def test_accepts_unprefixed_hex(self):
        self.assertEqual(combine_seed([h[2:] for h in HASHES]), combine_seed(HASHES))

    def test_rejects_bad_input(self):
        with self.assertRaises(ValueError):
            combine_seed([])
        with self.assertRaises(ValueError):
            combine_seed(["0xnothex"])


class SelectWinnerTests(unittest.TestCase):
    def test_index_always_within_ticket_range(self):
        for count in range(1, 40):
            tickets = [f"0x{i:040x}" for i in range(count)]
            for offset in range(5):
                hashes = ["0x" + f"{offset * 97 + j:064x}" for j in range(3)]
                selection = select_winner(tickets, hashes)
                self.assertGreaterEqual(selection.winner_index, 0)
                self.assertLess(selection.winner_index, count)
                self.assertEqual(selection.winner, tickets[selection.winner_index])
                self.assertEqual(selection.winner_index, selection.seed_int % count)

    def test_selection_is_repeatable(self):
        tickets = [A, B, B, C, D, E, A]
        first = select_winner(tickets, HASHES)
        second = select_winner(list(tickets), list(HASHES))
        self.assertEqual(first, second)
        self.assertTrue(verify_selection(tickets, HASHES, first.winner_index))
        self.assertFalse(
            verify_selection(tickets, HASHES, (first.winner_index + 1) % len(tickets))
        )

    def test_seed_is_hex_of_seed_int(self):
        selection = select_winner([A, B], HASHES)
        self.assertTrue(selection.seed.startswith("0x"))
        self.assertEqual(len(selection.seed), 66)
        self.assertEqual(int(selection.seed, 16), selection.seed_int)

    def test_seed_mod_five_equal_three_picks_fourth_ticket(self):
        seed = (8).to_bytes(32, "big")
        with patch("tombola.draw.selection.combine_seed", return_value=seed):
            selection = select_winner([A, B, C, D, E], HASHES)
        self.assertEqual(selection.winner_index, 3)
        self.assertEqual(selection.winner, D)

    def test_empty_ticket_sequence_rejected(self):
        with self.assertRaises(ValueError):
            select_winner([], HASHES)


if __name__ == "__main__":
    unittest.main()
