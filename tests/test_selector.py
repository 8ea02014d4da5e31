#!/usr/bin/env python3
"""
UTXO selector tests.
"""

import os
import sys
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from zhtlc.core import UTXO, to_zatoshi
from zhtlc.errors import InsufficientFunds
from zhtlc.htlc.selector import select_utxos

FEE = 10_000


def utxo(txid_byte: str, amount: str, confirmations: int = 6, spent: bool = False) -> UTXO:
    return UTXO(txid=txid_byte * 32, vout=0, amount=Decimal(amount), script_pubkey="",
                confirmations=confirmations, spent=spent)


class TestSelectUTXOs(unittest.TestCase):

    def test_largest_first(self):
        pool = [utxo("01", "0.005"), utxo("02", "0.02")]
        sel = select_utxos(pool, to_zatoshi("0.01"), FEE)
        self.assertEqual([u.txid for u in sel.utxos], ["02" * 32])
        self.assertEqual(sel.change, to_zatoshi("0.0099"))
        self.assertEqual(sel.fee, FEE)

    def test_covers_target_plus_fee(self):
        pool = [utxo("01", "0.004"), utxo("02", "0.004"), utxo("03", "0.004")]
        target = to_zatoshi("0.01")
        sel = select_utxos(pool, target, FEE)
        self.assertEqual(len(sel.utxos), 3)
        self.assertGreaterEqual(sel.total, target + FEE)
        self.assertEqual(sel.total, target + sel.fee + sel.change)

    def test_adds_smaller_utxo_when_largest_short(self):
        pool = [utxo("01", "0.005"), utxo("02", "0.006")]
        sel = select_utxos(pool, to_zatoshi("0.01"), FEE)
        self.assertEqual([u.txid for u in sel.utxos], ["02" * 32, "01" * 32])
        self.assertEqual(sel.total, to_zatoshi("0.011"))
        self.assertEqual(sel.change, to_zatoshi("0.0009"))

    def test_tie_break_by_txid(self):
        pool = [utxo("0c", "0.01"), utxo("0a", "0.01"), utxo("0b", "0.01")]
        sel = select_utxos(pool, to_zatoshi("0.005"), FEE)
        self.assertEqual(sel.utxos[0].txid, "0a" * 32)

    def test_deterministic_regardless_of_input_order(self):
        pool = [utxo("01", "0.003"), utxo("02", "0.007"), utxo("03", "0.005")]
        a = select_utxos(pool, to_zatoshi("0.009"), FEE)
        b = select_utxos(list(reversed(pool)), to_zatoshi("0.009"), FEE)
        self.assertEqual([u.key for u in a.utxos], [u.key for u in b.utxos])

    def test_dust_change_folded_into_fee(self):
        # 0.0101 + 500 zat: change of 500 is below dust
        pool = [utxo("01", "0.01010500")]
        sel = select_utxos(pool, to_zatoshi("0.01"), FEE)
        self.assertEqual(sel.change, 0)
        self.assertEqual(sel.fee, FEE + 500)

    def test_change_at_dust_threshold_kept(self):
        pool = [utxo("01", "0.01010546")]
        sel = select_utxos(pool, to_zatoshi("0.01"), FEE)
        self.assertEqual(sel.change, 546)

    def test_skips_unconfirmed_and_spent(self):
        pool = [
            utxo("01", "1.0", confirmations=0),
            utxo("02", "1.0", spent=True),
            utxo("03", "0.02"),
        ]
        sel = select_utxos(pool, to_zatoshi("0.01"), FEE, min_confirmations=1)
        self.assertEqual([u.txid for u in sel.utxos], ["03" * 32])

    def test_skips_claimed(self):
        claimed = utxo("01", "1.0")
        claimed.spent_in_tx = "ff" * 32
        with self.assertRaises(InsufficientFunds):
            select_utxos([claimed], to_zatoshi("0.01"), FEE)

    def test_insufficient_funds(self):
        pool = [utxo("01", "0.005"), utxo("02", "0.004", confirmations=0)]
        with self.assertRaises(InsufficientFunds) as ctx:
            select_utxos(pool, to_zatoshi("0.01"), FEE)
        self.assertEqual(ctx.exception.required, to_zatoshi("0.01") + FEE)
        self.assertEqual(ctx.exception.available, to_zatoshi("0.005"))

    def test_empty_pool(self):
        with self.assertRaises(InsufficientFunds):
            select_utxos([], 1, FEE)


if __name__ == "__main__":
    unittest.main(verbosity=2)
