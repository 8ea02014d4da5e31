#!/usr/bin/env python3
"""
Checkpoint tracker tests: chain height, confirmations and UTXO refresh.
"""

import os
import sys
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import make_env, fund_wallet, create_htlc, funded_htlc, SECRET
from zhtlc.core import HTLCOperation, HTLCState, OperationStatus, OperationType, UTXO
from zhtlc.errors import TransportError
from zhtlc.swap.checkpoint import CheckpointTracker


class TestCheckpoint(unittest.IsolatedAsyncioTestCase):

    async def test_checkpoint_is_monotonic(self):
        env = make_env(height=120)
        report = await env.tracker.sync()
        self.assertEqual(report.height, 120)

        env.chain.height = 110
        report = await env.tracker.sync()
        self.assertEqual(report.height, 120)
        self.assertEqual(env.store.get_checkpoint("zcash-testnet").last_block, 120)

    async def test_node_unreachable(self):
        env = make_env()
        env.chain.block_count_error = TransportError("connection refused")
        with self.assertRaises(TransportError):
            await env.tracker.sync()
        self.assertEqual(env.store.get_checkpoint("zcash-testnet").last_block, 0)


class TestConfirmations(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.env = make_env(min_confirmations=3)
        fund_wallet(self.env, ["0.02"])
        self.htlc = create_htlc(self.env)
        self.op = await self.env.client.fund_htlc(self.htlc.id)

    async def test_mempool_tx_not_confirmed(self):
        report = await self.env.tracker.sync()
        self.assertEqual(report.confirmed, [])
        op = self.env.store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertIsNone(op.block_height)

    async def test_confirmation_threshold(self):
        self.env.chain.mine(1)
        await self.env.tracker.sync()
        op = self.env.store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertEqual(op.block_height, 101)
        self.assertIs(self.env.store.get_htlc(self.htlc.id).state, HTLCState.CREATED)

        self.env.chain.mine(2)
        report = await self.env.tracker.sync()
        self.assertEqual(report.confirmed, [self.op.id])
        op = self.env.store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.CONFIRMED)
        self.assertEqual(op.block_height, 101)
        self.assertIsNotNone(op.confirmed_at)
        self.assertIs(self.env.store.get_htlc(self.htlc.id).state, HTLCState.FUNDED)

    async def test_utxo_confirmations_refreshed(self):
        self.env.chain.mine(1)
        await self.env.tracker.sync()
        change = self.env.store.get_utxo(self.op.txid, 1)
        self.assertEqual(change.block_height, 101)
        self.assertEqual(change.confirmations, 1)

        self.env.chain.mine(4)
        await self.env.tracker.sync()
        self.assertEqual(self.env.store.get_utxo(self.op.txid, 1).confirmations, 5)
        self.assertEqual(self.env.store.get_utxo(self.op.txid, 0).confirmations, 5)

    async def test_confirmed_once(self):
        self.env.chain.mine(3)
        await self.env.tracker.sync()
        self.env.chain.mine(1)
        report = await self.env.tracker.sync()
        self.assertEqual(report.confirmed, [])
        self.assertEqual(report.errors, [])

    async def test_unknown_tx_left_broadcast(self):
        self.env.chain.txs.clear()
        self.env.chain.mine(3)
        report = await self.env.tracker.sync()
        self.assertEqual(report.confirmed, [])
        op = self.env.store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertEqual(op.missing_checks, 1)


class TestDroppedBroadcast(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.env = make_env(max_missing_checks=3)
        fund_wallet(self.env, ["0.02"])
        self.htlc = create_htlc(self.env)
        await self.env.relayer.run_cycle()
        self.op = self.env.store.list_operations(htlc_id=self.htlc.id)[0]
        self.assertIs(self.op.status, OperationStatus.BROADCAST)
        self.env.chain.txs.clear()

    async def test_claim_released_and_rebroadcast(self):
        store = self.env.store
        for expected in (1, 2):
            report = await self.env.tracker.sync()
            self.assertEqual(report.dropped, [])
            op = store.get_operation(self.op.id)
            self.assertIs(op.status, OperationStatus.BROADCAST)
            self.assertEqual(op.missing_checks, expected)
        self.assertEqual(store.get_utxo("01" * 32, 0).spent_in_tx, self.op.txid)

        report = await self.env.tracker.sync()
        self.assertEqual(report.dropped, [self.op.id])
        op = store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.PENDING)
        self.assertEqual(op.missing_checks, 0)
        self.assertEqual(op.attempts, 1)
        self.assertIn("dropped", op.error_message)
        self.assertFalse(store.get_utxo("01" * 32, 0).spent)
        self.assertIsNone(store.get_utxo(self.op.txid, 0))
        self.assertIsNone(store.get_utxo(self.op.txid, 1))
        htlc = store.get_htlc(self.htlc.id)
        self.assertIs(htlc.state, HTLCState.CREATED)
        self.assertIsNone(htlc.txid)

        await self.env.relayer.run_cycle()
        op = store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertEqual(op.attempts, 2)
        self.assertEqual(op.txid, self.op.txid)
        self.assertEqual(len(self.env.chain.sent), 2)
        self.assertEqual(store.get_htlc(self.htlc.id).txid, op.txid)

    async def test_count_reset_when_seen_again(self):
        await self.env.tracker.sync()
        self.assertEqual(self.env.store.get_operation(self.op.id).missing_checks, 1)

        self.env.chain.txs[self.op.txid] = {"hex": self.op.signed_tx_hex, "confirmations": 0}
        await self.env.tracker.sync()
        op = self.env.store.get_operation(self.op.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertEqual(op.missing_checks, 0)

    async def test_fails_without_attempts_left(self):
        env = make_env(max_missing_checks=1, max_retry_attempts=1)
        fund_wallet(env, ["0.02"])
        htlc = create_htlc(env)
        await env.relayer.run_cycle()
        env.chain.txs.clear()

        report = await env.tracker.sync()
        op = env.store.list_operations(htlc_id=htlc.id)[0]
        self.assertEqual(report.dropped, [op.id])
        self.assertIs(op.status, OperationStatus.FAILED)
        self.assertFalse(env.store.get_utxo("01" * 32, 0).spent)

    async def test_external_funding_not_rebuilt(self):
        env = make_env(max_missing_checks=1)
        htlc = create_htlc(env, fund_from_wallet=False)
        op = env.client.register_funding(htlc.id, "ab" * 32, 0)

        await env.tracker.sync()
        op = env.store.get_operation(op.id)
        self.assertIs(op.status, OperationStatus.FAILED)
        self.assertIsNone(env.store.get_utxo("ab" * 32, 0))
        self.assertIsNone(env.store.get_htlc(htlc.id).txid)
        await env.relayer.run_cycle()
        self.assertEqual(env.chain.sent, [])


class TestPruning(unittest.IsolatedAsyncioTestCase):

    async def test_spent_rows_pruned_below_depth(self):
        env = make_env(prune_depth=5)
        fund_wallet(env, ["0.02"])
        htlc = create_htlc(env)
        op = await env.client.fund_htlc(htlc.id)

        env.chain.mine()
        report = await env.tracker.sync()
        self.assertEqual(report.confirmed, [op.id])
        self.assertEqual(report.pruned, 0)
        self.assertTrue(env.store.get_utxo("01" * 32, 0).spent)

        env.chain.mine(5)
        report = await env.tracker.sync()
        self.assertEqual(report.pruned, 1)
        self.assertIsNone(env.store.get_utxo("01" * 32, 0))
        self.assertFalse(env.store.get_utxo(op.txid, 1).spent)
        self.assertEqual(env.store.get_utxo(op.txid, 0).address, htlc.p2sh_address)


class TestUTXOSync(unittest.IsolatedAsyncioTestCase):

    async def test_explorer_utxos_merged(self):
        env = make_env()
        address = env.wallet.address
        tracker = CheckpointTracker(env.store, env.chain, env.state_machine,
                                    network=env.network, wallet_address=address)
        env.chain.explorer_utxos[address] = [
            UTXO(txid="0a" * 32, vout=1, amount=Decimal("0.5"),
                 script_pubkey=env.wallet.script_pubkey.hex(), address=address, confirmations=2),
        ]

        report = await tracker.sync()
        self.assertEqual(report.utxos_added, 1)
        self.assertEqual(env.client.pool_balance(address), Decimal("0.5"))

        env.store.claim_utxos([("0a" * 32, 1)], "ff" * 32)
        env.chain.explorer_utxos[address][0].confirmations = 7
        report = await tracker.sync()
        self.assertEqual(report.utxos_added, 0)
        row = env.store.get_utxo("0a" * 32, 1)
        self.assertEqual(row.confirmations, 7)
        self.assertEqual(row.spent_in_tx, "ff" * 32)

    async def test_explorer_failure_does_not_abort_sync(self):
        env = make_env()
        tracker = CheckpointTracker(env.store, env.chain, env.state_machine,
                                    network=env.network, wallet_address=env.wallet.address)

        async def unreachable(address):
            raise TransportError("explorer down")

        env.chain.get_utxos = unreachable
        report = await tracker.sync()
        self.assertEqual(report.height, 100)
        self.assertEqual(report.utxos_added, 0)


class TestDoubleSpend(unittest.IsolatedAsyncioTestCase):

    async def test_conflicting_confirmation_recorded(self):
        env = make_env()
        htlc = await funded_htlc(env, timelock=1000)
        env.chain.height = 1000
        await env.client.refund_htlc(htlc.id)
        env.chain.mine()
        await env.tracker.sync()
        self.assertIs(env.store.get_htlc(htlc.id).state, HTLCState.REFUNDED)

        # A redeem of the same output shows up confirmed
        conflicting = env.store.add_operation(HTLCOperation(
            id="conflicting-redeem", htlc_id=htlc.id, operation_type=OperationType.REDEEM,
            status=OperationStatus.BROADCAST, txid="dd" * 32, secret=SECRET.encode().hex(),
        ))
        env.chain.txs["dd" * 32] = {"hex": "", "confirmations": 1}

        with self.assertLogs("zhtlc.swap.checkpoint", level="ERROR") as logs:
            report = await env.tracker.sync()
        self.assertEqual(len(report.errors), 1)
        self.assertTrue(any("DOUBLE SPEND" in line for line in logs.output))

        op = env.store.get_operation(conflicting.id)
        self.assertIs(op.status, OperationStatus.BROADCAST)
        self.assertIn("already refunded", op.error_message)
        self.assertIs(env.store.get_htlc(htlc.id).state, HTLCState.REFUNDED)


if __name__ == "__main__":
    unittest.main(verbosity=2)
