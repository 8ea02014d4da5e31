"""
Checkpoint Tracker.

Feeds chain progress back into the store:
  - advances the indexer checkpoint (monotonic) to the node's height
  - records block heights for broadcast operations and promotes them to
    confirmed once they reach min_confirmations, applying the HTLC state
    transition in the same store transaction
  - recomputes confirmations of tracked UTXOs and refreshes the hot
    wallet pool from the explorer
  - returns a broadcast operation to pending once the node has not known
    its tx for max_missing_checks syncs, releasing its claimed inputs
  - deletes spent UTXO rows of operations confirmed prune_depth blocks ago

Reorgs are not rolled back automatically. A confirmation that contradicts
the HTLC's terminal state is logged as a double spend and left on the
operation's error_message for an operator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, List

from ..core import HTLCOperation, HTLCState, OperationStatus, OperationType, Network, utcnow
from ..chains.zcash import ZECClient
from ..errors import HTLCError, DoubleSpendDetected, TransportError
from ..store import HTLCStore
from .executor import secret_for_operation
from .state_machine import HTLCStateMachine

log = logging.getLogger(__name__)


@dataclass
class SyncReport:
    height: int = 0
    confirmed: List[str] = field(default_factory=list)     # operation ids
    errors: List[str] = field(default_factory=list)
    utxos_added: int = 0
    dropped: List[str] = field(default_factory=list)       # operation ids
    pruned: int = 0


class CheckpointTracker:
    """Polls chain height and confirms broadcast operations."""

    def __init__(self, store: HTLCStore, rpc: ZECClient, state_machine: HTLCStateMachine,
                 network: Network = Network.TESTNET, min_confirmations: int = 1,
                 wallet_address: Optional[str] = None, interval_secs: int = 30,
                 max_retry_attempts: int = 3, max_missing_checks: int = 10,
                 prune_depth: int = 100):
        self.store = store
        self.rpc = rpc
        self.state_machine = state_machine
        self.network = Network.parse(network)
        self.chain = self.network.chain_name
        self.min_confirmations = max(1, min_confirmations)
        self.wallet_address = wallet_address
        self.interval_secs = interval_secs
        self.max_retry_attempts = max_retry_attempts
        self.max_missing_checks = max(1, max_missing_checks)
        self.prune_depth = prune_depth
        self._running = False

    async def sync(self) -> SyncReport:
        """One pass: checkpoint, operations, UTXOs."""
        height = await self.rpc.get_block_count()
        checkpoint = self.store.advance_checkpoint(self.chain, height)
        report = SyncReport(height=checkpoint.last_block)

        for op in self.store.list_operations(status=OperationStatus.BROADCAST):
            try:
                if await self.check_operation(op, checkpoint.last_block):
                    report.confirmed.append(op.id)
                elif self.store.get_operation(op.id).status is not OperationStatus.BROADCAST:
                    report.dropped.append(op.id)
            except TransportError as e:
                log.warning(f"[{op.htlc_id}] {op.operation_type.value}: confirmation check failed: {e}")
            except HTLCError as e:
                e.with_context(op.htlc_id, op.operation_type.value)
                report.errors.append(str(e))
                self._record_error(op, e)

        if self.wallet_address:
            try:
                report.utxos_added = await self.sync_utxos(self.wallet_address)
            except TransportError as e:
                log.warning(f"UTXO sync failed: {e}")
        self.refresh_confirmations(checkpoint.last_block)
        report.pruned = self.store.prune_spent_utxos(checkpoint.last_block - self.prune_depth)
        return report

    async def check_operation(self, op: HTLCOperation, last_block: int) -> bool:
        """
        Record block height for a broadcast operation and confirm it when deep enough.

        Returns:
            True if the operation was promoted to confirmed
        """
        confirmations = await self.rpc.get_transaction_confirmations(op.txid)
        if confirmations is None:
            self._record_missing(op)
            return False
        if op.missing_checks:
            self.store.update_operation(op.id, expected_status=OperationStatus.BROADCAST,
                                        missing_checks=0)
        if confirmations <= 0:
            return False

        block_height = last_block - confirmations + 1
        if op.block_height != block_height:
            with self.store.transaction():
                self.store.update_operation(op.id, block_height=block_height)
                self._set_utxo_height(op.txid, block_height)

        if last_block - block_height + 1 < self.min_confirmations:
            return False

        secret = None
        if op.operation_type is OperationType.REDEEM:
            secret = secret_for_operation(op)

        with self.store.transaction():
            self.state_machine.apply(op.htlc_id, op.operation_type, block_height, secret)
            self.store.update_operation(
                op.id, expected_status=OperationStatus.BROADCAST,
                status=OperationStatus.CONFIRMED, confirmed_at=utcnow(),
                block_height=block_height, error_message=None,
            )
        log.info(f"[{op.htlc_id}] {op.operation_type.value} confirmed at block {block_height}")
        return True

    def _record_missing(self, op: HTLCOperation):
        """
        Count a sync in which the node did not know op.txid.

        At max_missing_checks the broadcast is treated as dropped: its input
        claims are released, its tracked outputs forgotten and a funding
        HTLC loses its outpoint. The operation goes back to pending for the
        relayer to rebuild, or fails once its attempts are used up or when
        there is nothing to rebuild.
        """
        missing = op.missing_checks + 1
        ctx = f"[{op.htlc_id}] {op.operation_type.value}"
        if missing < self.max_missing_checks:
            log.warning(f"{ctx}: tx {op.txid} unknown to node ({missing}/{self.max_missing_checks})")
            self.store.update_operation(op.id, expected_status=OperationStatus.BROADCAST,
                                        missing_checks=missing)
            return

        # Externally registered funding has no signed tx to rebuild from
        retry = bool(op.signed_tx_hex) and op.attempts < self.max_retry_attempts
        status = OperationStatus.PENDING if retry else OperationStatus.FAILED
        message = f"Transaction {op.txid} dropped by node after {missing} checks"
        with self.store.transaction():
            self.store.release_utxos(op.txid)
            self.store.delete_utxos(op.txid)
            if op.operation_type is OperationType.CREATE:
                htlc = self.store.get_htlc(op.htlc_id)
                if htlc.txid == op.txid:
                    self.store.update_htlc(htlc.id, expected_state=HTLCState.CREATED,
                                           txid=None, vout=None)
            self.store.update_operation(
                op.id, expected_status=OperationStatus.BROADCAST,
                status=status, error_message=message, missing_checks=0,
                broadcast_at=None, block_height=None,
            )
        log.error(f"{ctx}: {message}, operation {status.value}")

    def _record_error(self, op: HTLCOperation, error: HTLCError):
        if op.error_message == str(error):
            return
        if isinstance(error, DoubleSpendDetected):
            log.error(f"DOUBLE SPEND: {error} (tx {op.txid}); manual intervention required")
        else:
            log.error(f"Cannot confirm operation {op.id}: {error}")
        self.store.update_operation(op.id, error_message=str(error))

    def _set_utxo_height(self, txid: str, block_height: int):
        for utxo in self.store.list_utxos():
            if utxo.txid == txid and utxo.block_height != block_height:
                self.store.update_utxo(utxo.txid, utxo.vout, block_height=block_height)

    def refresh_confirmations(self, last_block: int):
        """confirmations = last_block - block_height + 1 for UTXOs with a known height."""
        with self.store.transaction():
            for utxo in self.store.list_utxos():
                if utxo.block_height is None:
                    continue
                confirmations = max(0, last_block - utxo.block_height + 1)
                if confirmations != utxo.confirmations:
                    self.store.update_utxo(utxo.txid, utxo.vout, confirmations=confirmations)

    async def sync_utxos(self, address: str) -> int:
        """Merge explorer UTXOs for address into the pool. Returns rows inserted."""
        utxos = await self.rpc.get_utxos(address)
        added = 0
        with self.store.transaction():
            for utxo in utxos:
                if self.store.upsert_utxo(utxo):
                    added += 1
        if added:
            log.info(f"Synced {added} new UTXOs for {address}")
        return added

    async def run(self):
        self._running = True
        log.info(f"Checkpoint tracker started for {self.chain}")
        while self._running:
            try:
                await self.sync()
            except Exception as e:
                log.error(f"Checkpoint sync error: {e}")
            await asyncio.sleep(self.interval_secs)
        log.info("Checkpoint tracker stopped")

    def stop(self):
        self._running = False
