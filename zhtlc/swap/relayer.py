"""
Relayer Engine.

Polls the store for pending HTLC operations and drives each one through
the OperationExecutor with the hot wallet.

Each cycle:
    1. (auto_refund) enqueue refund operations for expired funded HTLCs
    2. process up to max_tx_per_batch pending operations, oldest first,
       skipping refunds whose timelock has not been reached

Retryable failures (transport, node rejection, insufficient funds, HTLC
not yet funded) stay pending until max_retry_attempts; permanent failures
(already spent, bad secret, signing, bad parameters) fail immediately.
Cycles never overlap: a cycle requested while one is running is skipped.

Usage:
    relayer = Relayer(config, store, rpc, executor)
    task = asyncio.create_task(relayer.run())
    ...
    relayer.stop()
"""

import uuid
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from ..core import (
    HTLCOperation, HTLCState, OperationStatus, OperationType,
)
from ..config import RelayerConfig
from ..chains.zcash import ZECClient
from ..errors import HTLCError, TransportError
from ..store import HTLCStore
from .executor import OperationExecutor

log = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Summary of one relayer cycle."""
    skipped: bool = False
    refunds_enqueued: int = 0
    processed: int = 0
    broadcast: List[str] = field(default_factory=list)   # operation ids
    errors: List[str] = field(default_factory=list)
    deferred: int = 0   # refunds still under timelock


class Relayer:
    """Automated background executor for pending operations."""

    def __init__(self, config: RelayerConfig, store: HTLCStore, rpc: ZECClient,
                 executor: OperationExecutor):
        self.config = config
        self.store = store
        self.rpc = rpc
        self.executor = executor
        self._cycle_lock = asyncio.Lock()
        self._running = False

    async def run_cycle(self) -> CycleReport:
        """Run one cycle, or skip it if another is still in flight."""
        if self._cycle_lock.locked():
            log.debug("Relayer cycle already running, skipping")
            return CycleReport(skipped=True)

        async with self._cycle_lock:
            report = CycleReport()
            if self.config.auto_refund:
                try:
                    report.refunds_enqueued = await self.enqueue_expired_refunds()
                except TransportError as e:
                    log.warning(f"Could not check for expired HTLCs: {e}")

            ready, report.deferred = await self.ready_operations()
            for op in ready[:self.config.max_tx_per_batch]:
                report.processed += 1
                try:
                    await self.executor.execute(op.id)
                    report.broadcast.append(op.id)
                except HTLCError as e:
                    report.errors.append(str(e))
                except Exception as e:
                    log.exception(f"[{op.htlc_id}] {op.operation_type.value}: unexpected error")
                    report.errors.append(f"[{op.htlc_id}] {op.operation_type.value}: {e}")

            if report.processed or report.refunds_enqueued:
                log.info(f"Relayer cycle: {report.processed} processed, "
                         f"{len(report.broadcast)} broadcast, {len(report.errors)} errors, "
                         f"{report.refunds_enqueued} refunds enqueued")
            return report

    async def ready_operations(self) -> Tuple[List[HTLCOperation], int]:
        """
        Pending operations that can be attempted now, oldest first.

        Refunds whose timelock is still ahead of the chain tip are held back
        and take no batch slot. With the tip unknown every refund is held.
        Returns (ready, deferred_count).
        """
        pending = self.store.list_operations(status=OperationStatus.PENDING)
        if not any(op.operation_type is OperationType.REFUND for op in pending):
            return pending, 0

        try:
            height = await self.rpc.get_block_count()
        except TransportError as e:
            log.warning(f"Block height unavailable, holding refunds: {e}")
            height = 0

        ready = []
        deferred = 0
        for op in pending:
            if op.operation_type is OperationType.REFUND:
                htlc = self.store.find_htlc(op.htlc_id)
                if htlc is not None and height < htlc.timelock:
                    deferred += 1
                    continue
            ready.append(op)
        return ready, deferred

    async def enqueue_expired_refunds(self) -> int:
        """Add refund operations for funded HTLCs past their timelock."""
        funded = self.store.list_htlcs(state=HTLCState.FUNDED)
        if not funded:
            return 0
        height = await self.rpc.get_block_count()

        enqueued = 0
        for htlc in funded:
            if height < htlc.timelock:
                continue
            live = [
                op for op in self.store.list_operations(htlc_id=htlc.id)
                if op.operation_type in (OperationType.REDEEM, OperationType.REFUND)
                and op.status is not OperationStatus.FAILED
            ]
            if live:
                continue
            self.store.add_operation(HTLCOperation(
                id=str(uuid.uuid4()),
                htlc_id=htlc.id,
                operation_type=OperationType.REFUND,
            ))
            enqueued += 1
            log.info(f"[{htlc.id}] expired at height {height} (timelock {htlc.timelock}), refund enqueued")
        return enqueued

    async def run(self):
        """Poll forever until stop() is called."""
        self._running = True
        log.info(f"Relayer started (interval {self.config.poll_interval_secs}s, "
                 f"batch {self.config.max_tx_per_batch})")
        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                log.error(f"Relayer cycle error: {e}")
            await asyncio.sleep(self.config.poll_interval_secs)
        log.info("Relayer stopped")

    def stop(self):
        self._running = False

    @property
    def running(self) -> bool:
        return self._running
