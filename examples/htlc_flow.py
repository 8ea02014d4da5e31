#!/usr/bin/env python3
"""
Example: Zcash HTLC lifecycle

Walks through an HTLC from the relayer's perspective:

1. Generate recipient and refund keys
2. Generate secret and hash lock
3. Create the HTLC (timelock = tip + 100)
4. Fund it from the hot wallet pool
5. Wait for confirmation, then redeem with the secret

Requires a reachable zcashd (ZCASH_* env vars) and a funded hot wallet
(RELAYER_HOT_WALLET_PRIVKEY).

Usage:
    python htlc_flow.py [--dry-run]

    --dry-run: stop after step 3 (no transactions)
"""

import sys
import asyncio
import logging
from pathlib import Path

# Add package to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from zhtlc.config import AppConfig
from zhtlc.chains.zcash import ZECClient
from zhtlc.htlc.builder import TransactionBuilder
from zhtlc.htlc.wallet import Wallet
from zhtlc.store import HTLCStore
from zhtlc.swap.checkpoint import CheckpointTracker
from zhtlc.swap.client import HTLCClient
from zhtlc.swap.executor import OperationExecutor
from zhtlc.swap.state_machine import HTLCStateMachine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)


async def main(dry_run: bool):
    config = AppConfig.from_env()
    network = config.network
    store = HTLCStore(config.db_path)
    rpc = ZECClient(config.zcash)
    wallet = Wallet(config.relayer.hot_wallet_privkey, network)
    executor = OperationExecutor(store, rpc, wallet,
                                 TransactionBuilder(network, fee=config.relayer.network_fee))
    client = HTLCClient(store, rpc, executor, network)
    tracker = CheckpointTracker(store, rpc, HTLCStateMachine(store), network=network,
                                wallet_address=wallet.address)

    try:
        # =============================================================
        # 1. Keys
        # =============================================================
        recipient_privkey = client.generate_privkey()
        recipient_pubkey = client.derive_pubkey(recipient_privkey)
        log.info(f"Recipient pubkey: {recipient_pubkey}")
        log.info(f"Refund pubkey (hot wallet): {wallet.pubkey}")

        # =============================================================
        # 2. Secret
        # =============================================================
        secret, hash_lock = client.generate_hash_lock()
        log.info(f"Hash lock: {hash_lock}")

        # =============================================================
        # 3. Create
        # =============================================================
        tip = await rpc.get_block_count()
        htlc = client.create_htlc(
            recipient_pubkey=recipient_pubkey,
            refund_pubkey=wallet.pubkey,
            hash_lock=hash_lock,
            timelock=tip + 100,
            amount="0.001",
        )
        log.info(f"HTLC {htlc.id} at {htlc.p2sh_address}, timelock {htlc.timelock}")
        if dry_run:
            return

        # =============================================================
        # 4. Fund
        # =============================================================
        await tracker.sync_utxos(wallet.address)
        op = await client.fund_htlc(htlc.id)
        log.info(f"Funding broadcast: {op.txid}")

        await rpc.wait_for_confirmations(op.txid, 1)
        await tracker.sync()
        log.info(f"HTLC state: {await client.htlc_status(htlc.id)}")

        # =============================================================
        # 5. Redeem with the recipient's own key (pre-signed)
        # =============================================================
        op = client.request_redeem(htlc.id, secret, recipient_privkey=recipient_privkey)
        op = await executor.execute(op.id)
        log.info(f"Redeem broadcast: {op.txid}")
    finally:
        await rpc.close()


if __name__ == "__main__":
    asyncio.run(main("--dry-run" in sys.argv))
