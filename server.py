#!/usr/bin/env python3
"""
zhtlc Server
Zcash transparent HTLC relayer with an HTTP API.

Background tasks:
  relayer             - drives pending create/redeem/refund operations
  checkpoint tracker  - advances chain height, confirms broadcast operations

Endpoints:
  GET  /api/status                    - Checkpoint, queue depth, pool balance
  POST /api/htlc                      - Create HTLC
  GET  /api/htlc/{id}                 - HTLC record + derived status
  GET  /api/htlc/{id}/operations      - Operation history
  POST /api/htlc/{id}/redeem          - Queue redeem (secret)
  POST /api/htlc/{id}/refund          - Queue refund
  POST /api/htlc/{id}/funding         - Register external funding tx

Configuration: see zhtlc.config and zhtlc.chains.zcash.ZECConfig.
"""

import os
import asyncio
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from zhtlc.config import AppConfig
from zhtlc.chains.zcash import ZECClient
from zhtlc.htlc.builder import TransactionBuilder
from zhtlc.htlc.wallet import Wallet
from zhtlc.store import HTLCStore
from zhtlc.swap.checkpoint import CheckpointTracker
from zhtlc.swap.client import HTLCClient
from zhtlc.swap.executor import OperationExecutor
from zhtlc.swap.relayer import Relayer
from zhtlc.swap.state_machine import HTLCStateMachine
from routes import htlc as htlc_routes

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
log = logging.getLogger(__name__)


app = FastAPI(
    title="zhtlc",
    description="Zcash transparent HTLC relayer",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(htlc_routes.router)


# =============================================================================
# SERVICES
# =============================================================================

class Services:
    """Wired components, built from the environment at startup."""

    def __init__(self, config: AppConfig):
        self.config = config
        network = config.network
        relayer_cfg = config.relayer

        self.store = HTLCStore(config.db_path)
        self.rpc = ZECClient(config.zcash)
        self.wallet = Wallet(relayer_cfg.hot_wallet_privkey, network,
                             relayer_cfg.hot_wallet_address)
        self.builder = TransactionBuilder(network, fee=relayer_cfg.network_fee,
                                          dust_threshold=relayer_cfg.dust_threshold)
        self.executor = OperationExecutor(
            self.store, self.rpc, self.wallet, self.builder,
            min_confirmations=relayer_cfg.min_confirmations,
            max_retry_attempts=relayer_cfg.max_retry_attempts,
        )
        self.state_machine = HTLCStateMachine(self.store)
        self.relayer = Relayer(relayer_cfg, self.store, self.rpc, self.executor)
        self.tracker = CheckpointTracker(
            self.store, self.rpc, self.state_machine, network=network,
            min_confirmations=relayer_cfg.min_confirmations,
            wallet_address=self.wallet.address,
            interval_secs=relayer_cfg.checkpoint_interval_secs,
            max_retry_attempts=relayer_cfg.max_retry_attempts,
            max_missing_checks=relayer_cfg.max_missing_checks,
            prune_depth=relayer_cfg.prune_depth,
        )
        self.client = HTLCClient(self.store, self.rpc, self.executor, network)
        self.tasks = []


services: Optional[Services] = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global services
    services = Services(AppConfig.from_env())
    htlc_routes.configure(services.client, services.wallet.address)

    log.info(f"Network: {services.config.network.value}, hot wallet: {services.wallet.address}")
    services.tasks = [
        asyncio.create_task(services.tracker.run()),
        asyncio.create_task(services.relayer.run()),
    ]


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    if services is None:
        return
    services.relayer.stop()
    services.tracker.stop()
    for task in services.tasks:
        task.cancel()
    await asyncio.gather(*services.tasks, return_exceptions=True)
    await services.rpc.close()
    log.info("Relayer and checkpoint tracker stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting zhtlc on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
