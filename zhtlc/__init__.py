"""
zhtlc - Zcash transparent HTLC engine

Builds, signs and tracks Hash Time-Locked Contracts on Zcash transparent
addresses for atomic swaps, with a relayer that drives pending operations
to the chain and a checkpoint tracker that confirms them.

Usage:
    from zhtlc import HTLCStore, ZECClient, ZECConfig, HTLCClient
    from zhtlc import generate_secret, verify_preimage

    store = HTLCStore("~/.zhtlc/htlc_db.json")
    rpc = ZECClient(ZECConfig.from_env())
    executor = OperationExecutor(store, rpc, wallet, TransactionBuilder(network))
    client = HTLCClient(store, rpc, executor, network)

    secret, hash_lock = generate_secret()
    htlc = client.create_htlc(recipient_pubkey, refund_pubkey, hash_lock,
                              timelock=1000, amount="0.01")
"""

from .core import (
    Network,
    HTLCState,
    OperationType,
    OperationStatus,
    HTLCParams,
    HTLC,
    HTLCOperation,
    UTXO,
    Checkpoint,
    generate_secret,
    verify_preimage,
    to_zatoshi,
    from_zatoshi,
    DUST_THRESHOLD,
    DEFAULT_NETWORK_FEE,
)
from .errors import HTLCError
from .config import AppConfig, RelayerConfig
from .store import HTLCStore

from .chains.zcash import ZECClient, ZECConfig

from .htlc.script import HTLCScriptBuilder
from .htlc.builder import TransactionBuilder
from .htlc.signer import TransactionSigner, RedeemBranch, RefundBranch
from .htlc.selector import select_utxos
from .htlc.wallet import Wallet

from .swap.state_machine import HTLCStateMachine
from .swap.executor import OperationExecutor
from .swap.relayer import Relayer
from .swap.checkpoint import CheckpointTracker
from .swap.client import HTLCClient

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Network",
    "HTLCState",
    "OperationType",
    "OperationStatus",
    "HTLCParams",
    "HTLC",
    "HTLCOperation",
    "UTXO",
    "Checkpoint",
    "HTLCError",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "to_zatoshi",
    "from_zatoshi",
    "DUST_THRESHOLD",
    "DEFAULT_NETWORK_FEE",
    # Config / storage
    "AppConfig",
    "RelayerConfig",
    "HTLCStore",
    # Chain
    "ZECClient",
    "ZECConfig",
    # HTLC engine
    "HTLCScriptBuilder",
    "TransactionBuilder",
    "TransactionSigner",
    "RedeemBranch",
    "RefundBranch",
    "select_utxos",
    "Wallet",
    # Swap
    "HTLCStateMachine",
    "OperationExecutor",
    "Relayer",
    "CheckpointTracker",
    "HTLCClient",
]
