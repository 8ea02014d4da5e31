"""
Shared test doubles: an in-memory chain and a wired component set.
"""

import asyncio
from decimal import Decimal
from types import SimpleNamespace

from zhtlc.config import RelayerConfig
from zhtlc.core import Network, UTXO, from_zatoshi, hash_secret
from zhtlc.htlc.builder import TransactionBuilder
from zhtlc.htlc.keys import derive_pubkey
from zhtlc.htlc.tx import deserialize_tx
from zhtlc.htlc.wallet import Wallet
from zhtlc.store import HTLCStore
from zhtlc.swap.checkpoint import CheckpointTracker
from zhtlc.swap.client import HTLCClient
from zhtlc.swap.executor import OperationExecutor
from zhtlc.swap.relayer import Relayer
from zhtlc.swap.state_machine import HTLCStateMachine

# Fixed secp256k1 keys (scalars 1, 2, 3)
HOT_KEY = "00" * 31 + "01"
RECIPIENT_KEY = "00" * 31 + "02"
OTHER_KEY = "00" * 31 + "03"

HOT_PUBKEY = derive_pubkey(HOT_KEY)
RECIPIENT_PUBKEY = derive_pubkey(RECIPIENT_KEY)
OTHER_PUBKEY = derive_pubkey(OTHER_KEY)

SECRET = "swap-secret"
HASH_LOCK = hash_secret(SECRET)


class FakeChain:
    """Stands in for ZECClient. Mempool txs gain a confirmation per mined block."""

    def __init__(self, height: int = 100):
        self.height = height
        self.sent = []
        self.txs = {}
        self.send_errors = []
        self.block_count_error = None
        self.explorer_utxos = {}
        self.balance_error = None

    async def get_block_count(self) -> int:
        await asyncio.sleep(0)
        if self.block_count_error is not None:
            raise self.block_count_error
        return self.height

    async def send_raw_transaction(self, tx_hex: str) -> str:
        await asyncio.sleep(0)
        if self.send_errors:
            raise self.send_errors.pop(0)
        txid = deserialize_tx(tx_hex).txid
        self.sent.append(tx_hex)
        self.txs.setdefault(txid, {"hex": tx_hex, "confirmations": 0})
        return txid

    async def get_transaction_confirmations(self, txid: str):
        await asyncio.sleep(0)
        tx = self.txs.get(txid)
        return None if tx is None else tx["confirmations"]

    async def get_utxos(self, address: str):
        await asyncio.sleep(0)
        return list(self.explorer_utxos.get(address, []))

    async def get_balance(self, address: str) -> Decimal:
        await asyncio.sleep(0)
        if self.balance_error is not None:
            raise self.balance_error
        return from_zatoshi(sum(u.zatoshis for u in self.explorer_utxos.get(address, [])))

    async def close(self):
        pass

    def mine(self, blocks: int = 1):
        self.height += blocks
        for tx in self.txs.values():
            tx["confirmations"] += blocks

    def spends(self, txid: str, vout: int) -> int:
        """Number of broadcast txs spending txid:vout."""
        count = 0
        for tx_hex in self.sent:
            for txin in deserialize_tx(tx_hex).inputs:
                if (txin.txid, txin.vout) == (txid, vout):
                    count += 1
        return count


def make_env(height: int = 100, store: HTLCStore = None, **relayer_overrides) -> SimpleNamespace:
    """Wire store, fake chain and all components against the test hot wallet."""
    network = Network.TESTNET
    store = store or HTLCStore()
    chain = FakeChain(height)
    settings = dict(hot_wallet_privkey=HOT_KEY, max_retry_attempts=3, min_confirmations=1)
    settings.update(relayer_overrides)
    config = RelayerConfig(**settings)
    wallet = Wallet(HOT_KEY, network)
    builder = TransactionBuilder(network, fee=config.network_fee,
                                 dust_threshold=config.dust_threshold)
    executor = OperationExecutor(store, chain, wallet, builder,
                                 min_confirmations=config.min_confirmations,
                                 max_retry_attempts=config.max_retry_attempts)
    state_machine = HTLCStateMachine(store)
    return SimpleNamespace(
        network=network,
        store=store,
        chain=chain,
        config=config,
        wallet=wallet,
        builder=builder,
        executor=executor,
        state_machine=state_machine,
        relayer=Relayer(config, store, chain, executor),
        tracker=CheckpointTracker(store, chain, state_machine, network=network,
                                  min_confirmations=config.min_confirmations,
                                  max_retry_attempts=config.max_retry_attempts,
                                  max_missing_checks=config.max_missing_checks,
                                  prune_depth=config.prune_depth),
        client=HTLCClient(store, chain, executor, network),
    )


def fund_wallet(env, amounts, confirmations: int = 6):
    """Add wallet UTXOs (amounts in ZEC) with distinct fake txids."""
    utxos = []
    spk = env.wallet.script_pubkey.hex()
    for i, amount in enumerate(amounts):
        utxo = UTXO(
            txid=f"{i + 1:02x}" * 32, vout=0, amount=Decimal(amount),
            script_pubkey=spk, address=env.wallet.address, confirmations=confirmations,
        )
        env.store.upsert_utxo(utxo)
        utxos.append(utxo)
    return utxos


def create_htlc(env, timelock: int = 1000, amount: str = "0.01", **kwargs):
    return env.client.create_htlc(
        recipient_pubkey=RECIPIENT_PUBKEY,
        refund_pubkey=HOT_PUBKEY,
        hash_lock=HASH_LOCK,
        timelock=timelock,
        amount=amount,
        **kwargs,
    )


async def funded_htlc(env, timelock: int = 1000, amount: str = "0.01"):
    """Create, fund, mine and confirm an HTLC. Returns the funded record."""
    if not env.store.list_utxos(address=env.wallet.address, unspent_only=True):
        fund_wallet(env, ["0.005", "0.02"])
    htlc = create_htlc(env, timelock=timelock, amount=amount)
    await env.client.fund_htlc(htlc.id)
    env.chain.mine()
    await env.tracker.sync()
    return env.store.get_htlc(htlc.id)
