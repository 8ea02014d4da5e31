"""
HTLC Client for zhtlc.

Front door for callers and the HTTP API: creates HTLC records, queues
redeem/refund requests for the relayer, or executes them immediately.

Usage:
    client = HTLCClient(store, rpc, executor, network=Network.TESTNET)
    htlc = client.create_htlc(recipient_pubkey, refund_pubkey, hash_lock,
                              timelock=1000, amount=Decimal("0.01"))
    await client.fund_htlc(htlc.id)             # build, sign, broadcast now
    client.request_redeem(htlc.id, secret)      # or queue for the relayer
"""

import uuid
import logging
from decimal import Decimal
from typing import Optional, List, Union

from ..core import (
    HTLC, HTLCParams, HTLCOperation, HTLCState, Network, OperationStatus,
    OperationType, UTXO, from_zatoshi, generate_secret, hash_secret, to_decimal,
    to_zatoshi, verify_preimage, secret_to_bytes,
)
from ..errors import (
    AlreadySpent, HTLCNotFunded, InvalidParameter, InvalidSecret, TransportError,
)
from ..chains.zcash import ZECClient
from ..htlc import keys
from ..htlc.builder import TransactionBuilder
from ..htlc.script import HTLCScriptBuilder, address_to_script_pubkey, pubkey_to_address
from ..htlc.signer import TransactionSigner, RedeemBranch
from ..store import HTLCStore
from .executor import OperationExecutor

log = logging.getLogger(__name__)


class HTLCClient:
    """High-level HTLC operations."""

    def __init__(self, store: HTLCStore, rpc: ZECClient, executor: OperationExecutor,
                 network: Union[str, Network] = Network.TESTNET):
        self.store = store
        self.rpc = rpc
        self.executor = executor
        self.network = Network.parse(network)
        self.scripts = HTLCScriptBuilder(self.network)

    @property
    def builder(self) -> TransactionBuilder:
        return self.executor.builder

    # ── Key helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def generate_privkey() -> str:
        return keys.generate_privkey()

    @staticmethod
    def derive_pubkey(privkey: str) -> str:
        return keys.derive_pubkey(privkey)

    @staticmethod
    def generate_hash_lock(secret: Optional[str] = None) -> tuple:
        """
        Hash lock for a secret (random when omitted).

        Returns:
            (secret_hex, hash_lock_hex)
        """
        if secret is None:
            return generate_secret()
        return secret_to_bytes(secret).hex(), hash_secret(secret)

    # ── Create ────────────────────────────────────────────────────────────────

    def create_htlc(self, recipient_pubkey: str, refund_pubkey: str, hash_lock: str,
                    timelock: int, amount: Union[str, Decimal],
                    recipient_address: Optional[str] = None,
                    htlc_id: Optional[str] = None, fund_from_wallet: bool = True) -> HTLC:
        """
        Derive script and address and store a new HTLC in state created.

        With fund_from_wallet a create operation is queued so the relayer
        funds it from the hot wallet; otherwise call register_funding once
        the funding transaction is broadcast elsewhere.

        Raises:
            InvalidParameter: bad keys, hash lock, timelock or amount
        """
        amount = to_decimal(amount)
        if to_zatoshi(amount) <= 0:
            raise InvalidParameter("Amount must be positive")
        params = HTLCParams(
            recipient_pubkey=recipient_pubkey.lower(),
            refund_pubkey=refund_pubkey.lower(),
            hash_lock=hash_lock.lower(),
            timelock=timelock,
            amount=amount,
            network=self.network,
        )
        derived = self.scripts.build(params)
        if recipient_address:
            address_to_script_pubkey(recipient_address, self.network)

        htlc = HTLC(
            id=htlc_id or str(uuid.uuid4()),
            hash_lock=params.hash_lock,
            timelock=timelock,
            recipient_pubkey=params.recipient_pubkey,
            refund_pubkey=params.refund_pubkey,
            amount=amount,
            network=self.network,
            p2sh_address=derived.address,
            script_hex=derived.script_pubkey.hex(),
            redeem_script_hex=derived.script_hex,
            recipient_address=recipient_address or pubkey_to_address(params.recipient_pubkey, self.network),
        )
        with self.store.transaction():
            self.store.create_htlc(htlc)
            if fund_from_wallet:
                self._add_operation(htlc.id, OperationType.CREATE)
        log.info(f"HTLC {htlc.id} created: {amount} ZEC to {htlc.p2sh_address}, timelock {timelock}")
        return htlc

    def register_funding(self, htlc_id: str, txid: str, vout: int,
                         amount: Optional[Union[str, Decimal]] = None) -> HTLCOperation:
        """
        Record an externally broadcast funding transaction.

        The pending create operation (if any) is replaced by a broadcast one
        carrying txid, so the checkpoint tracker confirms it like any other.
        A create operation the relayer has already built or sent is never
        replaced: its transaction may still land.

        Raises:
            InvalidParameter: funding already recorded or amount mismatch
        """
        htlc = self.store.get_htlc(htlc_id)
        if htlc.state is not HTLCState.CREATED or htlc.txid:
            raise InvalidParameter(f"HTLC {htlc_id} already has funding", htlc_id=htlc_id)
        amount = to_decimal(amount) if amount is not None else htlc.amount
        if amount != htlc.amount:
            raise InvalidParameter(f"Funding amount {amount} != HTLC amount {htlc.amount}",
                                   htlc_id=htlc_id)

        with self.store.transaction():
            for op in self.store.list_operations(htlc_id=htlc_id, operation_type=OperationType.CREATE,
                                                 status=OperationStatus.PENDING):
                if op.txid:
                    raise InvalidParameter(
                        f"Wallet funding {op.txid} already signed; wait for it to fail",
                        htlc_id=htlc_id, operation_type=OperationType.CREATE.value,
                    )
                self.store.update_operation(op.id, expected_status=OperationStatus.PENDING,
                                            status=OperationStatus.FAILED,
                                            error_message="Superseded by external funding")
            op = self._add_operation(htlc_id, OperationType.CREATE,
                                     status=OperationStatus.BROADCAST, txid=txid)
            self.store.upsert_utxo(UTXO(
                txid=txid, vout=vout, amount=amount, script_pubkey=htlc.script_hex,
                address=htlc.p2sh_address,
            ))
            self.store.update_htlc(htlc_id, expected_state=HTLCState.CREATED, txid=txid, vout=vout)
        log.info(f"[{htlc_id}] external funding registered: {txid}:{vout}")
        return op

    # ── Redeem / refund requests ──────────────────────────────────────────────

    def request_redeem(self, htlc_id: str, secret: str,
                       recipient_address: Optional[str] = None,
                       recipient_privkey: Optional[str] = None) -> HTLCOperation:
        """
        Queue a redeem for the relayer.

        With recipient_privkey the redeem is signed now (the HTLC must be
        funded) and cached on the HTLC as signed_redeem_tx; otherwise the
        relayer signs with the hot wallet key.

        Raises:
            InvalidSecret: sha256(secret) != hash_lock
            AlreadySpent: HTLC already redeemed or refunded
        """
        htlc = self.store.get_htlc(htlc_id)
        ctx = dict(htlc_id=htlc_id, operation_type=OperationType.REDEEM.value)
        if not verify_preimage(secret, htlc.hash_lock):
            raise InvalidSecret("Secret does not match hash lock", **ctx)
        if htlc.state.terminal:
            raise AlreadySpent(f"HTLC already {htlc.state.value}", **ctx)
        if recipient_address:
            address_to_script_pubkey(recipient_address, self.network)

        signed_hex = None
        if recipient_privkey:
            signed_hex = self.presign_redeem(htlc, secret, recipient_privkey,
                                             recipient_address or htlc.recipient_address)

        with self.store.transaction():
            op = self._add_operation(htlc_id, OperationType.REDEEM,
                                     secret=secret_to_bytes(secret).hex(),
                                     destination_address=recipient_address,
                                     signed_tx_hex=signed_hex)
            if signed_hex:
                self.store.update_htlc(htlc_id, signed_redeem_tx=signed_hex)
        return op

    def presign_redeem(self, htlc: HTLC, secret: str, privkey: str, address: str) -> str:
        """Sign a redeem of the funded HTLC output with the recipient's key."""
        if htlc.txid is None:
            raise HTLCNotFunded("Cannot pre-sign before funding is known", htlc_id=htlc.id)
        utxo = self.store.get_utxo(htlc.txid, htlc.vout)
        if utxo is None:
            utxo = UTXO(txid=htlc.txid, vout=htlc.vout, amount=htlc.amount,
                        script_pubkey=htlc.script_hex, address=htlc.p2sh_address)
        tx = self.builder.build_redeem_tx(utxo, address)
        TransactionSigner().sign_htlc_input(tx, 0, bytes.fromhex(htlc.redeem_script_hex),
                                            privkey, RedeemBranch(secret))
        return tx.hex()

    def request_refund(self, htlc_id: str,
                       refund_address: Optional[str] = None) -> HTLCOperation:
        """Queue a refund; the relayer holds it until the timelock height."""
        htlc = self.store.get_htlc(htlc_id)
        if htlc.state.terminal:
            raise AlreadySpent(f"HTLC already {htlc.state.value}", htlc_id=htlc_id,
                               operation_type=OperationType.REFUND.value)
        if refund_address:
            address_to_script_pubkey(refund_address, self.network)
        return self._add_operation(htlc_id, OperationType.REFUND,
                                   destination_address=refund_address)

    # ── Immediate execution ───────────────────────────────────────────────────

    async def fund_htlc(self, htlc_id: str) -> HTLCOperation:
        """Build, sign and broadcast the funding transaction now."""
        op = self._pending_or_new(htlc_id, OperationType.CREATE)
        return await self.executor.execute(op.id)

    async def redeem_htlc(self, htlc_id: str, secret: str,
                          recipient_address: Optional[str] = None) -> HTLCOperation:
        op = self.request_redeem(htlc_id, secret, recipient_address)
        return await self.executor.execute(op.id)

    async def refund_htlc(self, htlc_id: str,
                          refund_address: Optional[str] = None) -> HTLCOperation:
        op = self.request_refund(htlc_id, refund_address)
        return await self.executor.execute(op.id)

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_htlc(self, htlc_id: str) -> HTLC:
        return self.store.get_htlc(htlc_id)

    def list_operations(self, htlc_id: str) -> List[HTLCOperation]:
        self.store.get_htlc(htlc_id)
        return self.store.list_operations(htlc_id=htlc_id)

    async def htlc_status(self, htlc_id: str) -> str:
        """Stored state, or 'expired' when funded and past the timelock."""
        htlc = self.store.get_htlc(htlc_id)
        try:
            height = await self.rpc.get_block_count()
        except TransportError:
            height = self.store.get_checkpoint(self.network.chain_name).last_block
        return htlc.status_label(height)

    def pool_balance(self, address: str) -> Decimal:
        total = sum(u.zatoshis for u in self.store.list_utxos(address=address, unspent_only=True))
        return from_zatoshi(total)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _add_operation(self, htlc_id: str, operation_type: OperationType, **fields) -> HTLCOperation:
        op = HTLCOperation(id=str(uuid.uuid4()), htlc_id=htlc_id,
                           operation_type=operation_type, **fields)
        return self.store.add_operation(op)

    def _pending_or_new(self, htlc_id: str, operation_type: OperationType) -> HTLCOperation:
        pending = self.store.list_operations(htlc_id=htlc_id, operation_type=operation_type,
                                             status=OperationStatus.PENDING)
        if pending:
            return pending[0]
        return self._add_operation(htlc_id, operation_type)
