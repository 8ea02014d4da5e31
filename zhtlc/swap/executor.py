"""
Operation Executor for zhtlc.

Drives one pending HTLCOperation to the chain using the claim protocol:

1. Build and sign (no store mutation). The txid is known from here on.
2. One store transaction: claim the input UTXOs (spent_in_tx = txid),
   record the signed tx on the operation, count the attempt.
3. Broadcast.
4. Failure: one store transaction releases the claim and leaves the
   operation pending (retryable, attempts left) or marks it failed.
5. Success: one store transaction marks it broadcast and tracks the
   outputs it created (HTLC output, change).

Signing is deterministic (RFC 6979) and selection is deterministic, so a
rebuild after a lost broadcast reproduces the same txid. Before rebuilding
an operation that already carries a txid the chain is asked whether the
earlier attempt landed.
"""

import logging
from typing import Optional, List

from ..core import (
    HTLC, HTLCOperation, HTLCState, OperationStatus, OperationType, UTXO,
    from_zatoshi, utcnow, verify_preimage,
)
from ..errors import (
    HTLCError, AlreadySpent, HTLCNotFunded, InvalidParameter, InvalidSecret,
    InvalidTransition, StaleRecord, TimelockNotExpired,
)
from ..chains.zcash import ZECClient
from ..htlc.builder import TransactionBuilder, input_outpoints, HTLC_OUTPUT_INDEX
from ..htlc.script import hash160, p2pkh_script_pubkey
from ..htlc.signer import TransactionSigner, RedeemBranch, RefundBranch, extract_secret
from ..htlc.tx import Transaction, deserialize_tx
from ..htlc.wallet import Wallet
from ..store import HTLCStore

log = logging.getLogger(__name__)


class OperationExecutor:
    """Builds, claims, broadcasts and records HTLC operations."""

    def __init__(self, store: HTLCStore, rpc: ZECClient, wallet: Wallet,
                 builder: TransactionBuilder, signer: Optional[TransactionSigner] = None,
                 min_confirmations: int = 1, max_retry_attempts: int = 3):
        self.store = store
        self.rpc = rpc
        self.wallet = wallet
        self.builder = builder
        self.signer = signer or TransactionSigner()
        self.min_confirmations = min_confirmations
        self.max_retry_attempts = max_retry_attempts

    # =========================================================================
    # Entry point
    # =========================================================================

    async def execute(self, op_id: str) -> HTLCOperation:
        """
        Run one pending operation through the claim protocol.

        Returns:
            The operation after broadcast

        Raises:
            HTLCError: after the failure has been recorded on the operation
        """
        op = self.store.get_operation(op_id)
        if op.status is not OperationStatus.PENDING:
            return op
        htlc = self.store.get_htlc(op.htlc_id)
        ctx = dict(htlc_id=htlc.id, operation_type=op.operation_type.value)
        counted = False

        try:
            if op.txid:
                landed = await self._recover_prior_attempt(op, htlc)
                if landed is not None:
                    return landed

            tx, raw_hex = await self._build(op, htlc)
            txid = tx.txid

            with self.store.transaction():
                current = self.store.get_operation(op.id)
                if current.status is not OperationStatus.PENDING or current.attempts != op.attempts:
                    raise StaleRecord("Operation changed while building", **ctx)
                self.store.claim_utxos(input_outpoints(tx), txid)
                op = self.store.update_operation(
                    op.id, expected_status=OperationStatus.PENDING,
                    raw_tx_hex=raw_hex, signed_tx_hex=tx.hex(), txid=txid,
                    attempts=op.attempts + 1, error_message=None,
                )
            counted = True

            node_txid = await self.rpc.send_raw_transaction(tx.hex())
            if node_txid and node_txid != txid:
                log.warning(f"Node reported txid {node_txid}, expected {txid}")

            return self._record_broadcast(op, htlc, tx)

        except StaleRecord:
            raise
        except HTLCError as e:
            e.with_context(**ctx)
            self._record_failure(op, e, counted)
            raise

    # =========================================================================
    # Building
    # =========================================================================

    async def _build(self, op: HTLCOperation, htlc: HTLC):
        """Returns (signed tx, unsigned tx hex)."""
        if op.operation_type is OperationType.CREATE:
            return self._build_funding(htlc)
        if op.operation_type is OperationType.REDEEM:
            return self._build_redeem(op, htlc)
        if op.operation_type is OperationType.REFUND:
            height = await self.rpc.get_block_count()
            return self._build_refund(op, htlc, height)
        raise InvalidParameter(f"Unknown operation type {op.operation_type!r}")

    def _build_funding(self, htlc: HTLC):
        if htlc.state is not HTLCState.CREATED or htlc.txid:
            raise InvalidTransition(f"HTLC already funded ({htlc.state.value}, txid={htlc.txid})")
        candidates = self.store.list_utxos(address=self.wallet.address, unspent_only=True)
        funding = self.builder.build_funding_tx(
            htlc.params, candidates, self.wallet.address,
            min_confirmations=self.min_confirmations,
        )
        if funding.htlc.address != htlc.p2sh_address:
            raise InvalidParameter("Derived P2SH address does not match stored HTLC")
        raw_hex = funding.tx.hex()
        tx = self.signer.sign_p2pkh_inputs(
            funding.tx, list(range(len(funding.tx.inputs))), self.wallet.privkey,
        )
        return tx, raw_hex

    def _htlc_utxo(self, htlc: HTLC) -> UTXO:
        if htlc.state is HTLCState.CREATED or htlc.txid is None:
            raise HTLCNotFunded("HTLC funding not confirmed")
        if htlc.state.terminal:
            raise AlreadySpent(f"HTLC already {htlc.state.value}")
        utxo = self.store.get_utxo(htlc.txid, htlc.vout)
        if utxo is None:
            raise HTLCNotFunded(f"HTLC output {htlc.txid}:{htlc.vout} not tracked")
        return utxo

    def _build_redeem(self, op: HTLCOperation, htlc: HTLC):
        utxo = self._htlc_utxo(htlc)
        redeem_script = bytes.fromhex(htlc.redeem_script_hex)

        presigned = op.signed_tx_hex or htlc.signed_redeem_tx
        if presigned:
            if utxo.spent:
                raise AlreadySpent(f"HTLC output {utxo.txid}:{utxo.vout} already spent")
            tx = deserialize_tx(presigned)
            if input_outpoints(tx) != [utxo.key]:
                raise InvalidParameter("Pre-signed redeem does not spend the HTLC output")
            self.signer.verify_htlc_input(tx, 0, redeem_script)
            return tx, op.raw_tx_hex

        if not op.secret:
            raise InvalidSecret("Redeem requested without a secret")
        if not verify_preimage(op.secret, htlc.hash_lock):
            raise InvalidSecret("Secret does not match hash lock")
        destination = op.destination_address or htlc.recipient_address or self.wallet.address
        tx = self.builder.build_redeem_tx(utxo, destination)
        raw_hex = tx.hex()
        self.signer.sign_htlc_input(tx, 0, redeem_script, self.wallet.privkey,
                                    RedeemBranch(op.secret))
        return tx, raw_hex

    def _build_refund(self, op: HTLCOperation, htlc: HTLC, height: int):
        utxo = self._htlc_utxo(htlc)
        if height < htlc.timelock:
            raise TimelockNotExpired(htlc.timelock, height)
        destination = op.destination_address or self.wallet.address
        tx = self.builder.build_refund_tx(utxo, htlc.timelock, destination)
        raw_hex = tx.hex()
        self.signer.sign_htlc_input(tx, 0, bytes.fromhex(htlc.redeem_script_hex),
                                    self.wallet.privkey, RefundBranch())
        return tx, raw_hex

    # =========================================================================
    # Recording
    # =========================================================================

    async def _recover_prior_attempt(self, op: HTLCOperation, htlc: HTLC) -> Optional[HTLCOperation]:
        """If the earlier broadcast of op.txid reached the node, record it and return the op."""
        confirmations = await self.rpc.get_transaction_confirmations(op.txid)
        if confirmations is None or not op.signed_tx_hex:
            return None
        log.info(f"[{htlc.id}] {op.operation_type.value}: earlier broadcast {op.txid} "
                 f"found on chain ({confirmations} confirmations)")
        tx = deserialize_tx(op.signed_tx_hex)
        with self.store.transaction():
            self.store.claim_utxos(input_outpoints(tx), op.txid)
            op = self.store.update_operation(op.id, expected_status=OperationStatus.PENDING,
                                             error_message=None)
        return self._record_broadcast(op, htlc, tx)

    def _record_broadcast(self, op: HTLCOperation, htlc: HTLC, tx: Transaction) -> HTLCOperation:
        txid = tx.txid
        with self.store.transaction():
            op = self.store.update_operation(
                op.id, expected_status=OperationStatus.PENDING,
                status=OperationStatus.BROADCAST, broadcast_at=utcnow(), error_message=None,
            )
            for utxo in self._new_outputs(op, htlc, tx):
                self.store.upsert_utxo(utxo)
            if op.operation_type is OperationType.CREATE:
                self.store.update_htlc(htlc.id, expected_state=HTLCState.CREATED,
                                       txid=txid, vout=HTLC_OUTPUT_INDEX)
        log.info(f"[{htlc.id}] {op.operation_type.value} broadcast: {txid}")
        return op

    def _new_outputs(self, op: HTLCOperation, htlc: HTLC, tx: Transaction) -> List[UTXO]:
        """Outputs of tx the relayer should track: the HTLC output and wallet-owned outputs."""
        txid = tx.txid
        wallet_spk = p2pkh_script_pubkey(hash160(bytes.fromhex(self.wallet.pubkey)))
        htlc_spk = bytes.fromhex(htlc.script_hex)
        outputs = []
        for vout, txout in enumerate(tx.outputs):
            if txout.script_pubkey == htlc_spk and op.operation_type is OperationType.CREATE:
                address = htlc.p2sh_address
            elif txout.script_pubkey == wallet_spk:
                address = self.wallet.address
            else:
                continue
            outputs.append(UTXO(
                txid=txid, vout=vout, amount=from_zatoshi(txout.value),
                script_pubkey=txout.script_pubkey.hex(), address=address, confirmations=0,
            ))
        return outputs

    def _record_failure(self, op: HTLCOperation, error: HTLCError, counted: bool):
        """
        Release any claim and record the error.

        TimelockNotExpired keeps the operation pending without using an
        attempt. Retryable errors fail the operation once attempts reach
        max_retry_attempts; anything else fails it immediately.
        """
        with self.store.transaction():
            current = self.store.get_operation(op.id)
            if current.status is not OperationStatus.PENDING:
                return
            if current.txid:
                self.store.release_utxos(current.txid)

            if isinstance(error, TimelockNotExpired):
                self.store.update_operation(op.id, error_message=str(error))
                log.info(str(error))
                return

            attempts = current.attempts if counted else current.attempts + 1
            if error.retryable and attempts < self.max_retry_attempts:
                status = OperationStatus.PENDING
                log.warning(f"{error} (attempt {attempts}/{self.max_retry_attempts}, will retry)")
            else:
                status = OperationStatus.FAILED
                log.error(f"{error} (attempt {attempts}/{self.max_retry_attempts}, giving up)")
            self.store.update_operation(op.id, status=status, attempts=attempts,
                                        error_message=str(error))


def secret_for_operation(op: HTLCOperation) -> Optional[str]:
    """Preimage revealed by a redeem operation, from the request or its scriptSig."""
    if op.secret:
        return op.secret
    if op.signed_tx_hex:
        try:
            tx = deserialize_tx(op.signed_tx_hex)
        except InvalidParameter:
            return None
        if tx.inputs:
            return extract_secret(tx.inputs[0].script_sig)
    return None

