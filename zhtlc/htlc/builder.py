"""
HTLC transaction assembly.

Funding:  wallet inputs -> [HTLC P2SH (vout 0), change]
Redeem:   HTLC input (final sequence, locktime 0) -> recipient
Refund:   HTLC input (sequence 0xFFFFFFFE, locktime = timelock) -> refund address

Transactions come back unsigned; see signer.TransactionSigner.
"""

import logging
from dataclasses import dataclass
from typing import List, Iterable, Optional

from ..core import (
    HTLCParams, UTXO, Network, to_zatoshi, DUST_THRESHOLD, DEFAULT_NETWORK_FEE,
    SEQUENCE_FINAL, SEQUENCE_LOCKTIME,
)
from ..errors import AlreadySpent, InvalidParameter
from .script import HTLCScriptBuilder, HTLCScript, address_to_script_pubkey
from .selector import select_utxos, Selection
from .tx import Transaction, TxIn, TxOut

log = logging.getLogger(__name__)

HTLC_OUTPUT_INDEX = 0


@dataclass
class FundingTx:
    tx: Transaction
    htlc: HTLCScript
    vout: int
    selection: Selection

    @property
    def change_vout(self) -> Optional[int]:
        return 1 if self.selection.change else None


class TransactionBuilder:
    """Builds unsigned funding, redeem and refund transactions."""

    def __init__(self, network: Network = Network.TESTNET, fee=DEFAULT_NETWORK_FEE,
                 dust_threshold: int = DUST_THRESHOLD):
        self.network = Network.parse(network)
        self.fee = to_zatoshi(fee)
        self.dust_threshold = dust_threshold
        self.scripts = HTLCScriptBuilder(self.network)

    def estimate_size(self, num_inputs: int, num_outputs: int) -> int:
        """Rough P2PKH-input size in bytes, used for fee sanity logging."""
        return 10 + num_inputs * 148 + num_outputs * 34

    def build_funding_tx(self, params: HTLCParams, candidates: Iterable[UTXO],
                         change_address: str, min_confirmations: int = 1) -> FundingTx:
        """
        Build an unsigned funding transaction paying into the HTLC.

        Args:
            params: HTLC parameters (amount in ZEC)
            candidates: wallet UTXO pool
            change_address: where change goes
            min_confirmations: UTXO eligibility floor

        Returns:
            FundingTx with the HTLC output at vout 0

        Raises:
            InvalidParameter: bad params, amount below dust, bad change address
            InsufficientFunds: pool cannot cover amount + fee
        """
        htlc = self.scripts.build(params)
        amount = to_zatoshi(params.amount)
        if amount < self.dust_threshold:
            raise InvalidParameter(f"HTLC amount {amount} zat is below dust threshold")
        change_spk = address_to_script_pubkey(change_address, self.network)

        selection = select_utxos(candidates, amount, self.fee,
                                 min_confirmations=min_confirmations,
                                 dust_threshold=self.dust_threshold)

        tx = Transaction()
        for utxo in selection.utxos:
            tx.inputs.append(TxIn(utxo.txid, utxo.vout, sequence=SEQUENCE_FINAL))
        tx.outputs.append(TxOut(amount, htlc.script_pubkey))
        if selection.change:
            tx.outputs.append(TxOut(selection.change, change_spk))

        log.debug(f"Funding tx: {len(tx.inputs)} inputs, fee {selection.fee} zat, "
                  f"~{self.estimate_size(len(tx.inputs), len(tx.outputs))} bytes")
        return FundingTx(tx=tx, htlc=htlc, vout=HTLC_OUTPUT_INDEX, selection=selection)

    def build_redeem_tx(self, htlc_utxo: UTXO, recipient_address: str) -> Transaction:
        """Unsigned hash-branch spend of the HTLC output."""
        return self._build_spend(htlc_utxo, recipient_address,
                                 locktime=0, sequence=SEQUENCE_FINAL)

    def build_refund_tx(self, htlc_utxo: UTXO, timelock: int, refund_address: str) -> Transaction:
        """Unsigned timelock-branch spend; nLockTime is set to the HTLC timelock."""
        if timelock <= 0:
            raise InvalidParameter(f"Timelock must be positive: {timelock}")
        return self._build_spend(htlc_utxo, refund_address,
                                 locktime=timelock, sequence=SEQUENCE_LOCKTIME)

    def _build_spend(self, htlc_utxo: UTXO, address: str, locktime: int,
                     sequence: int) -> Transaction:
        if htlc_utxo.spent:
            raise AlreadySpent(f"HTLC output {htlc_utxo.txid}:{htlc_utxo.vout} already spent")
        output_value = htlc_utxo.zatoshis - self.fee
        if output_value < self.dust_threshold:
            raise InvalidParameter(
                f"Output {output_value} zat after fee is below dust threshold"
            )
        script_pubkey = address_to_script_pubkey(address, self.network)
        return Transaction(
            inputs=[TxIn(htlc_utxo.txid, htlc_utxo.vout, sequence=sequence)],
            outputs=[TxOut(output_value, script_pubkey)],
            locktime=locktime,
        )


def input_outpoints(tx: Transaction) -> List[tuple]:
    return [(i.txid, i.vout) for i in tx.inputs]
