"""
HTLC transaction engine.

An HTLC locks funds so that they can be:
1. Redeemed by the recipient with the secret (preimage) before the timelock
2. Refunded to the funder once the timelock height is reached

Modules:
- script: HTLC redeem script, P2SH wrapping, addresses
- tx: transaction model and legacy sighash
- interpreter: script evaluation used to self-check signatures
- signer: redeem/refund/P2PKH signing
- selector: UTXO selection
- builder: funding/redeem/refund assembly
"""

from .script import HTLCScriptBuilder, HTLCScript, parse_htlc_script
from .tx import Transaction, TxIn, TxOut, deserialize_tx, serialize_tx
from .signer import TransactionSigner, RedeemBranch, RefundBranch
from .selector import select_utxos, Selection
from .builder import TransactionBuilder, FundingTx
from .wallet import Wallet

__all__ = [
    "HTLCScriptBuilder",
    "HTLCScript",
    "parse_htlc_script",
    "Transaction",
    "TxIn",
    "TxOut",
    "deserialize_tx",
    "serialize_tx",
    "TransactionSigner",
    "RedeemBranch",
    "RefundBranch",
    "select_utxos",
    "Selection",
    "TransactionBuilder",
    "FundingTx",
    "Wallet",
]
