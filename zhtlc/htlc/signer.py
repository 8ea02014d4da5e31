"""
HTLC Spend Signer.

Signs the hash branch (redeem) or timelock branch (refund) of an HTLC input
with legacy SIGHASH_ALL and deterministic (RFC 6979) low-S ECDSA.

scriptSig layouts:
    redeem: <signature> <pubkey> <secret> OP_1 <script>
    refund: <signature> <pubkey> OP_0 <script>

Every unlocking script is run through the interpreter before it is returned.
"""

import logging
from dataclasses import dataclass
from typing import Union, List, Optional

from ecdsa.util import sigencode_der_canonize

from ..core import secret_to_bytes, sha256
from ..errors import InvalidSecret, SigningError, InvalidParameter
from .interpreter import verify_input, ScriptError
from .keys import signing_key
from .script import (
    OP_0, OP_1, push_data, hash160, p2sh_script_pubkey, p2pkh_script_pubkey,
    parse_htlc_script, tokenize,
)
from .tx import Transaction, SIGHASH_ALL

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedeemBranch:
    """Hash branch; carries the preimage."""
    secret: Union[str, bytes]

    @property
    def preimage(self) -> bytes:
        return secret_to_bytes(self.secret)


@dataclass(frozen=True)
class RefundBranch:
    """Timelock branch."""
    pass


SpendBranch = Union[RedeemBranch, RefundBranch]


def sign_digest(privkey: str, digest: bytes) -> bytes:
    """DER signature with the SIGHASH_ALL byte appended."""
    sk = signing_key(privkey)
    der = sk.sign_digest_deterministic(digest, sigencode=sigencode_der_canonize)
    return der + bytes([SIGHASH_ALL])


class TransactionSigner:
    """Produces and self-checks unlocking scripts."""

    def sign_htlc_input(self, tx: Transaction, input_index: int, redeem_script: bytes,
                        privkey: str, branch: SpendBranch) -> Transaction:
        """
        Sign one HTLC input in place.

        Args:
            tx: unsigned spending transaction
            input_index: index of the HTLC input
            redeem_script: serialized HTLC script
            privkey: hex or WIF key for the branch's pubkey hash
            branch: RedeemBranch(secret) or RefundBranch()

        Returns:
            The same transaction with its scriptSig set

        Raises:
            InvalidSecret: sha256(secret) != hash_lock
            SigningError: key does not match the branch, or the result
                would not verify
        """
        parsed = parse_htlc_script(redeem_script)
        try:
            sk = signing_key(privkey)
        except InvalidParameter as e:
            raise SigningError(f"Bad signing key: {e.message}")
        pubkey = sk.get_verifying_key().to_string("compressed")

        if isinstance(branch, RedeemBranch):
            preimage = branch.preimage
            if sha256(preimage).hex() != parsed.hash_lock:
                raise InvalidSecret("Secret does not match hash lock")
            expected_pkh = parsed.recipient_pubkey_hash
        elif isinstance(branch, RefundBranch):
            expected_pkh = parsed.refund_pubkey_hash
        else:
            raise SigningError(f"Unknown spend branch: {branch!r}")

        if hash160(pubkey).hex() != expected_pkh:
            raise SigningError("Signing key does not match the branch public key")

        digest = tx.signature_hash(input_index, redeem_script)
        sig = sign_digest(privkey, digest)

        script_sig = push_data(sig) + push_data(pubkey)
        if isinstance(branch, RedeemBranch):
            script_sig += push_data(preimage) + bytes([OP_1])
        else:
            script_sig += bytes([OP_0])
        script_sig += push_data(redeem_script)

        tx.inputs[input_index].script_sig = script_sig
        self._verify(tx, input_index, script_sig, p2sh_script_pubkey(redeem_script))
        return tx

    def sign_p2pkh_inputs(self, tx: Transaction, input_indexes: List[int],
                          privkey: str) -> Transaction:
        """Sign wallet-owned P2PKH inputs with <sig> <pubkey>."""
        try:
            sk = signing_key(privkey)
        except InvalidParameter as e:
            raise SigningError(f"Bad signing key: {e.message}")
        pubkey = sk.get_verifying_key().to_string("compressed")
        script_pubkey = p2pkh_script_pubkey(hash160(pubkey))

        for index in input_indexes:
            digest = tx.signature_hash(index, script_pubkey)
            tx.inputs[index].script_sig = push_data(sign_digest(privkey, digest)) + push_data(pubkey)

        # Verify after all inputs are set; sighash blanks the others anyway
        for index in input_indexes:
            self._verify(tx, index, tx.inputs[index].script_sig, script_pubkey)
        return tx

    def verify_htlc_input(self, tx: Transaction, input_index: int, redeem_script: bytes):
        """Check an externally signed HTLC spend; raises SigningError if it would be rejected."""
        self._verify(tx, input_index, tx.inputs[input_index].script_sig,
                     p2sh_script_pubkey(redeem_script))

    @staticmethod
    def _verify(tx: Transaction, index: int, script_sig: bytes, script_pubkey: bytes):
        try:
            verify_input(script_sig, script_pubkey, tx, index)
        except ScriptError as e:
            log.error(f"Unlocking script for input {index} rejected: {e}")
            raise SigningError(f"Unlocking script rejected: {e}")


def extract_secret(script_sig: bytes) -> Optional[str]:
    """
    Pull the preimage out of a hash-branch scriptSig.

    Returns:
        Secret as hex, or None for a refund (or non-HTLC) scriptSig
    """
    try:
        tokens = tokenize(script_sig)
    except InvalidParameter:
        return None
    if len(tokens) == 5 and tokens[3] == OP_1 and isinstance(tokens[2], bytes):
        return tokens[2].hex()
    return None
