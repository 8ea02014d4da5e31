#!/usr/bin/env python3
"""
Signer tests: both HTLC branches, P2PKH funding inputs, and the
interpreter check that runs before a signature is handed out.
"""

import os
import sys
import unittest
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import (
    HOT_KEY, HOT_PUBKEY, RECIPIENT_KEY, RECIPIENT_PUBKEY, OTHER_KEY, SECRET, HASH_LOCK,
)
from zhtlc.core import HTLCParams, Network, UTXO, SEQUENCE_FINAL
from zhtlc.errors import InvalidSecret, SigningError
from zhtlc.htlc.builder import TransactionBuilder
from zhtlc.htlc.interpreter import verify_input, ScriptError
from zhtlc.htlc.keys import encode_wif, parse_privkey
from zhtlc.htlc.script import (
    HTLCScriptBuilder, pubkey_to_address, p2pkh_script_pubkey, hash160, tokenize, OP_1, OP_0,
)
from zhtlc.htlc.signer import TransactionSigner, RedeemBranch, RefundBranch, extract_secret
from zhtlc.htlc.tx import Transaction, TxIn, TxOut, deserialize_tx

TIMELOCK = 1000


class SignerTestCase(unittest.TestCase):

    def setUp(self):
        self.network = Network.TESTNET
        self.htlc = HTLCScriptBuilder(self.network).build(HTLCParams(
            recipient_pubkey=RECIPIENT_PUBKEY,
            refund_pubkey=HOT_PUBKEY,
            hash_lock=HASH_LOCK,
            timelock=TIMELOCK,
            amount=Decimal("0.01"),
        ))
        self.utxo = UTXO(txid="ab" * 32, vout=0, amount=Decimal("0.01"),
                         script_pubkey=self.htlc.script_pubkey.hex())
        self.builder = TransactionBuilder(self.network)
        self.signer = TransactionSigner()
        self.recipient_addr = pubkey_to_address(RECIPIENT_PUBKEY, self.network)
        self.refund_addr = pubkey_to_address(HOT_PUBKEY, self.network)

    def redeem_tx(self):
        return self.builder.build_redeem_tx(self.utxo, self.recipient_addr)

    def refund_tx(self):
        return self.builder.build_refund_tx(self.utxo, TIMELOCK, self.refund_addr)


class TestRedeemBranch(SignerTestCase):

    def test_redeem_script_sig_layout(self):
        tx = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                         RECIPIENT_KEY, RedeemBranch(SECRET))
        tokens = tokenize(tx.inputs[0].script_sig)
        self.assertEqual(len(tokens), 5)
        self.assertEqual(tokens[1].hex(), RECIPIENT_PUBKEY)
        self.assertEqual(tokens[2], SECRET.encode())
        self.assertEqual(tokens[3], OP_1)
        self.assertEqual(tokens[4], self.htlc.script)
        # DER signature + SIGHASH_ALL
        self.assertEqual(tokens[0][0], 0x30)
        self.assertEqual(tokens[0][-1], 0x01)

    def test_redeem_verifies(self):
        tx = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                         RECIPIENT_KEY, RedeemBranch(SECRET))
        verify_input(tx.inputs[0].script_sig, self.htlc.script_pubkey, tx, 0)

    def test_signing_is_deterministic(self):
        a = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch(SECRET))
        b = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch(SECRET))
        self.assertEqual(a.hex(), b.hex())
        self.assertEqual(a.txid, b.txid)

    def test_wif_key_gives_same_signature(self):
        wif = encode_wif(parse_privkey(RECIPIENT_KEY), self.network)
        a = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch(SECRET))
        b = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        wif, RedeemBranch(SECRET))
        self.assertEqual(a.hex(), b.hex())

    def test_hex_secret_equivalent_to_raw(self):
        a = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch(SECRET))
        b = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch(SECRET.encode().hex()))
        self.assertEqual(a.hex(), b.hex())

    def test_wrong_secret(self):
        with self.assertRaises(InvalidSecret):
            self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RedeemBranch("wrong-secret"))

    def test_wrong_key(self):
        with self.assertRaises(SigningError):
            self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        OTHER_KEY, RedeemBranch(SECRET))

    def test_refund_key_cannot_redeem(self):
        with self.assertRaises(SigningError):
            self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                        HOT_KEY, RedeemBranch(SECRET))

    def test_tampered_output_fails_verification(self):
        tx = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                         RECIPIENT_KEY, RedeemBranch(SECRET))
        tx.outputs[0].value -= 1
        with self.assertRaises(ScriptError):
            verify_input(tx.inputs[0].script_sig, self.htlc.script_pubkey, tx, 0)

    def test_extract_secret(self):
        tx = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                         RECIPIENT_KEY, RedeemBranch(SECRET))
        self.assertEqual(extract_secret(tx.inputs[0].script_sig), SECRET.encode().hex())

    def test_serialization_roundtrip_keeps_signature_valid(self):
        tx = self.signer.sign_htlc_input(self.redeem_tx(), 0, self.htlc.script,
                                         RECIPIENT_KEY, RedeemBranch(SECRET))
        parsed = deserialize_tx(tx.hex())
        self.assertEqual(parsed.txid, tx.txid)
        verify_input(parsed.inputs[0].script_sig, self.htlc.script_pubkey, parsed, 0)


class TestRefundBranch(SignerTestCase):

    def test_refund_script_sig_layout(self):
        tx = self.signer.sign_htlc_input(self.refund_tx(), 0, self.htlc.script,
                                         HOT_KEY, RefundBranch())
        tokens = tokenize(tx.inputs[0].script_sig)
        self.assertEqual(len(tokens), 4)
        self.assertEqual(tokens[1].hex(), HOT_PUBKEY)
        self.assertEqual(tokens[2], OP_0)
        self.assertEqual(tokens[3], self.htlc.script)
        self.assertIsNone(extract_secret(tx.inputs[0].script_sig))

    def test_refund_verifies(self):
        tx = self.signer.sign_htlc_input(self.refund_tx(), 0, self.htlc.script,
                                         HOT_KEY, RefundBranch())
        self.assertEqual(tx.locktime, TIMELOCK)
        verify_input(tx.inputs[0].script_sig, self.htlc.script_pubkey, tx, 0)

    def test_recipient_key_cannot_refund(self):
        with self.assertRaises(SigningError):
            self.signer.sign_htlc_input(self.refund_tx(), 0, self.htlc.script,
                                        RECIPIENT_KEY, RefundBranch())

    def test_locktime_below_timelock_rejected(self):
        tx = self.refund_tx()
        tx.locktime = TIMELOCK - 1
        with self.assertRaises(SigningError):
            self.signer.sign_htlc_input(tx, 0, self.htlc.script, HOT_KEY, RefundBranch())

    def test_final_sequence_rejected(self):
        tx = self.refund_tx()
        tx.inputs[0].sequence = SEQUENCE_FINAL
        with self.assertRaises(SigningError):
            self.signer.sign_htlc_input(tx, 0, self.htlc.script, HOT_KEY, RefundBranch())


class TestP2PKHInputs(unittest.TestCase):

    def test_sign_funding_inputs(self):
        pkh = hash160(bytes.fromhex(HOT_PUBKEY))
        spk = p2pkh_script_pubkey(pkh)
        tx = Transaction(
            inputs=[TxIn("11" * 32, 0), TxIn("22" * 32, 1)],
            outputs=[TxOut(100_000, spk)],
        )
        TransactionSigner().sign_p2pkh_inputs(tx, [0, 1], HOT_KEY)
        for i in range(2):
            verify_input(tx.inputs[i].script_sig, spk, tx, i)
        self.assertNotEqual(tx.inputs[0].script_sig, tx.inputs[1].script_sig)

    def test_wrong_owner_fails(self):
        spk = p2pkh_script_pubkey(hash160(bytes.fromhex(HOT_PUBKEY)))
        tx = Transaction(inputs=[TxIn("11" * 32, 0)], outputs=[TxOut(100_000, spk)])
        TransactionSigner().sign_p2pkh_inputs(tx, [0], OTHER_KEY)
        with self.assertRaises(ScriptError):
            verify_input(tx.inputs[0].script_sig, spk, tx, 0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
