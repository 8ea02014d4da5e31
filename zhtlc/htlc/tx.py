"""
Transparent transaction model and legacy signature hashing.

Serialization follows the pre-segwit Bitcoin layout:
    version | vin | vout | locktime
"""

import struct
from dataclasses import dataclass, field
from typing import List

from ..core import SEQUENCE_FINAL
from ..errors import InvalidParameter
from .script import double_sha256

TX_VERSION = 4

SIGHASH_ALL = 0x01


def var_int(n: int) -> bytes:
    """Encode variable length integer."""
    if n < 0xfd:
        return bytes([n])
    elif n <= 0xffff:
        return bytes([0xfd]) + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return bytes([0xfe]) + struct.pack('<I', n)
    else:
        return bytes([0xff]) + struct.pack('<Q', n)


@dataclass
class TxIn:
    txid: str                       # Display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL

    def serialize(self) -> bytes:
        return (bytes.fromhex(self.txid)[::-1]
                + struct.pack('<I', self.vout)
                + var_int(len(self.script_sig)) + self.script_sig
                + struct.pack('<I', self.sequence))


@dataclass
class TxOut:
    value: int                      # Zatoshis
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (struct.pack('<q', self.value)
                + var_int(len(self.script_pubkey)) + self.script_pubkey)


@dataclass
class Transaction:
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0
    version: int = TX_VERSION

    def serialize(self) -> bytes:
        data = struct.pack('<i', self.version)
        data += var_int(len(self.inputs))
        for txin in self.inputs:
            data += txin.serialize()
        data += var_int(len(self.outputs))
        for txout in self.outputs:
            data += txout.serialize()
        data += struct.pack('<I', self.locktime)
        return data

    def hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize())[::-1].hex()

    def copy(self) -> "Transaction":
        return Transaction(
            inputs=[TxIn(i.txid, i.vout, i.script_sig, i.sequence) for i in self.inputs],
            outputs=[TxOut(o.value, o.script_pubkey) for o in self.outputs],
            locktime=self.locktime,
            version=self.version,
        )

    def signature_hash(self, input_index: int, script_code: bytes,
                       hash_type: int = SIGHASH_ALL) -> bytes:
        """
        Legacy SIGHASH_ALL digest.

        All scriptSigs are blanked, the signed input carries script_code,
        and the hash type is appended before double-SHA256.
        """
        if hash_type != SIGHASH_ALL:
            raise InvalidParameter(f"Unsupported sighash type: {hash_type:#x}")
        if not 0 <= input_index < len(self.inputs):
            raise InvalidParameter(f"Input index {input_index} out of range")
        tx = self.copy()
        for i, txin in enumerate(tx.inputs):
            txin.script_sig = script_code if i == input_index else b""
        return double_sha256(tx.serialize() + struct.pack('<I', hash_type))


def serialize_tx(tx: Transaction) -> str:
    return tx.hex()


def deserialize_tx(tx_hex: str) -> Transaction:
    """
    Parse a serialized transaction.

    Raises:
        InvalidParameter: truncated or trailing data
    """
    try:
        data = bytes.fromhex(tx_hex)
    except ValueError:
        raise InvalidParameter("Transaction is not hex")
    pos = 0

    def read(n: int) -> bytes:
        nonlocal pos
        if pos + n > len(data):
            raise InvalidParameter("Truncated transaction")
        chunk = data[pos:pos + n]
        pos += n
        return chunk

    def read_var_int() -> int:
        first = read(1)[0]
        if first < 0xfd:
            return first
        size = {0xfd: ('<H', 2), 0xfe: ('<I', 4), 0xff: ('<Q', 8)}[first]
        return struct.unpack(size[0], read(size[1]))[0]

    tx = Transaction(version=struct.unpack('<i', read(4))[0])
    for _ in range(read_var_int()):
        txid = read(32)[::-1].hex()
        vout = struct.unpack('<I', read(4))[0]
        script_sig = read(read_var_int())
        sequence = struct.unpack('<I', read(4))[0]
        tx.inputs.append(TxIn(txid, vout, script_sig, sequence))
    for _ in range(read_var_int()):
        value = struct.unpack('<q', read(8))[0]
        tx.outputs.append(TxOut(value, read(read_var_int())))
    tx.locktime = struct.unpack('<I', read(4))[0]
    if pos != len(data):
        raise InvalidParameter("Trailing data after transaction")
    return tx
