"""
HTLC script construction for Zcash transparent addresses.

Creates P2SH HTLCs in the BIP-199 pubkey-hash layout.

HTLC Script Structure:
    OP_IF
        OP_SHA256 <hash_lock> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <hash160(recipient_pubkey)>
    OP_ELSE
        <timelock> OP_CHECKLOCKTIMEVERIFY OP_DROP
        OP_DUP OP_HASH160 <hash160(refund_pubkey)>
    OP_ENDIF
    OP_EQUALVERIFY OP_CHECKSIG

To redeem (with secret):
    <signature> <pubkey> <secret> OP_1 <script>

To refund (after timelock):
    <signature> <pubkey> OP_0 <script>
"""

import hashlib
import struct
import logging
from dataclasses import dataclass
from typing import List, Union

import base58
from Crypto.Hash import RIPEMD160

from ..core import HTLCParams, Network, LOCKTIME_THRESHOLD
from ..errors import InvalidParameter
from .keys import load_pubkey

log = logging.getLogger(__name__)


# Script opcodes
OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_16 = 0x60
OP_NOP = 0x61
OP_IF = 0x63
OP_NOTIF = 0x64
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_VERIFY = 0x69
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1


# =============================================================================
# Hashing and encoding primitives
# =============================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def push_data(data: bytes) -> bytes:
    """Minimal push opcode for a data element."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack('<I', length) + data


def encode_script_num(n: int) -> bytes:
    """Little-endian sign-magnitude script number."""
    if n == 0:
        return b""
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def decode_script_num(data: bytes) -> int:
    if not data:
        return 0
    result = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(result & ~(0x80 << (8 * (len(data) - 1))))
    return result


def push_int(n: int) -> bytes:
    """Push integer to script (small ints use OP_0..OP_16)."""
    if n == 0:
        return bytes([OP_0])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])
    return push_data(encode_script_num(n))


def tokenize(script: bytes) -> List[Union[int, bytes]]:
    """
    Split a script into opcodes (ints) and pushed data (bytes).

    Raises:
        InvalidParameter: truncated push
    """
    tokens = []
    i = 0
    while i < len(script):
        op = script[i]
        i += 1
        if 0 < op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            if i + 1 > len(script):
                raise InvalidParameter("Truncated PUSHDATA1")
            size = script[i]
            i += 1
        elif op == OP_PUSHDATA2:
            if i + 2 > len(script):
                raise InvalidParameter("Truncated PUSHDATA2")
            size = struct.unpack('<H', script[i:i + 2])[0]
            i += 2
        elif op == OP_PUSHDATA4:
            if i + 4 > len(script):
                raise InvalidParameter("Truncated PUSHDATA4")
            size = struct.unpack('<I', script[i:i + 4])[0]
            i += 4
        else:
            tokens.append(op)
            continue
        if i + size > len(script):
            raise InvalidParameter("Push past end of script")
        tokens.append(script[i:i + size])
        i += size
    return tokens


# =============================================================================
# Addresses
# =============================================================================

def p2sh_script_pubkey(script: bytes) -> bytes:
    """OP_HASH160 <hash160(script)> OP_EQUAL"""
    return bytes([OP_HASH160]) + push_data(hash160(script)) + bytes([OP_EQUAL])


def p2pkh_script_pubkey(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <pubkey_hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return (bytes([OP_DUP, OP_HASH160]) + push_data(pubkey_hash)
            + bytes([OP_EQUALVERIFY, OP_CHECKSIG]))


def script_to_p2sh_address(script: bytes, network: Network = Network.TESTNET) -> str:
    """Base58Check P2SH address (t2... testnet, t3... mainnet)."""
    return base58.b58encode_check(network.p2sh_prefix + hash160(script)).decode()


def pubkey_to_address(pubkey_hex: str, network: Network = Network.TESTNET) -> str:
    """Base58Check P2PKH address (tm... testnet, t1... mainnet)."""
    load_pubkey(pubkey_hex)
    return base58.b58encode_check(
        network.p2pkh_prefix + hash160(bytes.fromhex(pubkey_hex))
    ).decode()


def address_to_script_pubkey(address: str, network: Network = Network.TESTNET) -> bytes:
    """
    Decode a transparent address to its scriptPubKey.

    Args:
        address: P2PKH or P2SH Base58Check address
        network: network the address must belong to

    Returns:
        scriptPubKey bytes

    Raises:
        InvalidParameter: bad checksum, wrong length or wrong network prefix
    """
    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        raise InvalidParameter(f"Invalid address: {address}")
    if len(decoded) != 22:
        raise InvalidParameter(f"Invalid address length: {address}")

    prefix, payload = decoded[:2], decoded[2:]
    if prefix == network.p2pkh_prefix:
        return p2pkh_script_pubkey(payload)
    if prefix == network.p2sh_prefix:
        return bytes([OP_HASH160]) + push_data(payload) + bytes([OP_EQUAL])
    raise InvalidParameter(f"Address {address} is not a {network.value} transparent address")


# =============================================================================
# HTLC script
# =============================================================================

@dataclass
class HTLCScript:
    """Derived locking data for one HTLC."""
    script: bytes           # Redeem script
    script_pubkey: bytes    # P2SH wrapper
    address: str

    @property
    def script_hex(self) -> str:
        return self.script.hex()


class HTLCScriptBuilder:
    """
    Derives HTLC redeem scripts and P2SH addresses.

    Pure and deterministic: identical parameters always produce
    byte-identical output.
    """

    def __init__(self, network: Network = Network.TESTNET):
        self.network = Network.parse(network)

    @staticmethod
    def validate(params: HTLCParams):
        if not isinstance(params.timelock, int) or isinstance(params.timelock, bool):
            raise InvalidParameter(f"Timelock must be an integer block height: {params.timelock!r}")
        if params.timelock <= 0:
            raise InvalidParameter(f"Timelock must be positive: {params.timelock}")
        if params.timelock >= LOCKTIME_THRESHOLD:
            raise InvalidParameter(
                f"Timelock {params.timelock} is a timestamp, expected a block height"
            )
        try:
            hash_lock = bytes.fromhex(params.hash_lock)
        except (ValueError, TypeError):
            raise InvalidParameter("Hash lock is not hex")
        if len(hash_lock) != 32:
            raise InvalidParameter(f"Hash lock must be 32 bytes, got {len(hash_lock)}")
        load_pubkey(params.recipient_pubkey)
        load_pubkey(params.refund_pubkey)

    def build_script(self, params: HTLCParams) -> bytes:
        """
        Create HTLC redeem script.

        Args:
            params: recipient/refund pubkeys, hash lock, timelock

        Returns:
            Redeem script bytes

        Raises:
            InvalidParameter: on any malformed parameter
        """
        self.validate(params)
        recipient_pkh = hash160(bytes.fromhex(params.recipient_pubkey))
        refund_pkh = hash160(bytes.fromhex(params.refund_pubkey))

        script = bytes([OP_IF])
        script += bytes([OP_SHA256])
        script += push_data(bytes.fromhex(params.hash_lock))
        script += bytes([OP_EQUALVERIFY, OP_DUP, OP_HASH160])
        script += push_data(recipient_pkh)
        script += bytes([OP_ELSE])
        script += push_int(params.timelock)
        script += bytes([OP_CHECKLOCKTIMEVERIFY, OP_DROP, OP_DUP, OP_HASH160])
        script += push_data(refund_pkh)
        script += bytes([OP_ENDIF])
        script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])
        return script

    def build(self, params: HTLCParams) -> HTLCScript:
        """Script plus its P2SH scriptPubKey and address."""
        script = self.build_script(params)
        return HTLCScript(
            script=script,
            script_pubkey=p2sh_script_pubkey(script),
            address=script_to_p2sh_address(script, self.network),
        )


@dataclass
class ParsedHTLCScript:
    hash_lock: str
    recipient_pubkey_hash: str
    refund_pubkey_hash: str
    timelock: int


def parse_htlc_script(script: bytes) -> ParsedHTLCScript:
    """
    Recover the parameters embedded in an HTLC redeem script.

    Raises:
        InvalidParameter: script does not have the HTLC layout
    """
    tokens = tokenize(script)
    layout = [
        OP_IF, OP_SHA256, bytes, OP_EQUALVERIFY, OP_DUP, OP_HASH160, bytes,
        OP_ELSE, None, OP_CHECKLOCKTIMEVERIFY, OP_DROP, OP_DUP, OP_HASH160, bytes,
        OP_ENDIF, OP_EQUALVERIFY, OP_CHECKSIG,
    ]
    if len(tokens) != len(layout):
        raise InvalidParameter("Not an HTLC script")
    for expected, token in zip(layout, tokens):
        if expected is None:
            continue
        if expected is bytes:
            if not isinstance(token, bytes):
                raise InvalidParameter("Not an HTLC script")
        elif token != expected:
            raise InvalidParameter("Not an HTLC script")

    hash_lock, recipient_pkh, timelock_tok, refund_pkh = tokens[2], tokens[6], tokens[8], tokens[13]
    if isinstance(timelock_tok, bytes):
        timelock = decode_script_num(timelock_tok)
    elif OP_1 <= timelock_tok <= OP_16:
        timelock = timelock_tok - 0x50
    else:
        raise InvalidParameter("Not an HTLC script")
    if len(hash_lock) != 32 or len(recipient_pkh) != 20 or len(refund_pkh) != 20:
        raise InvalidParameter("Not an HTLC script")

    return ParsedHTLCScript(
        hash_lock=hash_lock.hex(),
        recipient_pubkey_hash=recipient_pkh.hex(),
        refund_pubkey_hash=refund_pkh.hex(),
        timelock=timelock,
    )
