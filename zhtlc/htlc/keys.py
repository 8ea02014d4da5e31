"""
secp256k1 key helpers.

Private keys are accepted as 64-char hex or WIF (compressed or not; the
engine always derives compressed public keys).
"""

import hashlib
import secrets
from typing import Tuple

import base58
from ecdsa import SigningKey, VerifyingKey, SECP256k1
from ecdsa.keys import MalformedPointError

from ..core import Network
from ..errors import InvalidParameter


def decode_wif(wif: str) -> Tuple[bytes, bool]:
    """Decode WIF to (private key bytes, compressed flag)."""
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError as e:
        raise InvalidParameter(f"Invalid WIF: {e}")

    if decoded[0] not in (0x80, 0xef):
        raise InvalidParameter(f"Invalid WIF prefix: {decoded[0]:#x}")
    if len(decoded) == 34 and decoded[-1] == 0x01:
        return decoded[1:33], True
    if len(decoded) == 33:
        return decoded[1:33], False
    raise InvalidParameter("Invalid WIF length")


def encode_wif(privkey: bytes, network: Network = Network.TESTNET) -> str:
    """Encode a private key as compressed WIF."""
    return base58.b58encode_check(bytes([network.wif_prefix]) + privkey + b"\x01").decode()


def parse_privkey(key: str) -> bytes:
    """Accept hex or WIF, return the 32 raw key bytes."""
    key = key.strip()
    if len(key) == 64:
        try:
            raw = bytes.fromhex(key)
        except ValueError:
            raw = None
        if raw is not None:
            return _check_scalar(raw)
    raw, _ = decode_wif(key)
    return _check_scalar(raw)


def _check_scalar(raw: bytes) -> bytes:
    n = int.from_bytes(raw, "big")
    if not 0 < n < SECP256k1.order:
        raise InvalidParameter("Private key out of range")
    return raw


def signing_key(key: str) -> SigningKey:
    return SigningKey.from_string(parse_privkey(key), curve=SECP256k1, hashfunc=hashlib.sha256)


def derive_pubkey(key: str) -> str:
    """Compressed public key (hex) for a hex or WIF private key."""
    vk = signing_key(key).get_verifying_key()
    return vk.to_string("compressed").hex()


def generate_privkey() -> str:
    """Fresh random private key as hex."""
    while True:
        raw = secrets.token_bytes(32)
        if 0 < int.from_bytes(raw, "big") < SECP256k1.order:
            return raw.hex()


def load_pubkey(pubkey_hex: str) -> VerifyingKey:
    """
    Parse a compressed secp256k1 public key.

    Raises:
        InvalidParameter: not hex, not 33 bytes with 02/03 prefix, or not on the curve
    """
    try:
        raw = bytes.fromhex(pubkey_hex)
    except (ValueError, TypeError):
        raise InvalidParameter(f"Public key is not hex: {pubkey_hex!r}")
    if len(raw) != 33 or raw[0] not in (2, 3):
        raise InvalidParameter("Public key must be 33-byte compressed (02/03 prefix)")
    try:
        return VerifyingKey.from_string(raw, curve=SECP256k1)
    except (MalformedPointError, ValueError):
        raise InvalidParameter("Public key is not a valid secp256k1 point")
