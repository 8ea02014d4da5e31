"""
Core types and helpers for zhtlc.

Amounts are exact decimals (ZEC) at the edges and integer zatoshis inside
the transaction engine.
"""

import hashlib
import secrets
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Union
from datetime import datetime, timezone

from .errors import InvalidParameter


ZATOSHI_PER_ZEC = 100_000_000

# Outputs below this value are non-standard and would not relay
DUST_THRESHOLD = 546

DEFAULT_NETWORK_FEE = Decimal("0.0001")

# nLockTime values at or above this are interpreted as unix timestamps
LOCKTIME_THRESHOLD = 500_000_000

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_LOCKTIME = 0xFFFFFFFE


class Network(Enum):
    """Zcash transparent network, with its Base58Check version bytes."""
    TESTNET = "testnet"
    MAINNET = "mainnet"

    @classmethod
    def parse(cls, value: Union[str, "Network"]) -> "Network":
        if isinstance(value, Network):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidParameter(f"Unknown network: {value}")

    @property
    def p2pkh_prefix(self) -> bytes:
        return b"\x1c\xb8" if self is Network.MAINNET else b"\x1d\x25"

    @property
    def p2sh_prefix(self) -> bytes:
        return b"\x1c\xbd" if self is Network.MAINNET else b"\x1c\xba"

    @property
    def wif_prefix(self) -> int:
        return 0x80 if self is Network.MAINNET else 0xEF

    @property
    def chain_name(self) -> str:
        return f"zcash-{self.value}"

    @property
    def default_explorer(self) -> str:
        if self is Network.MAINNET:
            return "https://api.zcha.in"
        return "https://explorer.testnet.z.cash/api"


class HTLCState(Enum):
    """Stored HTLC lifecycle states."""
    CREATED = "created"     # Script and address derived, nothing on chain
    FUNDED = "funded"       # Funding transaction confirmed
    REDEEMED = "redeemed"   # Hash branch spend confirmed, secret known
    REFUNDED = "refunded"   # Timelock branch spend confirmed

    @property
    def terminal(self) -> bool:
        return self in (HTLCState.REDEEMED, HTLCState.REFUNDED)


# Derived label, never stored
EXPIRED = "expired"


class OperationType(Enum):
    CREATE = "create"
    REDEEM = "redeem"
    REFUND = "refund"


class OperationStatus(Enum):
    PENDING = "pending"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Amounts
# =============================================================================

def to_decimal(value: Union[str, int, float, Decimal]) -> Decimal:
    """Parse a ZEC amount. Floats go through str() to avoid binary noise."""
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidParameter(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidParameter(f"Invalid amount: {value!r}")
    return amount


def to_zatoshi(value: Union[str, int, float, Decimal]) -> int:
    """
    Convert a ZEC amount to integer zatoshis.

    Raises:
        InvalidParameter: negative or more than 8 fractional digits
    """
    amount = to_decimal(value)
    if amount < 0:
        raise InvalidParameter(f"Negative amount: {amount}")
    zats = amount * ZATOSHI_PER_ZEC
    if zats != zats.to_integral_value():
        raise InvalidParameter(f"Amount has more than 8 decimal places: {amount}")
    return int(zats)


def from_zatoshi(zats: int) -> Decimal:
    return (Decimal(zats) / ZATOSHI_PER_ZEC).quantize(Decimal("0.00000001"))


# =============================================================================
# Secrets
# =============================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def generate_secret() -> tuple:
    """
    Generate a random secret and its hash lock.

    Returns:
        (secret_hex, hash_lock_hex)
    """
    secret = secrets.token_bytes(32)
    return secret.hex(), sha256(secret).hex()


def secret_to_bytes(secret: Union[str, bytes]) -> bytes:
    """
    Normalize a preimage.

    Strings that decode as hex are taken as raw bytes, anything else as UTF-8.
    """
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    if len(secret) % 2 == 0:
        try:
            return bytes.fromhex(secret)
        except ValueError:
            pass
    return secret.encode("utf-8")


def hash_secret(secret: Union[str, bytes]) -> str:
    """SHA256 of a preimage as hex, the form stored as hash_lock."""
    return sha256(secret_to_bytes(secret)).hex()


def verify_preimage(secret: Union[str, bytes], hash_lock: str) -> bool:
    """Check that sha256(secret) == hash_lock."""
    try:
        return sha256(secret_to_bytes(secret)) == bytes.fromhex(hash_lock)
    except ValueError:
        return False


# =============================================================================
# Records
# =============================================================================

@dataclass
class HTLCParams:
    """Parameters needed to derive an HTLC script."""
    recipient_pubkey: str   # Compressed pubkey, hash branch (hex)
    refund_pubkey: str      # Compressed pubkey, timelock branch (hex)
    hash_lock: str          # SHA256 of the secret (hex, 64 chars)
    timelock: int           # Absolute block height
    amount: Decimal
    network: Network = Network.TESTNET


@dataclass
class HTLC:
    """Persisted HTLC record."""
    id: str
    hash_lock: str
    timelock: int
    recipient_pubkey: str
    refund_pubkey: str
    amount: Decimal
    network: Network
    p2sh_address: str
    script_hex: str
    redeem_script_hex: str
    state: HTLCState = HTLCState.CREATED
    secret: Optional[str] = None
    txid: Optional[str] = None
    vout: Optional[int] = None
    signed_redeem_tx: Optional[str] = None
    recipient_address: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    @property
    def params(self) -> HTLCParams:
        return HTLCParams(
            recipient_pubkey=self.recipient_pubkey,
            refund_pubkey=self.refund_pubkey,
            hash_lock=self.hash_lock,
            timelock=self.timelock,
            amount=self.amount,
            network=self.network,
        )

    def status_label(self, height: int) -> str:
        """Stored state, or 'expired' for a funded HTLC past its timelock."""
        if self.state is HTLCState.FUNDED and height >= self.timelock:
            return EXPIRED
        return self.state.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hash_lock": self.hash_lock,
            "timelock": self.timelock,
            "recipient_pubkey": self.recipient_pubkey,
            "refund_pubkey": self.refund_pubkey,
            "amount": str(self.amount),
            "network": self.network.value,
            "p2sh_address": self.p2sh_address,
            "script_hex": self.script_hex,
            "redeem_script_hex": self.redeem_script_hex,
            "state": self.state.value,
            "secret": self.secret,
            "txid": self.txid,
            "vout": self.vout,
            "signed_redeem_tx": self.signed_redeem_tx,
            "recipient_address": self.recipient_address,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HTLC":
        d = dict(d)
        d["amount"] = Decimal(d["amount"])
        d["network"] = Network(d["network"])
        d["state"] = HTLCState(d["state"])
        return cls(**d)


@dataclass
class HTLCOperation:
    """One attempt record against an HTLC."""
    id: str
    htlc_id: str
    operation_type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    raw_tx_hex: Optional[str] = None
    signed_tx_hex: Optional[str] = None
    txid: Optional[str] = None
    block_height: Optional[int] = None
    error_message: Optional[str] = None
    attempts: int = 0
    missing_checks: int = 0                     # Syncs the node did not know txid
    secret: Optional[str] = None                # Redeem request preimage (hex)
    destination_address: Optional[str] = None   # Redeem/refund payout override
    broadcast_at: Optional[str] = None
    confirmed_at: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "htlc_id": self.htlc_id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "raw_tx_hex": self.raw_tx_hex,
            "signed_tx_hex": self.signed_tx_hex,
            "txid": self.txid,
            "block_height": self.block_height,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "missing_checks": self.missing_checks,
            "secret": self.secret,
            "destination_address": self.destination_address,
            "broadcast_at": self.broadcast_at,
            "confirmed_at": self.confirmed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "HTLCOperation":
        d = dict(d)
        d["operation_type"] = OperationType(d["operation_type"])
        d["status"] = OperationStatus(d["status"])
        return cls(**d)


@dataclass
class UTXO:
    """Unspent output tracked by the relayer."""
    txid: str
    vout: int
    amount: Decimal
    script_pubkey: str
    address: str = ""
    confirmations: int = 0
    spent: bool = False
    spent_in_tx: Optional[str] = None
    block_height: Optional[int] = None

    @property
    def key(self) -> tuple:
        return (self.txid, self.vout)

    @property
    def zatoshis(self) -> int:
        return to_zatoshi(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "amount": str(self.amount),
            "script_pubkey": self.script_pubkey,
            "address": self.address,
            "confirmations": self.confirmations,
            "spent": self.spent,
            "spent_in_tx": self.spent_in_tx,
            "block_height": self.block_height,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UTXO":
        d = dict(d)
        d["amount"] = Decimal(d["amount"])
        return cls(**d)


@dataclass
class Checkpoint:
    chain: str
    last_block: int = 0
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"chain": self.chain, "last_block": self.last_block,
                "updated_at": self.updated_at}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(**d)
