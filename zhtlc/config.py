"""
Environment configuration.

    RELAYER_HOT_WALLET_PRIVKEY     hex or WIF key for the relayer wallet (required)
    RELAYER_HOT_WALLET_ADDRESS     matching P2PKH address (derived when unset)
    RELAYER_MAX_TX_PER_BATCH       pending operations per cycle (10)
    RELAYER_POLL_INTERVAL_SECS     relayer cycle interval (30)
    RELAYER_MAX_RETRY_ATTEMPTS     attempts before an operation fails (3)
    RELAYER_MIN_CONFIRMATIONS      confirmations for UTXOs and operations (1)
    RELAYER_NETWORK_FEE            fixed fee in ZEC (0.0001)
    RELAYER_DUST_THRESHOLD         dust limit in zatoshis (546)
    RELAYER_CHECKPOINT_INTERVAL_SECS  checkpoint sync interval (30)
    RELAYER_AUTO_REFUND            enqueue refunds for expired HTLCs (true)
    RELAYER_MAX_MISSING_CHECKS     syncs a broadcast tx may be unknown to the node
                                   before it is treated as dropped (10)
    RELAYER_PRUNE_DEPTH            blocks after which spent UTXO rows of confirmed
                                   operations are deleted (100)
    HTLC_DB_PATH                   JSON store path (~/.zhtlc/htlc_db.json)

Node settings (ZCASH_*) live in chains.zcash.ZECConfig.
"""

import os
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Optional

from .core import DEFAULT_NETWORK_FEE, DUST_THRESHOLD, Network, to_decimal
from .chains.zcash import ZECConfig
from .errors import InvalidParameter


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidParameter(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RelayerConfig:
    """Relayer engine settings."""
    hot_wallet_privkey: str
    hot_wallet_address: str = ""
    max_tx_per_batch: int = 10
    poll_interval_secs: int = 30
    max_retry_attempts: int = 3
    min_confirmations: int = 1
    network_fee: Decimal = DEFAULT_NETWORK_FEE
    dust_threshold: int = DUST_THRESHOLD
    checkpoint_interval_secs: int = 30
    auto_refund: bool = True
    max_missing_checks: int = 10
    prune_depth: int = 100

    def __post_init__(self):
        if self.max_tx_per_batch <= 0:
            raise InvalidParameter("max_tx_per_batch must be positive")
        if self.max_retry_attempts <= 0:
            raise InvalidParameter("max_retry_attempts must be positive")
        if self.min_confirmations < 0:
            raise InvalidParameter("min_confirmations cannot be negative")
        if self.max_missing_checks <= 0:
            raise InvalidParameter("max_missing_checks must be positive")
        if self.prune_depth <= 0:
            raise InvalidParameter("prune_depth must be positive")

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        privkey = os.environ.get("RELAYER_HOT_WALLET_PRIVKEY", "")
        if not privkey:
            raise InvalidParameter("RELAYER_HOT_WALLET_PRIVKEY must be set")
        return cls(
            hot_wallet_privkey=privkey,
            hot_wallet_address=os.environ.get("RELAYER_HOT_WALLET_ADDRESS", ""),
            max_tx_per_batch=_env_int("RELAYER_MAX_TX_PER_BATCH", 10),
            poll_interval_secs=_env_int("RELAYER_POLL_INTERVAL_SECS", 30),
            max_retry_attempts=_env_int("RELAYER_MAX_RETRY_ATTEMPTS", 3),
            min_confirmations=_env_int("RELAYER_MIN_CONFIRMATIONS", 1),
            network_fee=to_decimal(os.environ.get("RELAYER_NETWORK_FEE", str(DEFAULT_NETWORK_FEE))),
            dust_threshold=_env_int("RELAYER_DUST_THRESHOLD", DUST_THRESHOLD),
            checkpoint_interval_secs=_env_int("RELAYER_CHECKPOINT_INTERVAL_SECS", 30),
            auto_refund=_env_bool("RELAYER_AUTO_REFUND", True),
            max_missing_checks=_env_int("RELAYER_MAX_MISSING_CHECKS", 10),
            prune_depth=_env_int("RELAYER_PRUNE_DEPTH", 100),
        )


@dataclass
class AppConfig:
    zcash: ZECConfig
    relayer: RelayerConfig
    db_path: Optional[str] = field(default="~/.zhtlc/htlc_db.json")

    @property
    def network(self) -> Network:
        return Network.parse(self.zcash.network)

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            zcash=ZECConfig.from_env(),
            relayer=RelayerConfig.from_env(),
            db_path=os.environ.get("HTLC_DB_PATH", "~/.zhtlc/htlc_db.json") or None,
        )
