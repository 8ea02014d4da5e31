"""
Chain clients for zhtlc.

ZECClient covers node JSON-RPC (broadcast, height, confirmations) and
explorer lookups (address UTXOs, balance).
"""

from .zcash import ZECClient, ZECConfig

__all__ = ["ZECClient", "ZECConfig"]
