"""
Zcash chain client for zhtlc.

JSON-RPC against a zcashd node (transparent RPC is Bitcoin compatible) and
a block explorer HTTP API for address UTXO lookups. All calls are async
(httpx).

Errors:
    TransportError  node/explorer unreachable, timeout, malformed response
    RPCError        node returned a JSON-RPC error (e.g. tx rejected)
"""

import os
import asyncio
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import httpx

from ..core import Network, UTXO, from_zatoshi
from ..errors import TransportError, RPCError

log = logging.getLogger(__name__)

# zcashd: "No such mempool or blockchain transaction"
RPC_INVALID_ADDRESS_OR_KEY = -5


@dataclass
class ZECConfig:
    """Zcash node configuration."""
    network: str = "testnet"
    rpc_url: str = "http://127.0.0.1:18232"     # Default testnet RPC port
    rpc_user: str = ""
    rpc_password: str = ""
    explorer_api: str = ""                      # Empty: network default
    timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "ZECConfig":
        network = Network.parse(os.environ.get("ZCASH_NETWORK", "testnet"))
        default_url = "http://127.0.0.1:8232" if network is Network.MAINNET else cls.rpc_url
        return cls(
            network=network.value,
            rpc_url=os.environ.get("ZCASH_RPC_URL", default_url),
            rpc_user=os.environ.get("ZCASH_RPC_USER", ""),
            rpc_password=os.environ.get("ZCASH_RPC_PASSWORD", ""),
            explorer_api=os.environ.get("ZCASH_EXPLORER_API", ""),
            timeout=float(os.environ.get("ZCASH_RPC_TIMEOUT", "30")),
        )

    @property
    def explorer(self) -> str:
        return (self.explorer_api or Network.parse(self.network).default_explorer).rstrip("/")


class ZECClient:
    """Async Zcash RPC + explorer client."""

    def __init__(self, config: ZECConfig, http: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.network = Network.parse(config.network)
        self._http = http

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.config.timeout)
        return self._http

    async def close(self):
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()

    async def _call(self, method: str, *params) -> Any:
        payload = {"jsonrpc": "1.0", "id": "zhtlc", "method": method, "params": list(params)}
        auth = None
        if self.config.rpc_user:
            auth = (self.config.rpc_user, self.config.rpc_password)
        try:
            resp = await self._get_http().post(self.config.rpc_url, json=payload, auth=auth)
        except httpx.TimeoutException:
            raise TransportError(f"ZEC RPC timeout: {method}")
        except httpx.HTTPError as e:
            raise TransportError(f"ZEC RPC unreachable: {method}: {e}")

        # zcashd answers JSON-RPC errors with HTTP 500 and a JSON body
        try:
            body = resp.json()
        except ValueError:
            raise TransportError(f"ZEC RPC {method}: HTTP {resp.status_code}, non-JSON response")
        if not isinstance(body, dict):
            raise TransportError(f"ZEC RPC {method}: unexpected response")

        error = body.get("error")
        if error:
            log.error(f"ZEC RPC error: {method} -> {error}")
            raise RPCError(error.get("code", 0), error.get("message", str(error)))
        if resp.status_code >= 400:
            raise TransportError(f"ZEC RPC {method}: HTTP {resp.status_code}")
        return body.get("result")

    # ── Chain ─────────────────────────────────────────────────────────────────

    async def get_block_count(self) -> int:
        result = await self._call("getblockcount")
        try:
            return int(result)
        except (TypeError, ValueError):
            raise TransportError(f"Bad getblockcount result: {result!r}")

    # ── Transactions ──────────────────────────────────────────────────────────

    async def send_raw_transaction(self, tx_hex: str) -> str:
        """
        Broadcast a signed transaction.

        Returns:
            txid reported by the node

        Raises:
            RPCError: node rejected the transaction
            TransportError: node unreachable
        """
        log.info("Broadcasting transaction...")
        txid = await self._call("sendrawtransaction", tx_hex)
        log.info(f"Transaction broadcast: {txid}")
        return txid

    async def get_raw_transaction(self, txid: str) -> Optional[Dict]:
        """Verbose transaction, or None if the node does not know it."""
        try:
            return await self._call("getrawtransaction", txid, 1)
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise

    async def get_transaction_confirmations(self, txid: str) -> Optional[int]:
        """Confirmations (0 = mempool), None if unknown to the node."""
        tx = await self.get_raw_transaction(txid)
        if tx is None:
            return None
        return int(tx.get("confirmations", 0) or 0)

    async def wait_for_confirmations(self, txid: str, required: int = 1,
                                     poll_interval: float = 10.0,
                                     max_attempts: int = 60) -> int:
        """
        Poll until txid has `required` confirmations.

        Raises:
            TransportError: not confirmed after max_attempts polls
        """
        log.info(f"Waiting for {required} confirmations on tx: {txid}")
        for attempt in range(1, max_attempts + 1):
            try:
                confirmations = await self.get_transaction_confirmations(txid)
                if confirmations is not None and confirmations >= required:
                    log.info(f"Transaction confirmed: {confirmations} confirmations")
                    return confirmations
                log.info(f"Attempt {attempt}/{max_attempts}: {confirmations or 0} confirmations")
            except TransportError as e:
                log.warning(f"Error checking confirmations (attempt {attempt}): {e}")
            await asyncio.sleep(poll_interval)
        raise TransportError(f"Timed out waiting for confirmations on {txid}")

    # ── Explorer ──────────────────────────────────────────────────────────────

    async def _explorer_get(self, path: str) -> Any:
        url = f"{self.config.explorer}{path}"
        try:
            resp = await self._get_http().get(url)
        except httpx.TimeoutException:
            raise TransportError(f"Explorer timeout: {url}")
        except httpx.HTTPError as e:
            raise TransportError(f"Explorer unreachable: {url}: {e}")
        if resp.status_code != 200:
            raise TransportError(f"HTTP {resp.status_code} from explorer")
        try:
            return resp.json()
        except ValueError:
            raise TransportError(f"Explorer returned non-JSON for {url}")

    async def get_utxos(self, address: str) -> List[UTXO]:
        """Unspent outputs for an address, amounts in ZEC."""
        log.info(f"Querying UTXOs for address: {address}")
        rows = await self._explorer_get(f"/address/{address}/utxo")
        if not isinstance(rows, list):
            raise TransportError("Explorer UTXO response is not a list")
        utxos = []
        for row in rows:
            try:
                utxos.append(UTXO(
                    txid=row["txid"],
                    vout=int(row["vout"]),
                    amount=from_zatoshi(int(row["value"])),
                    script_pubkey=row.get("script_pubkey") or row.get("scriptPubKey") or "",
                    address=address,
                    confirmations=int(row.get("confirmations") or 0),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise TransportError(f"Malformed explorer UTXO {row!r}: {e}")
        log.info(f"Found {len(utxos)} UTXOs")
        return utxos

    async def get_balance(self, address: str) -> Decimal:
        info = await self._explorer_get(f"/address/{address}")
        try:
            return from_zatoshi(int(info["balance"]))
        except (KeyError, TypeError, ValueError):
            raise TransportError(f"Malformed explorer balance for {address}")
