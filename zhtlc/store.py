"""
HTLC persistence.

JSON-file store for HTLCs, operations, relayer UTXOs and indexer checkpoints.
All access goes through one re-entrant lock; mutations grouped in
``transaction()`` are applied atomically (rolled back on exception, flushed
to disk once on the outermost commit).

Usage:
    store = HTLCStore("~/.zhtlc/htlc_db.json")   # None keeps it in memory
    with store.transaction():
        store.claim_utxos([(txid, 0)], spend_txid)
        store.update_operation(op_id, expected_status=OperationStatus.PENDING, ...)
"""

import os
import copy
import json
import logging
import threading
from contextlib import contextmanager
from typing import Optional, Dict, Any, List, Iterable, Tuple

from .core import (
    HTLC, HTLCOperation, UTXO, Checkpoint, HTLCState, OperationStatus,
    OperationType, utcnow,
)
from .errors import InvalidParameter, HTLCNotFound, StaleRecord, AlreadySpent

log = logging.getLogger(__name__)

# Fields fixed at creation time
IMMUTABLE_HTLC_FIELDS = {
    "id", "hash_lock", "timelock", "recipient_pubkey", "refund_pubkey",
    "redeem_script_hex", "script_hex", "p2sh_address", "network", "created_at",
}


def _utxo_key(txid: str, vout: int) -> str:
    return f"{txid}:{vout}"


class HTLCStore:
    """Thread-safe JSON-backed store."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._lock = threading.RLock()
        self._depth = 0
        self._data: Dict[str, Dict[str, Any]] = {
            "htlcs": {},
            "operations": {},
            "utxos": {},
            "checkpoints": {},
        }
        self._load()

    # ── Persistence ───────────────────────────────────────────────────────────

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        for table in self._data:
            self._data[table] = data.get(table, {})
        log.info(f"Loaded {len(self._data['htlcs'])} HTLCs, "
                 f"{len(self._data['operations'])} operations from {self.path}")

    def _save(self):
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp_path, self.path)

    @contextmanager
    def transaction(self):
        """
        Group mutations atomically.

        Nested transactions roll back only their own changes; the file is
        written when the outermost transaction commits.
        """
        with self._lock:
            snapshot = copy.deepcopy(self._data)
            self._depth += 1
            try:
                yield self
                if self._depth == 1:
                    self._save()
            except BaseException:
                self._data = snapshot
                raise
            finally:
                self._depth -= 1

    # ── HTLCs ─────────────────────────────────────────────────────────────────

    def create_htlc(self, htlc: HTLC) -> HTLC:
        with self.transaction():
            if htlc.id in self._data["htlcs"]:
                raise InvalidParameter(f"HTLC {htlc.id} already exists")
            self._data["htlcs"][htlc.id] = htlc.to_dict()
        log.info(f"Stored HTLC {htlc.id} at {htlc.p2sh_address}")
        return htlc

    def find_htlc(self, htlc_id: str) -> Optional[HTLC]:
        with self._lock:
            row = self._data["htlcs"].get(htlc_id)
            return HTLC.from_dict(row) if row else None

    def get_htlc(self, htlc_id: str) -> HTLC:
        htlc = self.find_htlc(htlc_id)
        if htlc is None:
            raise HTLCNotFound(f"HTLC {htlc_id} not found", htlc_id=htlc_id)
        return htlc

    def list_htlcs(self, state: Optional[HTLCState] = None) -> List[HTLC]:
        with self._lock:
            htlcs = [HTLC.from_dict(r) for r in self._data["htlcs"].values()]
        if state is not None:
            htlcs = [h for h in htlcs if h.state is state]
        return sorted(htlcs, key=lambda h: h.created_at)

    def update_htlc(self, htlc_id: str, expected_state: Optional[HTLCState] = None,
                    **fields) -> HTLC:
        """
        Conditionally update an HTLC.

        Raises:
            HTLCNotFound: unknown id
            StaleRecord: current state differs from expected_state
            InvalidParameter: attempt to change an immutable field
        """
        with self.transaction():
            htlc = self.get_htlc(htlc_id)
            if expected_state is not None and htlc.state is not expected_state:
                raise StaleRecord(
                    f"Expected state {expected_state.value}, found {htlc.state.value}",
                    htlc_id=htlc_id,
                )
            for name, value in fields.items():
                if name in IMMUTABLE_HTLC_FIELDS:
                    raise InvalidParameter(f"HTLC field {name} is immutable", htlc_id=htlc_id)
                if not hasattr(htlc, name):
                    raise InvalidParameter(f"Unknown HTLC field {name}", htlc_id=htlc_id)
                setattr(htlc, name, value)
            htlc.updated_at = utcnow()
            self._data["htlcs"][htlc_id] = htlc.to_dict()
            return htlc

    # ── Operations ────────────────────────────────────────────────────────────

    def add_operation(self, op: HTLCOperation) -> HTLCOperation:
        with self.transaction():
            if op.htlc_id not in self._data["htlcs"]:
                raise HTLCNotFound(f"HTLC {op.htlc_id} not found", htlc_id=op.htlc_id)
            if op.id in self._data["operations"]:
                raise InvalidParameter(f"Operation {op.id} already exists")
            self._data["operations"][op.id] = op.to_dict()
        return op

    def get_operation(self, op_id: str) -> HTLCOperation:
        with self._lock:
            row = self._data["operations"].get(op_id)
            if row is None:
                raise InvalidParameter(f"Operation {op_id} not found")
            return HTLCOperation.from_dict(row)

    def list_operations(self, htlc_id: Optional[str] = None,
                        status: Optional[OperationStatus] = None,
                        operation_type: Optional[OperationType] = None,
                        limit: Optional[int] = None) -> List[HTLCOperation]:
        """Operations matching the filters, oldest first."""
        with self._lock:
            ops = [HTLCOperation.from_dict(r) for r in self._data["operations"].values()]
        if htlc_id is not None:
            ops = [o for o in ops if o.htlc_id == htlc_id]
        if status is not None:
            ops = [o for o in ops if o.status is status]
        if operation_type is not None:
            ops = [o for o in ops if o.operation_type is operation_type]
        ops.sort(key=lambda o: (o.created_at, o.id))
        return ops[:limit] if limit is not None else ops

    def update_operation(self, op_id: str,
                         expected_status: Optional[OperationStatus] = None,
                         **fields) -> HTLCOperation:
        """
        Conditionally update an operation.

        Raises:
            StaleRecord: current status differs from expected_status
        """
        with self.transaction():
            op = self.get_operation(op_id)
            if expected_status is not None and op.status is not expected_status:
                raise StaleRecord(
                    f"Expected status {expected_status.value}, found {op.status.value}",
                    htlc_id=op.htlc_id, operation_type=op.operation_type.value,
                )
            for name, value in fields.items():
                if name in ("id", "htlc_id", "operation_type", "created_at") or not hasattr(op, name):
                    raise InvalidParameter(f"Cannot update operation field {name}")
                setattr(op, name, value)
            op.updated_at = utcnow()
            self._data["operations"][op_id] = op.to_dict()
            return op

    # ── UTXOs ─────────────────────────────────────────────────────────────────

    def upsert_utxo(self, utxo: UTXO) -> bool:
        """
        Insert a UTXO, or refresh confirmations/height of a known one.

        Claim flags of known rows are never touched. Returns True on insert.
        """
        key = _utxo_key(utxo.txid, utxo.vout)
        with self.transaction():
            row = self._data["utxos"].get(key)
            if row is None:
                self._data["utxos"][key] = utxo.to_dict()
                return True
            row["confirmations"] = utxo.confirmations
            if utxo.block_height is not None:
                row["block_height"] = utxo.block_height
            if utxo.address and not row.get("address"):
                row["address"] = utxo.address
            return False

    def get_utxo(self, txid: str, vout: int) -> Optional[UTXO]:
        with self._lock:
            row = self._data["utxos"].get(_utxo_key(txid, vout))
            return UTXO.from_dict(row) if row else None

    def list_utxos(self, address: Optional[str] = None,
                   unspent_only: bool = False) -> List[UTXO]:
        with self._lock:
            utxos = [UTXO.from_dict(r) for r in self._data["utxos"].values()]
        if address is not None:
            utxos = [u for u in utxos if u.address == address]
        if unspent_only:
            utxos = [u for u in utxos if not u.spent]
        return sorted(utxos, key=lambda u: (u.txid, u.vout))

    def update_utxo(self, txid: str, vout: int, **fields) -> UTXO:
        with self.transaction():
            row = self._data["utxos"].get(_utxo_key(txid, vout))
            if row is None:
                raise InvalidParameter(f"Unknown UTXO {txid}:{vout}")
            utxo = UTXO.from_dict(row)
            for name, value in fields.items():
                if name in ("txid", "vout") or not hasattr(utxo, name):
                    raise InvalidParameter(f"Cannot update UTXO field {name}")
                setattr(utxo, name, value)
            self._data["utxos"][_utxo_key(txid, vout)] = utxo.to_dict()
            return utxo

    def claim_utxos(self, outpoints: Iterable[Tuple[str, int]], spend_txid: str):
        """
        Mark outpoints spent by spend_txid, all or nothing.

        Re-claiming rows already claimed by the same spend_txid is a no-op.

        Raises:
            AlreadySpent: any outpoint is unknown or claimed by another tx
        """
        with self.transaction():
            for txid, vout in outpoints:
                row = self._data["utxos"].get(_utxo_key(txid, vout))
                if row is None:
                    raise AlreadySpent(f"UTXO {txid}:{vout} is not available")
                if row["spent"] and row["spent_in_tx"] != spend_txid:
                    raise AlreadySpent(
                        f"UTXO {txid}:{vout} already spent in {row['spent_in_tx']}"
                    )
                row["spent"] = True
                row["spent_in_tx"] = spend_txid

    def release_utxos(self, spend_txid: str) -> int:
        """Undo a claim made by spend_txid. Returns the number of rows released."""
        released = 0
        with self.transaction():
            for row in self._data["utxos"].values():
                if row["spent_in_tx"] == spend_txid:
                    row["spent"] = False
                    row["spent_in_tx"] = None
                    released += 1
        return released

    def delete_utxos(self, txid: str) -> int:
        """Forget every output of txid. Returns the number of rows deleted."""
        with self.transaction():
            keys = [k for k, row in self._data["utxos"].items() if row["txid"] == txid]
            for key in keys:
                del self._data["utxos"][key]
        return len(keys)

    def prune_spent_utxos(self, max_block_height: int) -> int:
        """
        Delete spent rows whose spending operation confirmed at or below
        max_block_height. Rows claimed by pending or broadcast operations
        are kept. Returns the number of rows deleted.
        """
        with self.transaction():
            settled = {
                row["txid"] for row in self._data["operations"].values()
                if row["status"] == OperationStatus.CONFIRMED.value and row["txid"]
                and row["block_height"] is not None and row["block_height"] <= max_block_height
            }
            keys = [
                k for k, row in self._data["utxos"].items()
                if row["spent"] and row["spent_in_tx"] in settled
            ]
            for key in keys:
                del self._data["utxos"][key]
        if keys:
            log.debug(f"Pruned {len(keys)} spent UTXO rows")
        return len(keys)

    # ── Checkpoints ───────────────────────────────────────────────────────────

    def get_checkpoint(self, chain: str) -> Checkpoint:
        with self._lock:
            row = self._data["checkpoints"].get(chain)
            return Checkpoint.from_dict(row) if row else Checkpoint(chain=chain)

    def advance_checkpoint(self, chain: str, height: int) -> Checkpoint:
        """Move last_block forward; a lower height leaves it unchanged."""
        with self.transaction():
            checkpoint = self.get_checkpoint(chain)
            if height > checkpoint.last_block:
                checkpoint.last_block = height
                checkpoint.updated_at = utcnow()
                self._data["checkpoints"][chain] = checkpoint.to_dict()
            return checkpoint
