"""
HTLC HTTP endpoints.

Thin layer over HTLCClient; server.py calls configure() at startup.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from zhtlc.core import OperationStatus
from zhtlc.errors import (
    HTLCError, HTLCNotFound, InvalidParameter, InvalidSecret, InsufficientFunds,
    AlreadySpent, InvalidTransition, StaleRecord, DoubleSpendDetected,
    HTLCNotFunded, TimelockNotExpired, TransportError, RPCError, SigningError,
)
from zhtlc.swap.client import HTLCClient

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Set by server.py at init
# ---------------------------------------------------------------------------

_client: Optional[HTLCClient] = None
_hot_wallet_address: Optional[str] = None


def configure(client: HTLCClient, hot_wallet_address: Optional[str] = None):
    """Configure HTLC routes. Called once at startup by server.py."""
    global _client, _hot_wallet_address
    _client = client
    _hot_wallet_address = hot_wallet_address


def _get_client() -> HTLCClient:
    if _client is None:
        raise HTTPException(503, "HTLC client not configured")
    return _client


def _http_error(e: HTLCError) -> HTTPException:
    if isinstance(e, HTLCNotFound):
        return HTTPException(404, str(e))
    if isinstance(e, (InvalidParameter, InvalidSecret, SigningError)):
        return HTTPException(400, str(e))
    if isinstance(e, (AlreadySpent, InvalidTransition, StaleRecord, DoubleSpendDetected,
                      HTLCNotFunded, TimelockNotExpired, InsufficientFunds)):
        return HTTPException(409, str(e))
    if isinstance(e, (TransportError, RPCError)):
        return HTTPException(502, str(e))
    return HTTPException(500, str(e))


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class HTLCCreateRequest(BaseModel):
    recipient_pubkey: str = Field(..., description="Compressed pubkey (hex) for the redeem branch")
    refund_pubkey: str = Field(..., description="Compressed pubkey (hex) for the refund branch")
    hash_lock: str = Field(..., description="SHA256 of the secret (hex)")
    timelock: int = Field(..., description="Absolute block height")
    amount: Decimal = Field(..., gt=0, description="Amount in ZEC")
    recipient_address: Optional[str] = None
    fund_from_wallet: bool = True


class RedeemRequest(BaseModel):
    secret: str
    recipient_address: Optional[str] = None
    recipient_privkey: Optional[str] = None
    execute_now: bool = False


class RefundRequest(BaseModel):
    refund_address: Optional[str] = None
    execute_now: bool = False


class FundingRequest(BaseModel):
    txid: str = Field(..., min_length=64, max_length=64)
    vout: int = Field(..., ge=0)
    amount: Optional[Decimal] = None


def _op_view(op) -> Dict[str, Any]:
    d = op.to_dict()
    d.pop("secret", None)
    return d


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("/api/htlc")
async def create_htlc(req: HTLCCreateRequest):
    """Create an HTLC and (optionally) queue wallet funding."""
    client = _get_client()
    try:
        htlc = client.create_htlc(
            recipient_pubkey=req.recipient_pubkey,
            refund_pubkey=req.refund_pubkey,
            hash_lock=req.hash_lock,
            timelock=req.timelock,
            amount=req.amount,
            recipient_address=req.recipient_address,
            fund_from_wallet=req.fund_from_wallet,
        )
    except HTLCError as e:
        raise _http_error(e)
    return htlc.to_dict()


@router.get("/api/htlc/{htlc_id}")
async def get_htlc(htlc_id: str):
    client = _get_client()
    try:
        htlc = client.get_htlc(htlc_id)
        status = await client.htlc_status(htlc_id)
    except HTLCError as e:
        raise _http_error(e)
    result = htlc.to_dict()
    result["status"] = status
    return result


@router.get("/api/htlc/{htlc_id}/operations")
async def list_operations(htlc_id: str):
    client = _get_client()
    try:
        ops = client.list_operations(htlc_id)
    except HTLCError as e:
        raise _http_error(e)
    return {"htlc_id": htlc_id, "operations": [_op_view(op) for op in ops]}


@router.post("/api/htlc/{htlc_id}/redeem")
async def redeem_htlc(htlc_id: str, req: RedeemRequest):
    """Queue (or immediately execute) a redeem with the secret."""
    client = _get_client()
    try:
        op = client.request_redeem(htlc_id, req.secret, req.recipient_address,
                                   req.recipient_privkey)
        if req.execute_now:
            op = await client.executor.execute(op.id)
    except HTLCError as e:
        raise _http_error(e)
    return _op_view(op)


@router.post("/api/htlc/{htlc_id}/refund")
async def refund_htlc(htlc_id: str, req: RefundRequest):
    """Queue (or immediately execute) a refund."""
    client = _get_client()
    try:
        op = client.request_refund(htlc_id, req.refund_address)
        if req.execute_now:
            op = await client.executor.execute(op.id)
    except HTLCError as e:
        raise _http_error(e)
    return _op_view(op)


@router.post("/api/htlc/{htlc_id}/funding")
async def register_funding(htlc_id: str, req: FundingRequest):
    """Register a funding transaction broadcast outside the relayer."""
    client = _get_client()
    try:
        op = client.register_funding(htlc_id, req.txid, req.vout, req.amount)
    except HTLCError as e:
        raise _http_error(e)
    return _op_view(op)


@router.get("/api/status")
async def status():
    client = _get_client()
    checkpoint = client.store.get_checkpoint(client.network.chain_name)
    pending = client.store.list_operations(status=OperationStatus.PENDING)
    broadcast = client.store.list_operations(status=OperationStatus.BROADCAST)
    result = {
        "network": client.network.value,
        "checkpoint": checkpoint.to_dict(),
        "pending_operations": len(pending),
        "broadcast_operations": len(broadcast),
    }
    if _hot_wallet_address:
        result["hot_wallet_address"] = _hot_wallet_address
        result["pool_balance"] = str(client.pool_balance(_hot_wallet_address))
        # Explorer view of the same address, null when the explorer is down
        try:
            result["explorer_balance"] = str(await client.rpc.get_balance(_hot_wallet_address))
        except TransportError as e:
            log.warning(f"Explorer balance unavailable: {e}")
            result["explorer_balance"] = None
    return result
