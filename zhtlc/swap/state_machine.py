"""
HTLC State Machine.

    created --create confirmed--> funded --redeem confirmed--> redeemed
                                        \\--refund confirmed--> refunded

'expired' is derived (funded and chain height >= timelock), never stored.
Transitions only happen in response to confirmed operations and only
forward. The machine itself is pure; ``apply`` persists through a
conditional store update keyed on the expected prior state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core import HTLC, HTLCState, OperationType, verify_preimage, secret_to_bytes
from ..errors import (
    InvalidTransition, DoubleSpendDetected, InvalidSecret, TimelockNotExpired,
)
from ..store import HTLCStore

log = logging.getLogger(__name__)


@dataclass
class Transition:
    from_state: HTLCState
    to_state: HTLCState
    secret: Optional[str] = None    # hex preimage, redeem only


class HTLCStateMachine:
    """Validates and applies state transitions for confirmed operations."""

    def __init__(self, store: HTLCStore):
        self.store = store

    @staticmethod
    def next_state(htlc: HTLC, operation_type: OperationType, height: int,
                   secret: Optional[str] = None) -> Transition:
        """
        Compute the transition for a confirmed operation.

        Args:
            htlc: current record
            operation_type: type of the confirmed operation
            height: chain height at confirmation
            secret: revealed preimage (redeem)

        Raises:
            DoubleSpendDetected: the opposite spend path already confirmed
            InvalidTransition: out-of-order confirmation
            InvalidSecret: redeem secret does not hash to hash_lock
            TimelockNotExpired: refund confirmed before the timelock height
        """
        state = htlc.state
        op = operation_type.value
        ctx = dict(htlc_id=htlc.id, operation_type=op)

        if operation_type is OperationType.CREATE:
            if state is not HTLCState.CREATED:
                raise InvalidTransition(f"Cannot confirm funding in state {state.value}", **ctx)
            return Transition(state, HTLCState.FUNDED)

        if operation_type is OperationType.REDEEM:
            if state is HTLCState.REFUNDED:
                raise DoubleSpendDetected("Redeem confirmed for an already refunded HTLC", **ctx)
            if state is not HTLCState.FUNDED:
                raise InvalidTransition(f"Cannot redeem in state {state.value}", **ctx)
            if secret is None or not verify_preimage(secret, htlc.hash_lock):
                raise InvalidSecret("Secret does not match hash lock", **ctx)
            return Transition(state, HTLCState.REDEEMED, secret=secret_to_bytes(secret).hex())

        if operation_type is OperationType.REFUND:
            if state is HTLCState.REDEEMED:
                raise DoubleSpendDetected("Refund confirmed for an already redeemed HTLC", **ctx)
            if state is not HTLCState.FUNDED:
                raise InvalidTransition(f"Cannot refund in state {state.value}", **ctx)
            if height < htlc.timelock:
                raise TimelockNotExpired(htlc.timelock, height, **ctx)
            return Transition(state, HTLCState.REFUNDED)

        raise InvalidTransition(f"Unknown operation type {operation_type!r}", **ctx)

    def apply(self, htlc_id: str, operation_type: OperationType, height: int,
              secret: Optional[str] = None) -> HTLC:
        """Validate and persist a transition with a conditional update."""
        with self.store.transaction():
            htlc = self.store.get_htlc(htlc_id)
            transition = self.next_state(htlc, operation_type, height, secret)
            fields = {"state": transition.to_state}
            if transition.secret is not None:
                fields["secret"] = transition.secret
            htlc = self.store.update_htlc(htlc_id, expected_state=transition.from_state, **fields)

        log.info(f"HTLC {htlc_id}: {transition.from_state.value} -> {transition.to_state.value}")
        return htlc
