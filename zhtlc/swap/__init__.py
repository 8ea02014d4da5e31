"""
HTLC lifecycle coordination for zhtlc.

State machine, operation executor, relayer loop, checkpoint tracker and the
client facade.
"""

from .state_machine import HTLCStateMachine
from .executor import OperationExecutor
from .relayer import Relayer
from .checkpoint import CheckpointTracker
from .client import HTLCClient

__all__ = ["HTLCStateMachine", "OperationExecutor", "Relayer", "CheckpointTracker", "HTLCClient"]
