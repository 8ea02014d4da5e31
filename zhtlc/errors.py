"""
Error taxonomy for zhtlc.

Every error optionally carries the HTLC id and operation type it concerns so
that logs and stored error messages can be traced back to the record.
"""

from typing import Optional


class HTLCError(Exception):
    """Base error."""

    retryable = False

    def __init__(self, message: str = "", htlc_id: Optional[str] = None,
                 operation_type: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.htlc_id = htlc_id
        self.operation_type = operation_type

    def with_context(self, htlc_id: Optional[str] = None,
                     operation_type: Optional[str] = None) -> "HTLCError":
        """Attach record context if not already set. Returns self."""
        if self.htlc_id is None:
            self.htlc_id = htlc_id
        if self.operation_type is None:
            self.operation_type = operation_type
        return self

    def __str__(self) -> str:
        prefix = ""
        if self.htlc_id:
            prefix += f"[{self.htlc_id}] "
        if self.operation_type:
            prefix += f"{self.operation_type}: "
        return f"{prefix}{self.message}"


class InvalidParameter(HTLCError):
    pass


class InsufficientFunds(HTLCError):
    retryable = True

    def __init__(self, required: int, available: int, **kwargs):
        super().__init__(
            f"Insufficient funds: need {required} zat, have {available} zat",
            **kwargs,
        )
        self.required = required
        self.available = available


class AlreadySpent(HTLCError):
    pass


class DoubleSpendDetected(HTLCError):
    pass


class InvalidSecret(HTLCError):
    pass


class SigningError(HTLCError):
    pass


class TransportError(HTLCError):
    """Node or explorer unreachable, timed out, or returned garbage."""
    retryable = True


class RPCError(HTLCError):
    """The node answered with a JSON-RPC error (e.g. transaction rejected)."""
    retryable = True

    def __init__(self, code: int, message: str, **kwargs):
        super().__init__(f"RPC error {code}: {message}", **kwargs)
        self.code = code


class InvalidTransition(HTLCError):
    pass


class TimelockNotExpired(HTLCError):
    def __init__(self, timelock: int, height: int, **kwargs):
        super().__init__(
            f"Timelock not expired: current height {height}, timelock {timelock}",
            **kwargs,
        )
        self.timelock = timelock
        self.height = height


class HTLCNotFound(HTLCError):
    pass


class HTLCNotFunded(HTLCError):
    retryable = True


class StaleRecord(HTLCError):
    """A conditional update found the record in a different state."""
    pass
