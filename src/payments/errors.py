"""
Error taxonomy for the x402 facilitator.

Every error carries a stable ``reason`` string. The job registry recovers
all of these at its boundary and turns them into structured outcomes; only
``InvalidTransitionError`` signals a programming error.
"""

from typing import Optional


class X402Error(Exception):
    """Base error for x402 payment processing."""

    def __init__(self, reason: str, job_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.job_id = job_id


class ValidationError(X402Error):
    """Malformed payload or missing required field."""
    pass


class ProtocolMismatchError(X402Error):
    """Wrong protocol version, network or scheme."""
    pass


class VerificationFailure(X402Error):
    """Signature, destination, amount, asset or balance check failed."""
    pass


class SettlementFailure(X402Error):
    """Ledger rejected the submitted transaction."""
    pass


class ExpiryError(X402Error):
    """Payment window has passed."""
    pass


class ConflictError(X402Error):
    """Method lock violation or operation invalid for the current status."""
    pass


class ConfigurationError(X402Error):
    """Missing or invalid facilitator configuration."""
    pass


class InvalidTransitionError(X402Error):
    """Attempted a state transition the job state machine does not allow."""
    pass


class LedgerError(X402Error):
    """Horizon request failed or the ledger reported a failed transaction."""

    def __init__(self, reason: str, status_code: Optional[int] = None, extras: Optional[dict] = None):
        super().__init__(reason)
        self.status_code = status_code
        self.extras = extras or {}


class LedgerTimeoutError(LedgerError):
    """Transaction did not appear on the ledger within the polling ceiling."""
    pass
