"""
Error taxonomy for the liveness and settlement engine.

Every error maps to an OutcomeKind so the executor can turn any failure
into a per-token LiquidationResult without losing what went wrong.
"""

from enum import Enum


class OutcomeKind(str, Enum):
    """Outcome of one (user, token) settlement attempt."""
    SETTLED = "settled"
    SKIPPED = "skipped"                          # nothing to liquidate for this token
    NOT_ELIGIBLE = "not_eligible"
    ROUTE_UNAVAILABLE = "route_unavailable"
    SECURITY_REJECTED = "security_rejected"
    SIMULATION_FAILED = "simulation_failed"
    REVERTED = "reverted"
    DELEGATION_FAILED = "delegation_failed"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    ERROR = "error"


class LazarusError(Exception):
    """Base class. `outcome` classifies the error in batch reports."""
    outcome = OutcomeKind.ERROR


class ValidationError(LazarusError):
    """Malformed address, signature or payload shape. No state change."""


class AuthenticationError(LazarusError):
    """Bad, stale or replayed heartbeat signature. No state change."""


class ConfigError(LazarusError):
    """Invalid or inconsistent watchtower configuration."""


# ============================================================
# LEDGER REVERTS (StateLedger / VaultLedger guards)
# ============================================================

class LedgerRevert(LazarusError):
    """A ledger guard failed. The call had no effect."""
    outcome = OutcomeKind.REVERTED

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Unauthorized(LedgerRevert):
    pass


class NotYetEligible(LedgerRevert):
    """Deadline not passed. Retried on the next scan cycle."""
    outcome = OutcomeKind.NOT_ELIGIBLE


class InsufficientFunds(LedgerRevert):
    """Aggregate amount is zero, or a debit exceeds the recorded balance."""
    outcome = OutcomeKind.SKIPPED


class SecurityRejection(LedgerRevert):
    """Beneficiary not found in the route payload. No funds moved."""
    outcome = OutcomeKind.SECURITY_REJECTED


class DelegationFailure(LedgerRevert):
    """
    The route-execution target failed. Whatever the ledger still holds is
    credited back to the user's internal deposit (`kept`); anything the
    target pulled before failing is reported as `shortfall`.
    """
    outcome = OutcomeKind.DELEGATION_FAILED

    def __init__(self, reason: str, kept: int = 0, shortfall: int = 0):
        super().__init__(reason)
        self.kept = kept
        self.shortfall = shortfall


# ============================================================
# WATCHTOWER-SIDE FAILURES
# ============================================================

class RouteUnavailable(LazarusError):
    outcome = OutcomeKind.ROUTE_UNAVAILABLE


class SimulationFailure(LazarusError):
    """Pre-flight simulation reverted. Nothing was submitted."""
    outcome = OutcomeKind.SIMULATION_FAILED


class ExecutionRevert(LazarusError):
    """Submitted transaction was mined with status 0."""
    outcome = OutcomeKind.REVERTED

    def __init__(self, message: str, tx_hash: str = ""):
        super().__init__(message)
        self.tx_hash = tx_hash


class ConfirmationTimeout(LazarusError):
    """Transaction accepted but no receipt within the confirmation timeout."""
    outcome = OutcomeKind.CONFIRMATION_TIMEOUT

    def __init__(self, message: str, tx_hash: str = ""):
        super().__init__(message)
        self.tx_hash = tx_hash
