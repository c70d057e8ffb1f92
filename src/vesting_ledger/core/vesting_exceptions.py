"""
Vesting-specific exception hierarchy.

Provides typed exceptions for ledger operations so callers can tell a
rejected input apart from a benign "nothing vested yet" outcome and from a
broken store invariant.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class VestingError(Exception):
    """Base exception for all vesting ledger errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable


# ==================== Validation Errors ====================


class ValidationError(VestingError):
    """Raised when a deposit request fails validation.

    Validation always happens before any state write or asset movement.
    """
    pass


class InvalidAddressError(ValidationError):
    """Raised when the beneficiary is empty or the zero address."""
    pass


class InvalidAmountError(ValidationError):
    """Raised when a deposit amount is zero, negative or not an integer."""
    pass


class InvalidDurationError(ValidationError):
    """Raised when a vesting duration does not exceed the configured minimum."""
    pass


class InsufficientFundsError(ValidationError):
    """Raised when the payer cannot cover the deposit amount."""
    pass


class ScheduleExistsError(ValidationError):
    """Raised when a deposit would replace an active schedule under the reject policy."""
    pass


# ==================== Settlement Errors ====================


class NoScheduleError(VestingError):
    """Raised when a withdrawal targets a beneficiary without a schedule."""
    pass


class NothingToWithdrawError(VestingError):
    """Raised when nothing new has vested since the last withdrawal.

    This is a benign outcome. No state changed and no asset moved, so the
    caller may retry once the next epoch boundary has passed.
    """

    def __init__(
        self,
        message: str,
        next_unlock_time: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=True)
        self.next_unlock_time = next_unlock_time


class AssetTransferError(VestingError):
    """Raised when the asset collaborator refuses a transfer.

    The ledger rolls back its own write before this propagates.
    """
    pass


# ==================== State Errors ====================


class InvalidStateError(VestingError):
    """Raised when a stored schedule would break a ledger invariant.

    Engine-level checks make this unreachable in normal operation, so it
    signals a programming error rather than bad user input.
    """
    pass


class ReentrancyError(InvalidStateError):
    """Raised when a mutating call re-enters the engine for a beneficiary
    whose previous call has not finished."""
    pass


# ==================== Configuration Errors ====================


class ConfigurationError(VestingError):
    """Raised when ledger configuration is missing or invalid."""
    pass
