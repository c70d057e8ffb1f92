"""
Vesting Ledger Constants

Time units and ledger limits shared by the store, the engine and the CLI.

NOTE: EPOCH_LENGTH and MIN_DURATION define the default release cadence.
Deployments override them through LedgerConfig, never by editing this file.
"""

from typing import Final

# =============================================================================
# TIME CONSTANTS (in seconds)
# =============================================================================

SECONDS_PER_MINUTE: Final[int] = 60
SECONDS_PER_HOUR: Final[int] = 3600  # 60 * 60
SECONDS_PER_DAY: Final[int] = 86400  # 60 * 60 * 24
SECONDS_PER_WEEK: Final[int] = 604800  # 60 * 60 * 24 * 7

# =============================================================================
# VESTING DEFAULTS
# =============================================================================

# One epoch unlocks one slice of the deposit
EPOCH_LENGTH: Final[int] = SECONDS_PER_DAY

# Deposits must vest for strictly longer than this
MIN_DURATION: Final[int] = 7 * SECONDS_PER_DAY

# =============================================================================
# ADDRESS AND AMOUNT LIMITS
# =============================================================================

ZERO_ADDRESS: Final[str] = "0x" + "0" * 40

UINT256_MAX: Final[int] = 2**256 - 1

# Length used when addresses are truncated in log records
LOG_ADDRESS_PREFIX: Final[int] = 10
