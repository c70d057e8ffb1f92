"""
Vesting Ledger Configuration

All settings can be supplied through environment variables:
- VESTING_EPOCH_SECONDS: length of one release epoch (default one day)
- VESTING_MIN_DURATION: deposits must vest longer than this (default 7 days)
- VESTING_DEPOSIT_POLICY: "overwrite" or "reject" for repeat deposits
- VESTING_DUST_POLICY: "forfeit" or "final_epoch" for rounding remainders
- VESTING_STORE_PATH: JSON file backing the schedule store (optional)
- VESTING_LOG_LEVEL / VESTING_ENVIRONMENT: level and environment tag of JSON logs
- VESTING_LOG_FILE: rotating JSON log file (optional)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum

from vesting_ledger.core.constants import EPOCH_LENGTH, MIN_DURATION
from vesting_ledger.core.vesting_exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class DepositPolicy(Enum):
    """What a deposit does when the beneficiary already holds a schedule."""

    OVERWRITE = "overwrite"  # replace unconditionally, unwithdrawn balance is discarded
    REJECT = "reject"  # refuse while the existing schedule is still active


class DustPolicy(Enum):
    """How the floor-division remainder of a deposit is treated."""

    FORFEIT = "forfeit"  # never paid out
    FINAL_EPOCH = "final_epoch"  # released once the last epoch has elapsed


def _get_int(env_var: str, default: int) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{env_var} must be an integer number of seconds, got {raw!r}",
            details={"env_var": env_var, "value": raw},
        ) from exc


def _get_enum(env_var: str, enum_type: type[Enum], default: Enum) -> Enum:
    raw = os.getenv(env_var, "").strip().lower()
    if not raw:
        return default
    try:
        return enum_type(raw)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(
            f"{env_var} must be one of: {allowed}; got {raw!r}",
            details={"env_var": env_var, "value": raw},
        ) from exc


@dataclass
class LedgerConfig:
    """Tunable parameters of a vesting ledger instance."""

    epoch_length: int = EPOCH_LENGTH
    min_duration: int = MIN_DURATION
    deposit_policy: DepositPolicy = DepositPolicy.OVERWRITE
    dust_policy: DustPolicy = DustPolicy.FORFEIT
    storage_path: str | None = None
    log_level: str = "INFO"
    environment: str = "production"
    log_file: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.log_level, str):
            self.log_level = self.log_level.strip().upper()
        self.validate()

    def validate(self) -> None:
        """
        Check that every deposit accepted under this config spans at least one epoch.

        Raises:
            ConfigurationError: If a value is out of range
        """
        if not isinstance(self.epoch_length, int) or self.epoch_length <= 0:
            raise ConfigurationError("Epoch length must be a positive integer.")
        if not isinstance(self.min_duration, int) or self.min_duration < self.epoch_length:
            raise ConfigurationError(
                "Minimum duration must be at least one epoch long.",
                details={"epoch_length": self.epoch_length, "min_duration": self.min_duration},
            )
        if not isinstance(self.deposit_policy, DepositPolicy):
            raise ConfigurationError(f"Unknown deposit policy: {self.deposit_policy!r}")
        if not isinstance(self.dust_policy, DustPolicy):
            raise ConfigurationError(f"Unknown dust policy: {self.dust_policy!r}")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigurationError(
                f"Unknown log level: {self.log_level!r}",
                details={"log_level": self.log_level},
            )

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Build a config from VESTING_* environment variables."""
        config = cls(
            epoch_length=_get_int("VESTING_EPOCH_SECONDS", EPOCH_LENGTH),
            min_duration=_get_int("VESTING_MIN_DURATION", MIN_DURATION),
            deposit_policy=_get_enum("VESTING_DEPOSIT_POLICY", DepositPolicy, DepositPolicy.OVERWRITE),
            dust_policy=_get_enum("VESTING_DUST_POLICY", DustPolicy, DustPolicy.FORFEIT),
            storage_path=os.getenv("VESTING_STORE_PATH", "").strip() or None,
            log_level=os.getenv("VESTING_LOG_LEVEL", "INFO").strip() or "INFO",
            environment=os.getenv("VESTING_ENVIRONMENT", "production").strip() or "production",
            log_file=os.getenv("VESTING_LOG_FILE", "").strip() or None,
        )
        logger.debug(
            "Ledger configuration loaded",
            extra={
                "event": "config.loaded",
                "epoch_length": config.epoch_length,
                "min_duration": config.min_duration,
                "deposit_policy": config.deposit_policy.value,
                "dust_policy": config.dust_policy.value,
            },
        )
        return config
