"""
Vesting engine: deposit and withdrawal settlement over a ScheduleStore.

Each mutating call runs as one serialised unit per beneficiary:
validate, read, compute, commit to the store, and only then ask the asset
collaborator to move funds. If the transfer is refused the store write is
undone before the error propagates, so the ledger and the asset never
disagree.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from vesting_ledger.core.asset_interfaces import AssetTransfer
from vesting_ledger.core.config import DepositPolicy, LedgerConfig
from vesting_ledger.core.constants import LOG_ADDRESS_PREFIX, UINT256_MAX, ZERO_ADDRESS
from vesting_ledger.core.events import EventLog
from vesting_ledger.core.reentrancy import BeneficiaryLocks
from vesting_ledger.core.schedule_store import ScheduleStore
from vesting_ledger.core.vesting_exceptions import (
    ConfigurationError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidDurationError,
    InvalidStateError,
    NoScheduleError,
    NothingToWithdrawError,
    ScheduleExistsError,
)
from vesting_ledger.core.vesting_schedule import (
    VestingSchedule,
    compute_dust,
    compute_unlocked_amount,
    compute_withdrawable_amount,
    derive_epoch_count,
    derive_per_epoch_rate,
    is_settled,
    next_unlock_time,
)

logger = logging.getLogger(__name__)


class ScheduleState(Enum):
    NON_EXISTENT = "non_existent"
    ACTIVE = "active"
    FULLY_VESTED = "fully_vested"


@dataclass(frozen=True)
class DepositQuote:
    """Rate derivation for a prospective deposit."""

    amount: int
    duration: int
    epoch_count: int
    per_epoch_rate: int
    dust: int

    def to_dict(self) -> dict[str, int]:
        return {
            "amount": self.amount,
            "duration": self.duration,
            "epoch_count": self.epoch_count,
            "per_epoch_rate": self.per_epoch_rate,
            "dust": self.dust,
        }


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class VestingEngine:
    def __init__(
        self,
        asset: AssetTransfer,
        store: ScheduleStore | None = None,
        config: LedgerConfig | None = None,
        events: EventLog | None = None,
        time_provider: Callable[[], int] | None = None,
    ):
        self.config = config or LedgerConfig()
        if store is None:
            store = ScheduleStore(
                epoch_length=self.config.epoch_length,
                min_duration=self.config.min_duration,
                storage_path=self.config.storage_path,
            )
        elif (store.epoch_length, store.min_duration) != (
            self.config.epoch_length,
            self.config.min_duration,
        ):
            raise ConfigurationError(
                "Schedule store and ledger config disagree on epoch length or minimum duration.",
                details={
                    "store": (store.epoch_length, store.min_duration),
                    "config": (self.config.epoch_length, self.config.min_duration),
                },
            )
        self.asset = asset
        self.store = store
        self.events = events or EventLog()
        self._locks = BeneficiaryLocks()
        self._time_provider = time_provider or (lambda: int(time.time()))
        logger.info(
            "VestingEngine initialized: epoch=%ds min_duration=%ds deposit_policy=%s dust_policy=%s",
            self.config.epoch_length,
            self.config.min_duration,
            self.config.deposit_policy.value,
            self.config.dust_policy.value,
        )

    def _current_time(self, current_time: int | None = None) -> int:
        if current_time is not None:
            if not _is_int(current_time):
                raise ValueError("current_time must be an integer timestamp")
            timestamp = current_time
        else:
            try:
                timestamp = int(self._time_provider())
            except (TypeError, ValueError) as exc:
                raise ValueError("time_provider must return an integer timestamp") from exc
        if timestamp < 0:
            raise ValueError(f"Timestamps are unsigned; got {timestamp}")
        return timestamp

    def _rollback(self, key: str, previous: VestingSchedule | None, cause: Exception) -> None:
        """Undo the store write that preceded a failed transfer."""
        try:
            self.store.restore(key, previous)
        except InvalidStateError as exc:
            logger.critical(
                "Rollback for %s failed after transfer error (%s): %s",
                key[:LOG_ADDRESS_PREFIX],
                cause,
                exc,
                extra={"event": "vesting.rollback_failed"},
            )
            raise InvalidStateError(
                f"Transfer failed and the schedule for {key} could not be rolled back: {exc}",
                details={"beneficiary": key, "transfer_error": str(cause)},
            ) from cause

    # ==================== Validation ====================

    def _validate_beneficiary(self, beneficiary: str) -> None:
        if not isinstance(beneficiary, str) or not beneficiary.strip():
            raise InvalidAddressError("Beneficiary address cannot be empty.")
        if beneficiary.lower() == ZERO_ADDRESS:
            raise InvalidAddressError(
                "Beneficiary cannot be the zero address.",
                details={"beneficiary": beneficiary},
            )

    def _validate_amount(self, amount: int) -> None:
        if not _is_int(amount):
            raise InvalidAmountError("Deposit amount must be an integer number of base units.")
        if amount <= 0:
            raise InvalidAmountError(
                "Deposit amount must be positive.", details={"amount": amount}
            )
        if amount > UINT256_MAX:
            raise InvalidAmountError(
                "Deposit amount exceeds uint256.", details={"amount": amount}
            )

    def _validate_duration(self, duration: int) -> None:
        if not _is_int(duration):
            raise InvalidDurationError("Duration must be an integer number of seconds.")
        if duration <= self.config.min_duration:
            raise InvalidDurationError(
                f"Duration must exceed {self.config.min_duration} seconds.",
                details={"duration": duration, "min_duration": self.config.min_duration},
            )

    # ==================== Operations ====================

    def quote(self, amount: int, duration: int) -> DepositQuote:
        """
        Derive the epoch count, per-epoch rate and dust for a deposit without
        recording anything.

        Raises:
            InvalidAmountError, InvalidDurationError
        """
        self._validate_amount(amount)
        self._validate_duration(duration)
        epochs = derive_epoch_count(duration, self.config.epoch_length)
        rate = derive_per_epoch_rate(amount, epochs)
        return DepositQuote(
            amount=amount,
            duration=duration,
            epoch_count=epochs,
            per_epoch_rate=rate,
            dust=compute_dust(amount, rate, epochs),
        )

    def deposit(
        self,
        payer: str,
        beneficiary: str,
        amount: int,
        duration: int,
        current_time: int | None = None,
    ) -> VestingSchedule:
        """
        Lock ``amount`` for ``beneficiary``, releasing it linearly over ``duration``.

        Args:
            payer: Address the deposit is pulled from
            beneficiary: Address entitled to withdraw
            amount: Deposit in base units
            duration: Vesting length in seconds
            current_time: Ledger time; defaults to the time provider

        Returns:
            The stored schedule

        Raises:
            InvalidAddressError: Empty or zero beneficiary, or empty payer
            InvalidAmountError: Amount not a positive integer
            InvalidDurationError: Duration not above the minimum
            ScheduleExistsError: Active schedule under the reject policy
            InsufficientFundsError: Payer cannot cover the amount
            AssetTransferError: The asset refused the deposit
        """
        self._validate_beneficiary(beneficiary)
        if not isinstance(payer, str) or not payer.strip():
            raise InvalidAddressError("Payer address cannot be empty.")
        quote = self.quote(amount, duration)
        now = self._current_time(current_time)
        key = beneficiary.lower()

        with self._locks.hold(key):
            existing = self.store.get(key)
            if existing is not None and not self._is_settled(existing):
                if self.config.deposit_policy is DepositPolicy.REJECT:
                    logger.warning(
                        "Deposit rejected: active schedule exists",
                        extra={
                            "event": "vesting.deposit_rejected",
                            "beneficiary": key[:LOG_ADDRESS_PREFIX],
                            "remaining": existing.remaining_amount,
                        },
                    )
                    raise ScheduleExistsError(
                        f"Beneficiary {key} already has an active schedule.",
                        details={"beneficiary": key, "remaining": existing.remaining_amount},
                    )
                logger.warning(
                    "Replacing active schedule for %s; %d unwithdrawn units are discarded",
                    key[:LOG_ADDRESS_PREFIX],
                    existing.remaining_amount,
                )

            available = self.asset.available_balance(payer)
            if available < amount:
                logger.warning(
                    "Deposit rejected: insufficient funds",
                    extra={
                        "event": "vesting.deposit_rejected",
                        "payer": payer[:LOG_ADDRESS_PREFIX],
                        "available": available,
                        "amount": amount,
                    },
                )
                raise InsufficientFundsError(
                    f"Payer balance {available} is below deposit amount {amount}.",
                    details={"payer": payer, "available": available, "amount": amount},
                )

            if quote.per_epoch_rate == 0:
                logger.warning(
                    "Deposit of %d over %d epochs rounds to a zero rate; all of it is dust",
                    amount,
                    quote.epoch_count,
                )

            schedule = VestingSchedule(
                beneficiary=key,
                total_amount=amount,
                start_time=now,
                duration=duration,
                per_epoch_rate=quote.per_epoch_rate,
                withdrawn_amount=0,
            )
            self.store.put(key, schedule)
            try:
                self.asset.transfer_in(payer, amount)
            except Exception as exc:
                logger.error(
                    "Deposit transfer failed, rolling back schedule for %s",
                    key[:LOG_ADDRESS_PREFIX],
                )
                self._rollback(key, existing, exc)
                raise

            self.events.deposit_recorded(key, amount, now)

        logger.info(
            "Deposit recorded",
            extra={
                "event": "vesting.deposit",
                "beneficiary": key[:LOG_ADDRESS_PREFIX],
                "payer": payer[:LOG_ADDRESS_PREFIX],
                "amount": amount,
                "duration": duration,
                "per_epoch_rate": quote.per_epoch_rate,
                "dust": quote.dust,
                "start_time": now,
            },
        )
        return schedule

    def withdraw(self, beneficiary: str, current_time: int | None = None) -> int:
        """
        Pay out everything vested and not yet withdrawn.

        Returns:
            Amount transferred to the beneficiary

        Raises:
            NoScheduleError: No schedule exists for the beneficiary
            NothingToWithdrawError: Nothing new has vested (retryable)
            AssetTransferError: The asset refused the payout
        """
        if not isinstance(beneficiary, str) or not beneficiary:
            raise NoScheduleError("No vesting schedule for an empty beneficiary.")
        now = self._current_time(current_time)
        key = beneficiary.lower()

        with self._locks.hold(key):
            schedule = self.store.get(key)
            if schedule is None:
                raise NoScheduleError(
                    f"No vesting schedule for {key}.", details={"beneficiary": key}
                )

            withdrawable = compute_withdrawable_amount(
                schedule, now, self.config.epoch_length, self.config.dust_policy
            )
            if withdrawable <= 0:
                next_time = next_unlock_time(
                    schedule, now, self.config.epoch_length, self.config.dust_policy
                )
                logger.info(
                    "Nothing to withdraw for %s (next unlock: %s)",
                    key[:LOG_ADDRESS_PREFIX],
                    next_time,
                )
                raise NothingToWithdrawError(
                    f"Nothing has vested for {key} since the last withdrawal.",
                    next_unlock_time=next_time,
                    details={"beneficiary": key, "withdrawn_amount": schedule.withdrawn_amount},
                )

            updated = self.store.update_withdrawn(key, schedule.withdrawn_amount + withdrawable)
            try:
                self.asset.transfer_out(key, withdrawable)
            except Exception as exc:
                logger.error(
                    "Withdrawal transfer failed, rolling back withdrawn amount for %s",
                    key[:LOG_ADDRESS_PREFIX],
                )
                self._rollback(key, schedule, exc)
                raise

            self.events.withdrawal_recorded(key, withdrawable)

        logger.info(
            "Withdrawal recorded",
            extra={
                "event": "vesting.withdraw",
                "beneficiary": key[:LOG_ADDRESS_PREFIX],
                "amount": withdrawable,
                "withdrawn_amount": updated.withdrawn_amount,
                "total_amount": updated.total_amount,
            },
        )
        return withdrawable

    # ==================== Read Interface ====================

    def get_schedule(self, beneficiary: str) -> VestingSchedule:
        """Stored schedule, or the zero-valued record when none exists."""
        schedule = self.store.get(beneficiary) if beneficiary else None
        return schedule if schedule is not None else VestingSchedule.empty(beneficiary or "")

    def total_amount(self, beneficiary: str) -> int:
        return self.get_schedule(beneficiary).total_amount

    def start_time(self, beneficiary: str) -> int:
        return self.get_schedule(beneficiary).start_time

    def duration(self, beneficiary: str) -> int:
        return self.get_schedule(beneficiary).duration

    def per_epoch_rate(self, beneficiary: str) -> int:
        return self.get_schedule(beneficiary).per_epoch_rate

    def withdrawn_amount(self, beneficiary: str) -> int:
        return self.get_schedule(beneficiary).withdrawn_amount

    def unlocked_amount(self, beneficiary: str, current_time: int | None = None) -> int:
        return compute_unlocked_amount(
            self.get_schedule(beneficiary),
            self._current_time(current_time),
            self.config.epoch_length,
            self.config.dust_policy,
        )

    def withdrawable_amount(self, beneficiary: str, current_time: int | None = None) -> int:
        return compute_withdrawable_amount(
            self.get_schedule(beneficiary),
            self._current_time(current_time),
            self.config.epoch_length,
            self.config.dust_policy,
        )

    def next_unlock_time(self, beneficiary: str, current_time: int | None = None) -> int | None:
        return next_unlock_time(
            self.get_schedule(beneficiary),
            self._current_time(current_time),
            self.config.epoch_length,
            self.config.dust_policy,
        )

    def schedule_state(self, beneficiary: str) -> ScheduleState:
        schedule = self.store.get(beneficiary) if beneficiary else None
        if schedule is None:
            return ScheduleState.NON_EXISTENT
        if self._is_settled(schedule):
            return ScheduleState.FULLY_VESTED
        return ScheduleState.ACTIVE

    def _is_settled(self, schedule: VestingSchedule) -> bool:
        # Forfeited dust never unlocks, so a schedule can settle below total_amount
        return is_settled(schedule, self.config.epoch_length, self.config.dust_policy)
