"""
Vesting schedule record and the pure arithmetic around it.

Every amount is an integer number of base units. Rates are derived with
floor division, so a deposit that does not divide evenly across its epochs
leaves a remainder ("dust") of at most ``epoch_count - 1`` units.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from vesting_ledger.core.config import DustPolicy
from vesting_ledger.core.vesting_exceptions import InvalidStateError


@dataclass
class VestingSchedule:
    beneficiary: str
    total_amount: int
    start_time: int
    duration: int
    per_epoch_rate: int
    withdrawn_amount: int = 0

    @classmethod
    def empty(cls, beneficiary: str) -> "VestingSchedule":
        """Zero-valued record returned by read accessors for unknown beneficiaries."""
        return cls(
            beneficiary=beneficiary,
            total_amount=0,
            start_time=0,
            duration=0,
            per_epoch_rate=0,
            withdrawn_amount=0,
        )

    def epoch_count(self, epoch_length: int) -> int:
        return derive_epoch_count(self.duration, epoch_length)

    @property
    def remaining_amount(self) -> int:
        return self.total_amount - self.withdrawn_amount

    def validate(self, min_duration: int, epoch_length: int) -> None:
        """
        Check the record against the ledger invariants.

        Raises:
            InvalidStateError: If any invariant is broken
        """
        fields = (
            self.total_amount,
            self.start_time,
            self.duration,
            self.per_epoch_rate,
            self.withdrawn_amount,
        )
        if not all(isinstance(value, int) and not isinstance(value, bool) for value in fields):
            raise InvalidStateError(
                "Schedule fields must be integers.",
                details={"beneficiary": self.beneficiary},
            )
        if self.total_amount <= 0:
            raise InvalidStateError(
                "Schedule total amount must be positive.",
                details={"beneficiary": self.beneficiary, "total_amount": self.total_amount},
            )
        if self.start_time < 0:
            raise InvalidStateError(
                "Schedule start time must not be negative.",
                details={"beneficiary": self.beneficiary, "start_time": self.start_time},
            )
        if self.duration <= min_duration:
            raise InvalidStateError(
                "Schedule duration must exceed the minimum duration.",
                details={"beneficiary": self.beneficiary, "duration": self.duration},
            )
        epochs = self.epoch_count(epoch_length)
        if epochs < 1:
            raise InvalidStateError(
                "Schedule must span at least one epoch.",
                details={"beneficiary": self.beneficiary, "duration": self.duration},
            )
        if self.per_epoch_rate != self.total_amount // epochs:
            raise InvalidStateError(
                "Schedule rate does not match total amount over epoch count.",
                details={
                    "beneficiary": self.beneficiary,
                    "per_epoch_rate": self.per_epoch_rate,
                    "expected": self.total_amount // epochs,
                },
            )
        if not 0 <= self.withdrawn_amount <= self.total_amount:
            raise InvalidStateError(
                "Withdrawn amount must lie between zero and the total amount.",
                details={
                    "beneficiary": self.beneficiary,
                    "withdrawn_amount": self.withdrawn_amount,
                    "total_amount": self.total_amount,
                },
            )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VestingSchedule":
        try:
            return cls(
                beneficiary=str(data["beneficiary"]),
                total_amount=int(data["total_amount"]),
                start_time=int(data["start_time"]),
                duration=int(data["duration"]),
                per_epoch_rate=int(data["per_epoch_rate"]),
                withdrawn_amount=int(data.get("withdrawn_amount", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidStateError(f"Malformed schedule record: {exc}") from exc


# ==================== Arithmetic ====================


def derive_epoch_count(duration: int, epoch_length: int) -> int:
    """Number of whole epochs in ``duration`` (floor division)."""
    return duration // epoch_length


def derive_per_epoch_rate(amount: int, epoch_count: int) -> int:
    """Units released per elapsed epoch (floor division)."""
    if epoch_count < 1:
        raise InvalidStateError("Epoch count must be at least one.")
    return amount // epoch_count


def compute_dust(amount: int, per_epoch_rate: int, epoch_count: int) -> int:
    """Remainder left over by the floor-division rate."""
    return amount - per_epoch_rate * epoch_count


def elapsed_epochs(schedule: VestingSchedule, current_time: int, epoch_length: int) -> int:
    """Whole epochs elapsed since ``start_time``, clamped to the schedule."""
    elapsed = current_time - schedule.start_time
    elapsed = max(0, min(elapsed, schedule.duration))
    return min(schedule.epoch_count(epoch_length), elapsed // epoch_length)


def compute_unlocked_amount(
    schedule: VestingSchedule,
    current_time: int,
    epoch_length: int,
    dust_policy: DustPolicy = DustPolicy.FORFEIT,
) -> int:
    """
    Cumulative amount the beneficiary is entitled to at ``current_time``.

    Non-decreasing in ``current_time`` and never above ``total_amount``.
    """
    if schedule.total_amount <= 0:
        return 0
    epochs = elapsed_epochs(schedule, current_time, epoch_length)
    if dust_policy is DustPolicy.FINAL_EPOCH and epochs == schedule.epoch_count(epoch_length):
        return schedule.total_amount
    return min(schedule.total_amount, schedule.per_epoch_rate * epochs)


def max_unlockable_amount(
    schedule: VestingSchedule,
    epoch_length: int,
    dust_policy: DustPolicy = DustPolicy.FORFEIT,
) -> int:
    """Amount unlocked once every epoch has elapsed; below ``total_amount`` by the dust under FORFEIT."""
    end_time = schedule.start_time + schedule.duration
    return compute_unlocked_amount(schedule, end_time, epoch_length, dust_policy)


def is_settled(
    schedule: VestingSchedule,
    epoch_length: int,
    dust_policy: DustPolicy = DustPolicy.FORFEIT,
) -> bool:
    """True once nothing more can ever be withdrawn from ``schedule``."""
    return schedule.withdrawn_amount >= max_unlockable_amount(schedule, epoch_length, dust_policy)


def compute_withdrawable_amount(
    schedule: VestingSchedule,
    current_time: int,
    epoch_length: int,
    dust_policy: DustPolicy = DustPolicy.FORFEIT,
) -> int:
    unlocked = compute_unlocked_amount(schedule, current_time, epoch_length, dust_policy)
    return max(0, unlocked - schedule.withdrawn_amount)


def next_unlock_time(
    schedule: VestingSchedule,
    current_time: int,
    epoch_length: int,
    dust_policy: DustPolicy = DustPolicy.FORFEIT,
) -> int | None:
    """
    Earliest time after ``current_time`` at which the unlocked amount grows.

    Returns None once nothing further will ever unlock.
    """
    if schedule.total_amount <= 0:
        return None
    total_epochs = schedule.epoch_count(epoch_length)
    done = elapsed_epochs(schedule, current_time, epoch_length)
    if done >= total_epochs:
        return None
    final_boundary = schedule.start_time + total_epochs * epoch_length
    if schedule.per_epoch_rate == 0:
        # Only dust remains; it moves at the final boundary or not at all
        return final_boundary if dust_policy is DustPolicy.FINAL_EPOCH else None
    return schedule.start_time + (done + 1) * epoch_length
