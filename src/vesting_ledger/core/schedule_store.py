"""
Beneficiary-keyed storage of vesting schedules.

The store owns every VestingSchedule record. Reads hand out copies, so an
engine call can never mutate a stored record except through ``put`` or
``update_withdrawn``.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import replace
from typing import Any, Dict, Iterator, Optional

from vesting_ledger.core.constants import EPOCH_LENGTH, LOG_ADDRESS_PREFIX, MIN_DURATION
from vesting_ledger.core.vesting_exceptions import InvalidStateError
from vesting_ledger.core.vesting_schedule import VestingSchedule

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    Mapping from beneficiary address to at most one schedule.

    Thread Safety: every access to the mapping happens under an RLock.
    Serialising whole deposit/withdraw calls per beneficiary is the engine's
    job, not the store's.
    """

    def __init__(
        self,
        epoch_length: int = EPOCH_LENGTH,
        min_duration: int = MIN_DURATION,
        storage_path: Optional[str] = None,
    ):
        self.epoch_length = epoch_length
        self.min_duration = min_duration
        self.storage_path = storage_path
        self._schedules: Dict[str, VestingSchedule] = {}
        self._lock = threading.RLock()
        self._load_state()
        logger.info(
            "ScheduleStore initialized with %d schedule(s), persistence: %s",
            len(self._schedules),
            bool(storage_path),
        )

    @staticmethod
    def _normalize(beneficiary: str) -> str:
        return beneficiary.lower()

    def get(self, beneficiary: str) -> Optional[VestingSchedule]:
        """Return a copy of the stored schedule, or None when absent."""
        if not beneficiary:
            return None
        with self._lock:
            schedule = self._schedules.get(self._normalize(beneficiary))
            return replace(schedule) if schedule is not None else None

    def put(self, beneficiary: str, schedule: VestingSchedule) -> None:
        """
        Store ``schedule`` for ``beneficiary``, replacing any existing record.

        Whether replacing is allowed is decided by the engine.

        Raises:
            InvalidStateError: If the record breaks a ledger invariant or
                cannot be persisted
        """
        key = self._normalize(beneficiary)
        schedule.validate(self.min_duration, self.epoch_length)
        with self._lock:
            previous = self._schedules.get(key)
            self._schedules[key] = replace(schedule, beneficiary=key)
            try:
                self._persist_state_locked()
            except InvalidStateError:
                self._restore_locked(key, previous)
                raise
        logger.debug(
            "Schedule stored",
            extra={
                "event": "store.put",
                "beneficiary": key[:LOG_ADDRESS_PREFIX],
                "replaced": previous is not None,
            },
        )

    def update_withdrawn(self, beneficiary: str, new_withdrawn_amount: int) -> VestingSchedule:
        """
        Raise the cumulative withdrawn amount of an existing schedule.

        Returns:
            A copy of the updated schedule

        Raises:
            InvalidStateError: If no record exists, the amount decreases, or it
                exceeds the total amount
        """
        key = self._normalize(beneficiary)
        with self._lock:
            current = self._schedules.get(key)
            if current is None:
                raise InvalidStateError(
                    f"No schedule stored for {key}.",
                    details={"beneficiary": key},
                )
            if not isinstance(new_withdrawn_amount, int) or isinstance(new_withdrawn_amount, bool):
                raise InvalidStateError("Withdrawn amount must be an integer.")
            if new_withdrawn_amount < current.withdrawn_amount:
                logger.error(
                    "Rejected decreasing withdrawn amount for %s: %d -> %d",
                    key[:LOG_ADDRESS_PREFIX],
                    current.withdrawn_amount,
                    new_withdrawn_amount,
                )
                raise InvalidStateError(
                    "Withdrawn amount cannot decrease.",
                    details={
                        "beneficiary": key,
                        "stored": current.withdrawn_amount,
                        "requested": new_withdrawn_amount,
                    },
                )
            if new_withdrawn_amount > current.total_amount:
                logger.error(
                    "Rejected withdrawn amount above total for %s: %d > %d",
                    key[:LOG_ADDRESS_PREFIX],
                    new_withdrawn_amount,
                    current.total_amount,
                )
                raise InvalidStateError(
                    "Withdrawn amount cannot exceed the total amount.",
                    details={
                        "beneficiary": key,
                        "total_amount": current.total_amount,
                        "requested": new_withdrawn_amount,
                    },
                )
            self._schedules[key] = replace(current, withdrawn_amount=new_withdrawn_amount)
            try:
                self._persist_state_locked()
            except InvalidStateError:
                self._schedules[key] = current
                raise
            return replace(self._schedules[key])

    def restore(self, beneficiary: str, schedule: Optional[VestingSchedule]) -> None:
        """
        Put back a record captured before a failed operation.

        Unlike ``put`` and ``update_withdrawn`` this bypasses the monotonic
        checks; the engine uses it only to undo its own write when the asset
        transfer that followed it failed.
        """
        key = self._normalize(beneficiary)
        with self._lock:
            self._restore_locked(key, schedule)
            self._persist_state_locked()
        logger.warning(
            "Schedule rolled back",
            extra={"event": "store.restore", "beneficiary": key[:LOG_ADDRESS_PREFIX]},
        )

    def _restore_locked(self, key: str, schedule: Optional[VestingSchedule]) -> None:
        if schedule is None:
            self._schedules.pop(key, None)
        else:
            self._schedules[key] = replace(schedule)

    def beneficiaries(self) -> list[str]:
        with self._lock:
            return sorted(self._schedules)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {key: schedule.to_dict() for key, schedule in self._schedules.items()}

    def __contains__(self, beneficiary: object) -> bool:
        if not isinstance(beneficiary, str):
            return False
        with self._lock:
            return self._normalize(beneficiary) in self._schedules

    def __len__(self) -> int:
        with self._lock:
            return len(self._schedules)

    def __iter__(self) -> Iterator[str]:
        return iter(self.beneficiaries())

    # ==================== Persistence ====================

    def _persist_state_locked(self) -> None:
        if not self.storage_path:
            return
        snapshot = [schedule.to_dict() for schedule in self._schedules.values()]
        tmp_path = f"{self.storage_path}.tmp"
        try:
            directory = os.path.dirname(self.storage_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2)
            os.replace(tmp_path, self.storage_path)
        except OSError as exc:
            logger.error("Failed to persist schedules to %s: %s", self.storage_path, exc)
            raise InvalidStateError(
                f"Failed to persist schedules: {exc}",
                details={"storage_path": self.storage_path},
            ) from exc

    def _load_state(self) -> None:
        if not self.storage_path or not os.path.exists(self.storage_path):
            return
        try:
            with open(self.storage_path, "r", encoding="utf-8") as handle:
                entries = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to load schedule state: %s", exc)
            raise InvalidStateError(
                f"Failed to load schedules from {self.storage_path}: {exc}",
                details={"storage_path": self.storage_path},
            ) from exc
        if not isinstance(entries, list):
            raise InvalidStateError(
                f"Schedule file {self.storage_path} must hold a JSON list.",
                details={"storage_path": self.storage_path},
            )
        for item in entries:
            schedule = VestingSchedule.from_dict(item)
            schedule.validate(self.min_duration, self.epoch_length)
            key = self._normalize(schedule.beneficiary)
            self._schedules[key] = replace(schedule, beneficiary=key)
