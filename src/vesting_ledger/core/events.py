"""
Ledger notifications.

Events are observability only: subscribers see deposits and withdrawals
after the ledger has committed them, and a failing subscriber never
changes ledger state.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from vesting_ledger.core.constants import LOG_ADDRESS_PREFIX

logger = logging.getLogger(__name__)

DEPOSIT_RECORDED = "DepositRecorded"
WITHDRAWAL_RECORDED = "WithdrawalRecorded"


@dataclass
class VestingEvent:
    """Represents a ledger event."""

    event_type: str  # DEPOSIT_RECORDED or WITHDRAWAL_RECORDED
    beneficiary: str
    amount: int
    start_time: int | None = None  # deposits only
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "beneficiary": self.beneficiary,
            "amount": self.amount,
            "start_time": self.start_time,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[VestingEvent], None]


class EventLog:
    """Append-only event history with optional subscribers."""

    def __init__(self, max_events: int = 10_000):
        self.max_events = max_events
        self.events: list[VestingEvent] = []
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def deposit_recorded(self, beneficiary: str, amount: int, start_time: int) -> VestingEvent:
        return self._emit(
            VestingEvent(
                event_type=DEPOSIT_RECORDED,
                beneficiary=beneficiary,
                amount=amount,
                start_time=start_time,
            )
        )

    def withdrawal_recorded(self, beneficiary: str, amount: int) -> VestingEvent:
        return self._emit(
            VestingEvent(
                event_type=WITHDRAWAL_RECORDED,
                beneficiary=beneficiary,
                amount=amount,
            )
        )

    def for_beneficiary(self, beneficiary: str) -> list[VestingEvent]:
        key = beneficiary.lower()
        with self._lock:
            return [event for event in self.events if event.beneficiary == key]

    def _emit(self, event: VestingEvent) -> VestingEvent:
        with self._lock:
            self.events.append(event)
            if len(self.events) > self.max_events:
                self.events = self.events[-self.max_events:]
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:  # subscribers are outside the ledger's control
                logger.error(
                    "Event subscriber failed: %s",
                    exc,
                    exc_info=True,
                    extra={
                        "event": "vesting.subscriber_error",
                        "event_type": event.event_type,
                        "beneficiary": event.beneficiary[:LOG_ADDRESS_PREFIX],
                    },
                )
        return event
