"""
Per-beneficiary mutual exclusion for state-mutating ledger calls.

A call holds its beneficiary's lock from before the first read until after
the asset transfer returns. Other threads working on the same beneficiary
wait; the holding thread re-entering (for example from a transfer hook)
is refused outright instead of deadlocking.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from vesting_ledger.core.constants import LOG_ADDRESS_PREFIX
from vesting_ledger.core.vesting_exceptions import ReentrancyError

logger = logging.getLogger(__name__)


class _BeneficiaryLock:
    __slots__ = ("lock", "owner", "waiters")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.owner: int | None = None
        self.waiters = 0


class BeneficiaryLocks:
    """Registry of scoped locks keyed by normalized beneficiary address."""

    def __init__(self) -> None:
        self._locks: Dict[str, _BeneficiaryLock] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, beneficiary: str) -> Iterator[None]:
        """
        Hold the beneficiary's lock for the duration of the ``with`` block.

        Raises:
            ReentrancyError: If the current thread already holds this lock
        """
        key = beneficiary.lower()
        me = threading.get_ident()
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _BeneficiaryLock()
                self._locks[key] = entry
            if entry.owner == me:
                logger.error(
                    "Reentrant ledger call blocked",
                    extra={"event": "vesting.reentrancy", "beneficiary": key[:LOG_ADDRESS_PREFIX]},
                )
                raise ReentrancyError(
                    f"Reentrant call for {key} while a previous call is in progress.",
                    details={"beneficiary": key},
                )
            entry.waiters += 1

        entry.lock.acquire()
        entry.owner = me
        try:
            yield
        finally:
            entry.owner = None
            entry.lock.release()
            with self._registry_lock:
                entry.waiters -= 1
                if entry.waiters == 0:
                    self._locks.pop(key, None)

    def is_held(self, beneficiary: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get(beneficiary.lower())
            return entry is not None and entry.owner is not None
