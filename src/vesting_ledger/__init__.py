"""
Vesting Ledger

Epoch-based token release ledger:
- Linear vesting schedules, one per beneficiary
- Floor-division rate derivation with explicit dust accounting
- Withdrawal settlement that never pays more than has vested
- Per-beneficiary reentrancy exclusion around asset transfers
"""

from vesting_ledger.core.config import DepositPolicy, DustPolicy, LedgerConfig
from vesting_ledger.core.schedule_store import ScheduleStore
from vesting_ledger.core.vesting_engine import ScheduleState, VestingEngine
from vesting_ledger.core.vesting_schedule import VestingSchedule

__version__ = "0.1.0"

__all__ = [
    "DepositPolicy",
    "DustPolicy",
    "LedgerConfig",
    "ScheduleState",
    "ScheduleStore",
    "VestingEngine",
    "VestingSchedule",
]
