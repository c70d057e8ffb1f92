from __future__ import annotations

import logging

import pytest

from vesting_ledger.contracts.erc20 import ERC20Custody, ERC20Token
from vesting_ledger.core.config import DepositPolicy, DustPolicy, LedgerConfig
from vesting_ledger.core.events import EventLog
from vesting_ledger.core.logging_config import LEDGER_LOGGER
from vesting_ledger.core.vesting_engine import VestingEngine

from vesting_helpers import CUSTODY, PAYER, PAYER_FUNDS, START, ManualClock


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def token():
    token = ERC20Token(name="Vesting Token", symbol="VEST", owner=CUSTODY)
    token.mint(CUSTODY, PAYER, PAYER_FUNDS)
    return token


@pytest.fixture
def custody(token):
    return ERC20Custody(token, CUSTODY)


@pytest.fixture
def event_log():
    return EventLog()


@pytest.fixture
def make_engine(custody, clock, event_log):
    """Build an engine over the shared token, clock and event log."""

    def _make(
        deposit_policy: DepositPolicy = DepositPolicy.OVERWRITE,
        dust_policy: DustPolicy = DustPolicy.FORFEIT,
        storage_path: str | None = None,
        asset=None,
    ) -> VestingEngine:
        config = LedgerConfig(
            deposit_policy=deposit_policy,
            dust_policy=dust_policy,
            storage_path=storage_path,
        )
        return VestingEngine(
            asset or custody,
            config=config,
            events=event_log,
            time_provider=clock.now,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture(autouse=True)
def restore_ledger_logger():
    """CLI runs and logging tests replace the package handlers; put them back afterwards."""
    logger = logging.getLogger(LEDGER_LOGGER)
    level, handlers = logger.level, list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
    for handler in handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
