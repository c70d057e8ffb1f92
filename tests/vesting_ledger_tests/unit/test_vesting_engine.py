"""
Tests for the vesting engine.

Tests cover:
- Deposit validation and rate derivation
- Withdrawal settlement across epochs
- Schedule state transitions
- Repeat-deposit and dust policies
- Rollback when the asset refuses a transfer
- Reentrancy exclusion and concurrent withdrawals
- Read accessors and notifications
"""

from __future__ import annotations

import threading

import pytest

from vesting_ledger.core.config import DepositPolicy, DustPolicy, LedgerConfig
from vesting_ledger.core.constants import EPOCH_LENGTH, MIN_DURATION, ZERO_ADDRESS
from vesting_ledger.core.events import DEPOSIT_RECORDED, WITHDRAWAL_RECORDED
from vesting_ledger.core.schedule_store import ScheduleStore
from vesting_ledger.core.vesting_engine import ScheduleState, VestingEngine
from vesting_ledger.core.vesting_exceptions import (
    AssetTransferError,
    ConfigurationError,
    InsufficientFundsError,
    InvalidAddressError,
    InvalidAmountError,
    InvalidDurationError,
    InvalidStateError,
    NoScheduleError,
    NothingToWithdrawError,
    ReentrancyError,
    ScheduleExistsError,
    ValidationError,
)

from vesting_helpers import ALICE, BOB, CUSTODY, PAYER, PAYER_FUNDS, START

TEN_EPOCHS = 10 * EPOCH_LENGTH


class RefusingAsset:
    """Asset that accepts balance checks but refuses the selected transfers."""

    def __init__(self, inner, refuse_in: bool = False, refuse_out: bool = False):
        self.inner = inner
        self.refuse_in = refuse_in
        self.refuse_out = refuse_out

    @property
    def custody_address(self) -> str:
        return self.inner.custody_address

    def available_balance(self, owner: str) -> int:
        return self.inner.available_balance(owner)

    def transfer_in(self, payer: str, amount: int) -> None:
        if self.refuse_in:
            raise AssetTransferError("deposit refused")
        self.inner.transfer_in(payer, amount)

    def transfer_out(self, recipient: str, amount: int) -> None:
        if self.refuse_out:
            raise AssetTransferError("withdrawal refused")
        self.inner.transfer_out(recipient, amount)


class HookedAsset(RefusingAsset):
    """Asset whose payout runs a callback before moving funds, like a token hook."""

    def __init__(self, inner, on_transfer_out):
        super().__init__(inner)
        self.on_transfer_out = on_transfer_out

    def transfer_out(self, recipient: str, amount: int) -> None:
        self.on_transfer_out(recipient, amount)
        self.inner.transfer_out(recipient, amount)


# =============================================================================
# Deposit
# =============================================================================


class TestDeposit:
    def test_deposit_derives_rate_and_moves_funds(self, engine, token):
        schedule = engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)

        assert schedule.total_amount == 1000
        assert schedule.per_epoch_rate == 100
        assert schedule.start_time == START
        assert schedule.withdrawn_amount == 0
        assert token.balance_of(CUSTODY) == 1000
        assert token.balance_of(PAYER) == PAYER_FUNDS - 1000

    def test_deposit_uses_explicit_time(self, engine):
        schedule = engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS, current_time=START + 42)
        assert schedule.start_time == START + 42

    def test_rate_floors_and_leaves_dust(self, engine):
        schedule = engine.deposit(PAYER, ALICE, 1009, TEN_EPOCHS)
        assert schedule.per_epoch_rate == 100
        quote = engine.quote(1009, TEN_EPOCHS)
        assert quote.epoch_count == 10
        assert quote.dust == 9

    def test_partial_epoch_in_duration_is_ignored(self, engine):
        schedule = engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS + EPOCH_LENGTH // 2)
        assert schedule.per_epoch_rate == 100

    def test_zero_amount_rejected_without_state(self, engine, token):
        with pytest.raises(InvalidAmountError):
            engine.deposit(PAYER, ALICE, 0, TEN_EPOCHS)
        assert engine.store.get(ALICE) is None
        assert token.balance_of(CUSTODY) == 0

    @pytest.mark.parametrize("amount", [-1, 10.5, "100", True])
    def test_non_positive_or_non_integer_amount_rejected(self, engine, amount):
        with pytest.raises(InvalidAmountError):
            engine.deposit(PAYER, ALICE, amount, TEN_EPOCHS)

    def test_duration_equal_to_minimum_rejected(self, engine):
        with pytest.raises(InvalidDurationError):
            engine.deposit(PAYER, ALICE, 1000, MIN_DURATION)
        assert ALICE not in engine.store

    def test_duration_just_above_minimum_accepted(self, engine):
        schedule = engine.deposit(PAYER, ALICE, 700, MIN_DURATION + 1)
        assert schedule.per_epoch_rate == 100

    @pytest.mark.parametrize("beneficiary", ["", "   ", ZERO_ADDRESS, ZERO_ADDRESS.upper().replace("0X", "0x")])
    def test_invalid_beneficiary_rejected(self, engine, beneficiary):
        with pytest.raises(InvalidAddressError):
            engine.deposit(PAYER, beneficiary, 1000, TEN_EPOCHS)

    def test_empty_payer_rejected(self, engine):
        with pytest.raises(InvalidAddressError):
            engine.deposit("", ALICE, 1000, TEN_EPOCHS)

    def test_insufficient_funds_rejected(self, engine, token):
        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.deposit(BOB, ALICE, 1000, TEN_EPOCHS)
        assert exc_info.value.details["available"] == 0
        assert engine.store.get(ALICE) is None
        assert token.balance_of(CUSTODY) == 0

    def test_validation_errors_share_a_base_class(self, engine):
        with pytest.raises(ValidationError):
            engine.deposit(PAYER, ALICE, 0, TEN_EPOCHS)

    def test_address_check_runs_before_amount_check(self, engine):
        with pytest.raises(InvalidAddressError):
            engine.deposit(PAYER, "", 0, 0)

    def test_beneficiary_is_case_insensitive(self, engine):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        assert engine.total_amount(ALICE.upper().replace("0X", "0x")) == 1000

    def test_small_amount_rounds_to_zero_rate(self, engine, clock):
        schedule = engine.deposit(PAYER, ALICE, 5, TEN_EPOCHS)
        assert schedule.per_epoch_rate == 0
        clock.advance_epochs(20)
        with pytest.raises(NothingToWithdrawError) as exc_info:
            engine.withdraw(ALICE)
        assert exc_info.value.next_unlock_time is None


# =============================================================================
# Withdraw
# =============================================================================


class TestWithdraw:
    def test_partial_withdrawal_after_three_epochs(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        assert engine.withdraw(ALICE) == 300
        assert engine.withdrawn_amount(ALICE) == 300
        assert token.balance_of(ALICE) == 300
        assert token.balance_of(CUSTODY) == 700

    def test_final_withdrawal_pays_remaining(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)
        engine.withdraw(ALICE)

        clock.advance_epochs(7)
        assert engine.withdraw(ALICE) == 700
        assert engine.withdrawn_amount(ALICE) == 1000
        assert token.balance_of(ALICE) == 1000

    def test_withdrawal_long_after_end_is_capped(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(500)
        assert engine.withdraw(ALICE) == 1000

    def test_withdraw_without_schedule(self, engine):
        with pytest.raises(NoScheduleError):
            engine.withdraw(ALICE)

    def test_withdraw_empty_beneficiary(self, engine):
        with pytest.raises(NoScheduleError):
            engine.withdraw("")

    def test_withdraw_before_first_epoch(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance(EPOCH_LENGTH - 1)

        with pytest.raises(NothingToWithdrawError) as exc_info:
            engine.withdraw(ALICE)
        assert exc_info.value.recoverable is True
        assert exc_info.value.next_unlock_time == START + EPOCH_LENGTH
        assert engine.withdrawn_amount(ALICE) == 0

    def test_second_withdrawal_at_same_instant_fails(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(4)

        assert engine.withdraw(ALICE) == 400
        with pytest.raises(NothingToWithdrawError):
            engine.withdraw(ALICE)
        assert token.balance_of(ALICE) == 400

    def test_time_before_start_unlocks_nothing(self, engine):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        with pytest.raises(NothingToWithdrawError):
            engine.withdraw(ALICE, current_time=START - 10 * EPOCH_LENGTH)

    def test_fine_grained_withdrawals_never_overpay(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        paid = 0
        for _ in range(12 * 24):
            clock.advance(EPOCH_LENGTH // 24)
            try:
                paid += engine.withdraw(ALICE)
            except NothingToWithdrawError:
                pass
            assert paid == engine.unlocked_amount(ALICE)
        assert paid == 1000
        assert token.balance_of(ALICE) == 1000

    def test_non_integer_time_rejected(self, engine):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        with pytest.raises(ValueError):
            engine.withdraw(ALICE, current_time=START + 0.5)  # type: ignore[arg-type]


# =============================================================================
# State machine
# =============================================================================


class TestScheduleState:
    def test_lifecycle(self, engine, clock):
        assert engine.schedule_state(ALICE) is ScheduleState.NON_EXISTENT

        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        assert engine.schedule_state(ALICE) is ScheduleState.ACTIVE

        clock.advance_epochs(5)
        engine.withdraw(ALICE)
        assert engine.schedule_state(ALICE) is ScheduleState.ACTIVE

        clock.advance_epochs(5)
        engine.withdraw(ALICE)
        assert engine.schedule_state(ALICE) is ScheduleState.FULLY_VESTED

    def test_fully_vested_is_terminal(self, engine, clock, token, event_log):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(10)
        engine.withdraw(ALICE)
        events_before = len(event_log.events)
        transfers_before = len(token.events)

        for _ in range(3):
            clock.advance_epochs(1)
            with pytest.raises(NothingToWithdrawError) as exc_info:
                engine.withdraw(ALICE)
            assert exc_info.value.next_unlock_time is None

        assert len(event_log.events) == events_before
        assert len(token.events) == transfers_before

    def test_forfeited_dust_settles_below_total(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1009, TEN_EPOCHS)
        clock.advance_epochs(10)

        assert engine.withdraw(ALICE) == 1000
        assert engine.schedule_state(ALICE) is ScheduleState.FULLY_VESTED
        with pytest.raises(NothingToWithdrawError):
            engine.withdraw(ALICE)


# =============================================================================
# Policies
# =============================================================================


class TestDepositPolicy:
    def test_overwrite_replaces_active_schedule(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        replacement = engine.deposit(PAYER, ALICE, 2000, TEN_EPOCHS)

        assert replacement.start_time == clock.now()
        assert engine.total_amount(ALICE) == 2000
        assert engine.withdrawn_amount(ALICE) == 0

    def test_reject_refuses_active_schedule(self, make_engine, clock, token):
        engine = make_engine(deposit_policy=DepositPolicy.REJECT)
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        with pytest.raises(ScheduleExistsError):
            engine.deposit(PAYER, ALICE, 2000, TEN_EPOCHS)
        assert engine.total_amount(ALICE) == 1000
        assert token.balance_of(CUSTODY) == 1000

    def test_reject_allows_replacing_settled_schedule(self, make_engine, clock):
        engine = make_engine(deposit_policy=DepositPolicy.REJECT)
        engine.deposit(PAYER, ALICE, 1009, TEN_EPOCHS)
        clock.advance_epochs(10)
        engine.withdraw(ALICE)

        schedule = engine.deposit(PAYER, ALICE, 500, TEN_EPOCHS)
        assert schedule.total_amount == 500
        assert engine.schedule_state(ALICE) is ScheduleState.ACTIVE

    def test_reject_does_not_affect_other_beneficiaries(self, make_engine):
        engine = make_engine(deposit_policy=DepositPolicy.REJECT)
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        engine.deposit(PAYER, BOB, 1000, TEN_EPOCHS)
        assert engine.total_amount(BOB) == 1000


class TestDustPolicy:
    def test_final_epoch_releases_dust(self, make_engine, clock, token):
        engine = make_engine(dust_policy=DustPolicy.FINAL_EPOCH)
        engine.deposit(PAYER, ALICE, 1009, TEN_EPOCHS)

        clock.advance_epochs(9)
        assert engine.withdraw(ALICE) == 900
        assert engine.next_unlock_time(ALICE) == START + TEN_EPOCHS

        clock.advance_epochs(1)
        assert engine.withdraw(ALICE) == 109
        assert token.balance_of(ALICE) == 1009
        assert engine.schedule_state(ALICE) is ScheduleState.FULLY_VESTED

    def test_final_epoch_releases_zero_rate_deposit(self, make_engine, clock):
        engine = make_engine(dust_policy=DustPolicy.FINAL_EPOCH)
        engine.deposit(PAYER, ALICE, 5, TEN_EPOCHS)
        assert engine.next_unlock_time(ALICE) == START + TEN_EPOCHS

        clock.advance_epochs(10)
        assert engine.withdraw(ALICE) == 5

    def test_forfeit_keeps_dust_in_custody(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1009, TEN_EPOCHS)
        clock.advance_epochs(10)
        engine.withdraw(ALICE)
        assert token.balance_of(CUSTODY) == 9


# =============================================================================
# Transfer failures
# =============================================================================


class TestTransferRollback:
    def test_failed_payout_restores_withdrawn_amount(self, make_engine, custody, clock, event_log):
        asset = RefusingAsset(custody)
        engine = make_engine(asset=asset)
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        asset.refuse_out = True
        with pytest.raises(AssetTransferError):
            engine.withdraw(ALICE)
        assert engine.withdrawn_amount(ALICE) == 0
        assert [e.event_type for e in event_log.events] == [DEPOSIT_RECORDED]

        asset.refuse_out = False
        assert engine.withdraw(ALICE) == 300

    def test_failed_deposit_leaves_no_schedule(self, make_engine, custody, event_log):
        engine = make_engine(asset=RefusingAsset(custody, refuse_in=True))

        with pytest.raises(AssetTransferError):
            engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        assert engine.store.get(ALICE) is None
        assert event_log.events == []

    def test_failed_overwrite_restores_previous_schedule(self, make_engine, custody, clock):
        asset = RefusingAsset(custody)
        engine = make_engine(asset=asset)
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(2)
        engine.withdraw(ALICE)

        asset.refuse_in = True
        with pytest.raises(AssetTransferError):
            engine.deposit(PAYER, ALICE, 5000, TEN_EPOCHS)

        restored = engine.get_schedule(ALICE)
        assert restored.total_amount == 1000
        assert restored.withdrawn_amount == 200
        assert restored.start_time == START

    def test_failed_rollback_keeps_transfer_error_as_cause(self, make_engine, custody, clock, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")

        def refuse_and_break_storage(recipient, amount):
            # A regular file where the directory should be makes the rollback write fail
            engine.store.storage_path = str(blocker / "schedules.json")
            raise AssetTransferError("withdrawal refused")

        engine = make_engine(
            storage_path=str(tmp_path / "schedules.json"),
            asset=HookedAsset(custody, refuse_and_break_storage),
        )
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        with pytest.raises(InvalidStateError) as exc_info:
            engine.withdraw(ALICE)
        assert isinstance(exc_info.value.__cause__, AssetTransferError)
        assert "withdrawal refused" in exc_info.value.details["transfer_error"]
        assert engine.withdrawn_amount(ALICE) == 0


# =============================================================================
# Reentrancy and concurrency
# =============================================================================


class TestReentrancy:
    def test_reentrant_withdraw_is_blocked(self, make_engine, custody, clock, token):
        attempts = []
        engine_ref = {}

        def reenter(recipient, amount):
            attempts.append(amount)
            engine_ref["engine"].withdraw(recipient)

        engine = make_engine(asset=HookedAsset(custody, reenter))
        engine_ref["engine"] = engine
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)

        with pytest.raises(ReentrancyError):
            engine.withdraw(ALICE)
        assert attempts == [300]
        assert engine.withdrawn_amount(ALICE) == 0
        assert token.balance_of(ALICE) == 0

    def test_hook_may_act_on_other_beneficiary(self, make_engine, custody, clock, token):
        engine_ref = {}
        nested = []

        def pay_bob_too(recipient, amount):
            if recipient == ALICE.lower():
                nested.append(engine_ref["engine"].withdraw(BOB))

        engine = make_engine(asset=HookedAsset(custody, pay_bob_too))
        engine_ref["engine"] = engine
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        engine.deposit(PAYER, BOB, 2000, TEN_EPOCHS)
        clock.advance_epochs(1)

        assert engine.withdraw(ALICE) == 100
        assert nested == [200]
        assert token.balance_of(BOB) == 200

    def test_lock_released_after_error(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        with pytest.raises(NothingToWithdrawError):
            engine.withdraw(ALICE)
        clock.advance_epochs(1)
        assert engine.withdraw(ALICE) == 100

    def test_concurrent_withdrawals_pay_once(self, engine, clock, token):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(6)

        paid = []
        refused = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            try:
                paid.append(engine.withdraw(ALICE))
            except NothingToWithdrawError:
                refused.append(True)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert paid == [600]
        assert len(refused) == 7
        assert token.balance_of(ALICE) == 600


# =============================================================================
# Read interface and events
# =============================================================================


class TestReadInterface:
    def test_unknown_beneficiary_reads_zero(self, engine):
        assert engine.total_amount(ALICE) == 0
        assert engine.start_time(ALICE) == 0
        assert engine.duration(ALICE) == 0
        assert engine.per_epoch_rate(ALICE) == 0
        assert engine.unlocked_amount(ALICE) == 0
        assert engine.next_unlock_time(ALICE) is None

    def test_accessors_reflect_schedule(self, engine):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        assert engine.total_amount(ALICE) == 1000
        assert engine.start_time(ALICE) == START
        assert engine.duration(ALICE) == TEN_EPOCHS
        assert engine.per_epoch_rate(ALICE) == 100

    def test_returned_schedule_is_a_copy(self, engine):
        schedule = engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        schedule.withdrawn_amount = 999
        engine.get_schedule(ALICE).withdrawn_amount = 999
        assert engine.withdrawn_amount(ALICE) == 0

    def test_previews_do_not_mutate(self, engine, clock):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(2)
        assert engine.unlocked_amount(ALICE) == 200
        assert engine.withdrawable_amount(ALICE) == 200
        assert engine.withdrawn_amount(ALICE) == 0


class TestNotifications:
    def test_deposit_and_withdraw_events(self, engine, clock, event_log):
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(3)
        engine.withdraw(ALICE)

        deposit_event, withdraw_event = event_log.events
        assert deposit_event.event_type == DEPOSIT_RECORDED
        assert deposit_event.amount == 1000
        assert deposit_event.start_time == START
        assert withdraw_event.event_type == WITHDRAWAL_RECORDED
        assert withdraw_event.amount == 300
        assert withdraw_event.beneficiary == ALICE.lower()

    def test_failing_subscriber_does_not_break_ledger(self, engine, clock, event_log):
        def broken(event):
            raise RuntimeError("subscriber down")

        event_log.subscribe(broken)
        engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS)
        clock.advance_epochs(1)
        assert engine.withdraw(ALICE) == 100


class TestEngineConstruction:
    def test_store_and_config_must_agree(self, custody):
        store = ScheduleStore(epoch_length=3600, min_duration=7200)
        with pytest.raises(ConfigurationError):
            VestingEngine(custody, store=store, config=LedgerConfig())

    def test_custom_epoch_length(self, custody, clock, token):
        config = LedgerConfig(epoch_length=3600, min_duration=7200)
        engine = VestingEngine(custody, config=config, time_provider=clock.now)
        engine.deposit(PAYER, ALICE, 240, 24 * 3600)
        clock.advance(3 * 3600)
        assert engine.withdraw(ALICE) == 30

    def test_time_provider_must_return_integers(self, custody):
        engine = VestingEngine(custody, time_provider=lambda: "soon")
        with pytest.raises(ValueError):
            engine.unlocked_amount(ALICE)

    def test_negative_timestamps_rejected(self, custody, token):
        engine = VestingEngine(custody)
        with pytest.raises(ValueError):
            engine.deposit(PAYER, ALICE, 1000, TEN_EPOCHS, current_time=-1)
        assert engine.store.get(ALICE) is None
        assert token.balance_of(PAYER) == PAYER_FUNDS

        from_clock = VestingEngine(custody, time_provider=lambda: -5)
        with pytest.raises(ValueError):
            from_clock.withdrawable_amount(ALICE)
