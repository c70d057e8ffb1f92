#!/usr/bin/env python3
"""
Vesting Ledger CLI

Local ledger operations against a state directory:
- Funding payers with the local token
- Depositing vesting schedules and withdrawing vested amounts
- Inspecting schedules and quoting rates before depositing

State lives in ``schedules.json`` (schedule store) and ``token.json``
(local token balances) under ``--state-dir``.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from vesting_ledger.contracts.erc20 import ERC20Custody, ERC20Token, TokenError
from vesting_ledger.core.config import LedgerConfig
from vesting_ledger.core.constants import LOG_ADDRESS_PREFIX
from vesting_ledger.core.logging_config import configure_ledger_logging
from vesting_ledger.core.vesting_engine import VestingEngine
from vesting_ledger.core.vesting_exceptions import (
    ConfigurationError,
    NothingToWithdrawError,
    VestingError,
)
from vesting_ledger.core.vesting_schedule import VestingSchedule

logger = logging.getLogger(__name__)
console = Console()
err_console = Console(stderr=True)

DEFAULT_CUSTODY_ADDRESS = "0x000000000000000000000000000000000000c0de"
SCHEDULES_FILE = "schedules.json"
TOKEN_FILE = "token.json"

EXIT_LEDGER_ERROR = 1
EXIT_NOTHING_TO_WITHDRAW = 3


def _handle_cli_error(exc: Exception, exit_code: int = EXIT_LEDGER_ERROR) -> None:
    """Centralized CLI error handler for consistent messaging/exit codes."""
    logger.error("CLI error: %s", exc, exc_info=True)
    err_console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(exit_code)


def _format_time(timestamp: int | None) -> str:
    if not timestamp:
        return "N/A"
    return datetime.fromtimestamp(timestamp, timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class LocalLedger:
    """Engine plus the local token, loaded from and saved to a state directory."""

    def __init__(
        self,
        state_dir: Path,
        custody_address: str = DEFAULT_CUSTODY_ADDRESS,
        config: LedgerConfig | None = None,
    ):
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.token_path = state_dir / TOKEN_FILE

        config = replace(
            config or LedgerConfig.from_env(),
            storage_path=str(state_dir / SCHEDULES_FILE),
        )
        self.config = config

        self.token = self._load_token(custody_address)
        self.custody = ERC20Custody(self.token, custody_address)
        self.engine = VestingEngine(self.custody, config=config)

    def _load_token(self, custody_address: str) -> ERC20Token:
        if self.token_path.exists():
            with open(self.token_path, "r", encoding="utf-8") as handle:
                return ERC20Token.from_dict(json.load(handle))
        return ERC20Token(
            name="Vesting Token",
            symbol="VEST",
            owner=custody_address,
        )

    def save_token(self) -> None:
        tmp_path = self.token_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(self.token.to_dict(), handle, indent=2)
        tmp_path.replace(self.token_path)

    def commit(self, beneficiary: str, previous: VestingSchedule | None) -> None:
        """
        Save token balances after a deposit or withdrawal.

        The schedule store has already written its file, so a failed token
        save puts ``previous`` back to keep both files in step.
        """
        try:
            self.save_token()
        except OSError:
            logger.error(
                "Token state not saved, rolling back schedule for %s",
                beneficiary.lower()[:LOG_ADDRESS_PREFIX],
                extra={"event": "cli.commit_failed"},
            )
            self.engine.store.restore(beneficiary, previous)
            raise


def _ledger(ctx: click.Context) -> LocalLedger:
    if "ledger" not in ctx.obj:
        ctx.obj["ledger"] = LocalLedger(ctx.obj["state_dir"], ctx.obj["custody"], ctx.obj.get("config"))
    return ctx.obj["ledger"]


def _emit(ctx: click.Context, payload: dict[str, Any], title: str) -> None:
    if ctx.obj.get("json_output"):
        click.echo(json.dumps(payload, indent=2))
        return
    table = Table(show_header=False, box=box.ROUNDED)
    for key, value in payload.items():
        table.add_row(f"[bold cyan]{key.replace('_', ' ').title()}", str(value))
    console.print(Panel(table, title=f"[bold green]{title}", border_style="green"))


@click.group()
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("vesting_state"),
    envvar="VESTING_STATE_DIR",
    show_default=True,
    help="Directory holding schedules.json and token.json",
)
@click.option("--custody", default=DEFAULT_CUSTODY_ADDRESS, show_default=True, help="Custody address")
@click.option("--json-output", is_flag=True, help="Output raw JSON")
@click.option("--verbose", is_flag=True, help="Log structured JSON to stderr")
@click.pass_context
def cli(ctx: click.Context, state_dir: Path, custody: str, json_output: bool, verbose: bool):
    """Epoch vesting ledger commands."""
    ctx.ensure_object(dict)
    ctx.obj["state_dir"] = state_dir
    ctx.obj["custody"] = custody
    ctx.obj["json_output"] = json_output
    try:
        config = LedgerConfig.from_env()
    except ConfigurationError as exc:
        _handle_cli_error(exc)
    ctx.obj["config"] = config
    configure_ledger_logging(config, verbose=verbose)


@cli.command("mint")
@click.argument("address")
@click.argument("amount", type=int)
@click.pass_context
def mint(ctx: click.Context, address: str, amount: int):
    """
    Credit AMOUNT local tokens to ADDRESS so it can fund deposits.

    Example:
        vesting mint 0xpayer 1000000
    """
    try:
        ledger = _ledger(ctx)
        ledger.token.mint(ledger.custody.custody_address, address, amount)
        ledger.save_token()
        _emit(
            ctx,
            {"address": address.lower(), "minted": amount, "balance": ledger.token.balance_of(address)},
            "Minted",
        )
    except (TokenError, VestingError, OSError, ValueError) as exc:
        _handle_cli_error(exc)


@cli.command("quote")
@click.option("--amount", type=int, required=True, help="Deposit amount in base units")
@click.option("--duration", type=int, required=True, help="Vesting duration in seconds")
@click.pass_context
def quote(ctx: click.Context, amount: int, duration: int):
    """Show the per-epoch rate and dust a deposit would produce."""
    try:
        result = _ledger(ctx).engine.quote(amount, duration)
        _emit(ctx, result.to_dict(), "Deposit Quote")
    except (VestingError, OSError) as exc:
        _handle_cli_error(exc)


@cli.command("deposit")
@click.option("--payer", required=True, help="Address funding the deposit")
@click.option("--beneficiary", required=True, help="Address entitled to withdraw")
@click.option("--amount", type=int, required=True, help="Deposit amount in base units")
@click.option("--duration", type=int, required=True, help="Vesting duration in seconds")
@click.option("--at", "at_time", type=int, default=None, help="Ledger timestamp (defaults to now)")
@click.pass_context
def deposit(
    ctx: click.Context,
    payer: str,
    beneficiary: str,
    amount: int,
    duration: int,
    at_time: int | None,
):
    """
    Deposit AMOUNT for BENEFICIARY, vesting linearly over DURATION seconds.

    Example:
        vesting deposit --payer 0xpayer --beneficiary 0xalice --amount 1000 --duration 864000
    """
    try:
        ledger = _ledger(ctx)
        previous = ledger.engine.store.get(beneficiary)
        schedule = ledger.engine.deposit(payer, beneficiary, amount, duration, current_time=at_time)
        ledger.commit(beneficiary, previous)
        payload = schedule.to_dict()
        payload["epoch_count"] = schedule.epoch_count(ledger.config.epoch_length)
        _emit(ctx, payload, "Deposit Recorded")
    except (VestingError, OSError, ValueError) as exc:
        _handle_cli_error(exc)


@cli.command("withdraw")
@click.argument("beneficiary")
@click.option("--at", "at_time", type=int, default=None, help="Ledger timestamp (defaults to now)")
@click.pass_context
def withdraw(ctx: click.Context, beneficiary: str, at_time: int | None):
    """
    Pay out everything vested for BENEFICIARY and not yet withdrawn.

    Exits with status 3 when nothing new has vested, so scripts can retry
    after the next epoch boundary.
    """
    try:
        ledger = _ledger(ctx)
        previous = ledger.engine.store.get(beneficiary)
        paid = ledger.engine.withdraw(beneficiary, current_time=at_time)
        ledger.commit(beneficiary, previous)
        _emit(
            ctx,
            {
                "beneficiary": beneficiary.lower(),
                "paid": paid,
                "withdrawn_amount": ledger.engine.withdrawn_amount(beneficiary),
                "balance": ledger.token.balance_of(beneficiary),
            },
            "Withdrawal Recorded",
        )
    except NothingToWithdrawError as exc:
        if exc.next_unlock_time:
            err_console.print(f"[yellow]Next unlock at {_format_time(exc.next_unlock_time)}[/]")
        _handle_cli_error(exc, exit_code=EXIT_NOTHING_TO_WITHDRAW)
    except (VestingError, OSError, ValueError) as exc:
        _handle_cli_error(exc)


@cli.command("show")
@click.argument("beneficiary")
@click.option("--at", "at_time", type=int, default=None, help="Ledger timestamp (defaults to now)")
@click.pass_context
def show(ctx: click.Context, beneficiary: str, at_time: int | None):
    """Show the schedule for BENEFICIARY with its unlocked and withdrawable amounts."""
    try:
        engine = _ledger(ctx).engine
        schedule = engine.get_schedule(beneficiary)
        payload = schedule.to_dict()
        payload.update(
            {
                "state": engine.schedule_state(beneficiary).value,
                "unlocked_amount": engine.unlocked_amount(beneficiary, at_time),
                "withdrawable_amount": engine.withdrawable_amount(beneficiary, at_time),
                "next_unlock_time": engine.next_unlock_time(beneficiary, at_time),
            }
        )
        if not ctx.obj.get("json_output"):
            payload["start_time"] = _format_time(payload["start_time"])
            payload["next_unlock_time"] = _format_time(payload["next_unlock_time"])
        _emit(ctx, payload, "Vesting Schedule")
    except (VestingError, OSError, ValueError) as exc:
        _handle_cli_error(exc)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
