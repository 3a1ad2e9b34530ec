#!/usr/bin/env python3
"""
Treasury CLI

Command-line interface for the tokenization treasury ledger.

Every command loads config.toml (see ``treasury.config``), runs one service
call and prints the JSON response on stdout.  Logs go to stderr.

Usage:
    treasury operations [--transfer-id ID] [--type TYPE] [--status STATUS]
                        [--user ADDRESS] [--from DATE] [--to DATE]
                        [--page N] [--page-size N]
    treasury exchange-in <user_address> <tokens>
    treasury exchange-out <sender_address> <marketplace_address> [--tokens N]
    treasury fee-payment <sender_address> <marketplace_address> <fee_amount>
    treasury payment <sender_address> <recipient_address> <amount>
    treasury set-paid <sender_address> <transfer_id> <transfer_code>
    treasury confirm <transfer_id>
    treasury clearing
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import click

from .. import __version__
from ..chain.builder import TransactionBuilder
from ..chain.context import ChainContextProvider, JsonRpcChainContextProvider, StaticChainContextProvider
from ..config import TreasuryConfig, load_config
from ..exceptions import TreasuryException
from ..ledger.sqlite_store import SQLiteOperationStore
from ..ledger.store import InMemoryOperationStore, OperationStore
from ..logger import LogManager
from ..service import TreasuryService


async def build_service(config: TreasuryConfig) -> TreasuryService:
    """Wire store, chain context provider and builder from ``config``."""
    config.validate()

    if config.ledger.backend == "sqlite":
        store: OperationStore = await SQLiteOperationStore.create(
            config.ledger.sqlite.path, wal_mode=config.ledger.sqlite.wal_mode
        )
    else:
        store = InMemoryOperationStore()

    if config.chain.rpc_url:
        chain: ChainContextProvider = JsonRpcChainContextProvider(
            config.chain.rpc_url, timeout=config.chain.rpc_timeout
        )
    else:
        chain = StaticChainContextProvider(
            chain_id=config.chain.chain_id,
            gas_price=config.chain.gas_price,
            track_nonces=True,
        )

    return TreasuryService(
        store,
        TransactionBuilder(config.chain.contract_address, token_decimals=config.chain.token_decimals),
        chain,
        settlement_unit=config.clearing.settlement_unit,
        max_id_retries=config.ledger.max_id_retries,
    )


def run_command(ctx: click.Context, call: Callable[[TreasuryService], Awaitable[Any]]) -> None:
    """Run one service call and print its response as JSON."""
    config: TreasuryConfig = ctx.obj["config"]

    async def runner() -> Any:
        service = await build_service(config)
        try:
            return await call(service)
        finally:
            await service.close()

    try:
        response = asyncio.run(runner())
    except TreasuryException as e:
        raise click.ClickException(e.message)

    click.echo(json.dumps(response, indent=2 if ctx.obj["pretty"] else None))


@click.group()
@click.version_option(version=__version__, prog_name="treasury")
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    help="Path to config.toml (default: $TREASURY_CONFIG or ./config.toml)"
)
@click.option("--pretty", is_flag=True, help="Indent JSON output")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], pretty: bool):
    """Tokenization Treasury Command Line Interface

    Record marketplace operations, build their unsigned treasury contract
    transactions and net inter-marketplace debts.
    """
    try:
        config = load_config(config_path)
        config.validate()
    except TreasuryException as e:
        raise click.ClickException(e.message)

    LogManager().configure(
        log_level=config.logging.level,
        file_output=config.logging.file_output,
        force=True,
    )
    ctx.obj = {"config": config, "pretty": pretty}


@cli.command("operations")
@click.option("--transfer-id", help="Only the operation with this transfer id")
@click.option("--type", "op_type", help="Operation type, e.g. exchange_in")
@click.option("--status", help="Operation status: open, in_progress or closed")
@click.option("--user", help="Operations initiated by this address")
@click.option("--from", "fromdate", help="Inclusive start date (ISO 8601)")
@click.option("--to", "todate", help="Exclusive end date (ISO 8601)")
@click.option("--page", help="Page number, starting at 1")
@click.option("--page-size", help="Records per page")
@click.pass_context
def operations_cmd(ctx, transfer_id, op_type, status, user, fromdate, todate, page, page_size):
    """List operations.

    Only the highest-priority filter is applied:
    transfer id, then type, status, user and finally the date range.

    Examples:

        treasury operations --status open --page 2 --page-size 10
    """
    run_command(ctx, lambda service: service.list_operations(
        transfer_id=transfer_id, type=op_type, status=status, user=user,
        fromdate=fromdate, todate=todate, page=page, page_size=page_size,
    ))


@cli.command("exchange-in")
@click.argument("user_address")
@click.argument("tokens")
@click.pass_context
def exchange_in_cmd(ctx, user_address: str, tokens: str):
    """Record a token purchase for USER_ADDRESS."""
    run_command(ctx, lambda service: service.exchange_in(user_address, tokens))


@cli.command("exchange-out")
@click.argument("sender_address")
@click.argument("marketplace_address")
@click.option("--tokens", help="Amount redeemed, when known")
@click.pass_context
def exchange_out_cmd(ctx, sender_address: str, marketplace_address: str, tokens: Optional[str]):
    """Record a token redemption at MARKETPLACE_ADDRESS."""
    run_command(ctx, lambda service: service.exchange_out(sender_address, marketplace_address, tokens))


@cli.command("fee-payment")
@click.argument("sender_address")
@click.argument("marketplace_address")
@click.argument("fee_amount")
@click.pass_context
def fee_payment_cmd(ctx, sender_address: str, marketplace_address: str, fee_amount: str):
    """Record a fee owed by SENDER_ADDRESS to MARKETPLACE_ADDRESS."""
    run_command(ctx, lambda service: service.fee_payment(sender_address, marketplace_address, fee_amount))


@cli.command("payment")
@click.argument("sender_address")
@click.argument("recipient_address")
@click.argument("amount")
@click.pass_context
def payment_cmd(ctx, sender_address: str, recipient_address: str, amount: str):
    """Request a fiat payout to RECIPIENT_ADDRESS."""
    run_command(ctx, lambda service: service.payment(sender_address, recipient_address, amount))


@cli.command("set-paid")
@click.argument("sender_address")
@click.argument("transfer_id")
@click.argument("transfer_code")
@click.pass_context
def set_paid_cmd(ctx, sender_address: str, transfer_id: str, transfer_code: str):
    """Close TRANSFER_ID with the bank reference TRANSFER_CODE."""
    run_command(ctx, lambda service: service.set_paid(sender_address, transfer_id, transfer_code))


@cli.command("confirm")
@click.argument("transfer_id")
@click.pass_context
def confirm_cmd(ctx, transfer_id: str):
    """Mark TRANSFER_ID as confirmed on chain."""
    run_command(ctx, lambda service: service.confirm(transfer_id))


@cli.command("clearing")
@click.pass_context
def clearing_cmd(ctx):
    """Net open inter-marketplace debts into settlement transfers.

    Prints one {transferId, transactionObject} entry per transfer; an empty
    list when there is nothing to settle.
    """
    run_command(ctx, lambda service: service.clearing())


if __name__ == "__main__":
    cli()
