#!/usr/bin/env python3
"""
Bump Bot CLI
============

Usage:
    bump-bot setup --backend dry_run
    bump-bot init-db
    bump-bot deposit 0xOwner --amount 0.05 --reference dep-1
    bump-bot fund 0xOwner --amounts 0.01 0.01 0.01 0.01 0.01 --reference f-1
    bump-bot start 0xOwner --token 0xToken --amount-usd 0.5 --interval 30
    bump-bot worker
    bump-bot status 0xOwner
    bump-bot stop 0xOwner
"""

import argparse
import asyncio
import getpass
import os
import signal
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import yaml
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from bump_bot import __version__
from bump_bot.app import BumpApp, create_app
from bump_bot.config import DEFAULT_CONFIG, SECRET_FIELDS, Config, ConfigManager
from bump_bot.logging_utils import step_table
from bump_bot.models import ActivityStatus
from bump_bot.scheduler import run_session_loop
from bump_bot.storage import create_db_engine, init_db
from bump_bot.utils import (
    CREDIT_DECIMALS,
    BumpBotError,
    format_address,
    format_duration,
    format_tx_hash,
    format_units,
    setup_logging,
)

console = Console()

PASSWORD_ENV = "BUMP_BOT_PASSWORD"

STATUS_STYLES = {
    ActivityStatus.SUCCESS: "green",
    ActivityStatus.FAILED: "red",
    ActivityStatus.SKIPPED: "yellow",
    ActivityStatus.PENDING: "cyan",
    ActivityStatus.INFO: "dim",
}


def print_banner():
    console.print(Panel(
        f"Bump Bot v{__version__}\nRound-robin multi-wallet volume on Base",
        style="bold cyan",
        box=box.DOUBLE,
    ))


def get_password(prompt: str = "Enter config password: ", confirm: bool = False) -> str:
    """Password from the environment, else prompt."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password

    console.print(f"[yellow]{prompt}[/yellow]")
    password = getpass.getpass("> ")
    if len(password) < 8:
        console.print("[red]Password must be at least 8 characters[/red]")
        sys.exit(1)
    if confirm:
        console.print("[yellow]Confirm password:[/yellow]")
        if getpass.getpass("> ") != password:
            console.print("[red]Passwords don't match![/red]")
            sys.exit(1)
    return password


def parse_weth(value: str) -> int:
    """WETH amount as a decimal string to credit units."""
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid WETH amount: {value}")
    if not amount.is_finite() or amount < 0:
        raise argparse.ArgumentTypeError(f"Invalid WETH amount: {value}")
    return int(amount * (Decimal(10) ** CREDIT_DECIMALS))


def load_config(args) -> Config:
    manager = ConfigManager(Path(args.config))
    if manager.config_path.exists():
        raw = manager.read_raw_config()
        needs_password = bool(raw.get("salt")) and any(raw.get(name) for name in SECRET_FIELDS)
        config = manager.load_config(get_password() if needs_password else None)
    else:
        console.print(f"[yellow]No config at {args.config}, using dry-run defaults[/yellow]")
        config = Config()

    if args.database_url:
        config.database_url = args.database_url
    if args.dry_run:
        config.dry_run = True
        config.custody_backend = "dry_run"
    if args.log_level:
        config.log_level = args.log_level
    return config


async def build_app(config: Config) -> BumpApp:
    password = get_password("Enter keystore password: ") if config.custody_backend == "local" and not config.dry_run else None
    return await create_app(config, password=password)


# Commands

def setup_command(args):
    """Write a new config file, encrypting any API keys."""
    print_banner()
    manager = ConfigManager(Path(args.config))
    if manager.config_path.exists() and not args.force:
        console.print(f"[red]{args.config} already exists (use --force to overwrite)[/red]")
        return 1

    data = yaml.safe_load(DEFAULT_CONFIG)
    data["custody_backend"] = args.backend
    data["dry_run"] = args.backend == "dry_run"
    if args.rpc:
        data["rpc_url"] = args.rpc
    if args.database_url:
        data["database_url"] = args.database_url

    secrets = {}
    if args.zerox_key:
        secrets["zerox_api_key"] = args.zerox_key
    if args.coingecko_key:
        secrets["coingecko_api_key"] = args.coingecko_key

    password = get_password("Create config password: ", confirm=True) if secrets else ""
    manager.create_config(data, password, secrets)
    console.print(f"[green]Configuration written to {args.config}[/green]")
    return 0


async def init_db_command(args, config: Config):
    engine = create_db_engine(config.database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    console.print(f"[green]Database ready: {config.database_url}[/green]")
    return 0


async def wallets_command(args, app: BumpApp):
    wallets = await app.service.ensure_wallets(args.owner)
    balances = await app.service.balances(args.owner)

    table = Table(title=f"Worker Wallets for {format_address(args.owner)}", box=box.ROUNDED)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Address", style="green")
    table.add_column("Credit", justify="right")
    for wallet in wallets:
        table.add_row(str(wallet.wallet_index), wallet.address, format_units(balances.get(wallet.scope, 0)))
    console.print(table)
    return 0


async def deposit_command(args, app: BumpApp):
    if args.tx:
        expected = parse_weth(args.expected) * 10 ** (app.config.funding_token_decimals - CREDIT_DECIMALS) if args.expected else None
        entry = await app.service.deposit_from_transaction(args.owner, args.tx, expected)
    else:
        if args.amount is None or not args.reference:
            console.print("[red]--amount and --reference are required without --tx[/red]")
            return 1
        entry = await app.service.deposit(args.owner, args.amount, args.reference)
    console.print(f"[green]Main credit: {format_units(entry.balance)}[/green]")
    return 0


async def fund_command(args, app: BumpApp):
    entries = await app.service.fund(args.owner, args.amounts, args.reference)

    table = Table(title="Credit After Distribution", box=box.ROUNDED)
    table.add_column("Scope", style="cyan")
    table.add_column("Balance", justify="right")
    for entry in entries:
        table.add_row(entry.scope, format_units(entry.balance))
    console.print(table)
    return 0


async def withdraw_command(args, app: BumpApp):
    result = await app.service.withdraw(args.owner, args.wallet, args.amount, args.reference, args.to)
    console.print(f"[green]Withdrawn. Wallet {args.wallet} credit: {format_units(result.remaining)}[/green]")
    return 0


async def start_command(args, app: BumpApp):
    session = await app.service.start_session(args.owner, args.token, args.amount_usd, args.interval)
    console.print(Panel(
        f"Session [bold]{session.session_id}[/bold]\n"
        f"Target: {session.target_asset}\n"
        f"Per trade: ${session.notional_usd} every {format_duration(session.interval_seconds)}\n"
        f"Run [cyan]bump-bot worker[/cyan] to drive it",
        title="Session started",
        style="green",
        box=box.ROUNDED,
    ))
    return 0


async def stop_command(args, app: BumpApp):
    session = await app.service.stop_session(args.owner)
    console.print(f"[yellow]Session {session.session_id} stopped[/yellow]")
    return 0


async def status_command(args, app: BumpApp):
    session = await app.service.get_session(args.owner)
    balances = await app.service.balances(args.owner)
    total = await app.service.total_credit(args.owner)

    if session is None:
        console.print("[dim]No sessions yet[/dim]")
    else:
        status_style = "green" if session.is_running else "red"
        lines = [
            f"Status: [{status_style}]{session.status.value}[/{status_style}]"
            + (f" ({session.stop_reason.value})" if session.stop_reason else ""),
            f"Target: {session.target_asset}",
            f"Per trade: ${session.notional_usd} every {format_duration(session.interval_seconds)}",
            f"Next wallet: #{session.rotation_index}",
            f"Consecutive failures: {session.consecutive_failures}  skips: {session.consecutive_skips}",
        ]
        console.print(Panel("\n".join(lines), title=f"Session {session.session_id}", box=box.ROUNDED))

    table = Table(title=f"Credit (total {format_units(total)})", box=box.ROUNDED)
    table.add_column("Scope", style="cyan")
    table.add_column("Balance", justify="right")
    for scope, balance in balances.items():
        table.add_row(scope, format_units(balance))
    console.print(table)
    return 0


async def logs_command(args, app: BumpApp):
    records = await app.service.recent_activity(args.owner, args.limit)

    table = Table(title="Activity", box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("Tx", style="dim")
    for record in records:
        style = STATUS_STYLES.get(record.status, "white")
        message = record.message if record.verified else f"{record.message} [red](unverified)[/red]"
        table.add_row(
            record.created_at.strftime("%Y-%m-%d %H:%M:%S") if record.created_at else "",
            f"[{style}]{record.status.value}[/{style}]",
            message,
            format_tx_hash(record.tx_ref) if record.tx_ref else "",
        )
    console.print(table)
    return 0


async def worker_command(args, app: BumpApp):
    """Run the scheduler until SIGINT/SIGTERM."""
    print_banner()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.scheduler.request_shutdown)
        except NotImplementedError:
            pass

    mode = "[yellow]DRY RUN[/yellow]" if app.config.dry_run else "[red]LIVE[/red]"
    console.print(f"Worker {app.scheduler.holder_id} starting ({mode}). Ctrl+C to stop.")
    await app.scheduler.run()
    step_table(app.metrics, console)
    return 0


async def loop_command(args, app: BumpApp):
    """Drive the owner's running session in this process."""
    session = await app.store.get_running(args.owner)
    if session is None:
        console.print(f"[red]No running session for {args.owner}[/red]")
        return 1
    final = await run_session_loop(
        session.session_id,
        app.store,
        app.executor,
        app.activity,
        app.config.max_consecutive_failures,
        max_iterations=args.iterations,
        lease_seconds=app.config.lease_seconds,
    )
    if final is not None:
        console.print(f"Session {final.session_id}: {final.status.value}")
    step_table(app.metrics, console)
    return 0


APP_COMMANDS = {
    "wallets": wallets_command,
    "deposit": deposit_command,
    "fund": fund_command,
    "withdraw": withdraw_command,
    "start": start_command,
    "stop": stop_command,
    "status": status_command,
    "logs": logs_command,
    "worker": worker_command,
    "loop": loop_command,
}


async def dispatch(args) -> int:
    config = load_config(args)
    setup_logging(config.log_level, config.log_file, config.json_log_file)

    if args.command == "init-db":
        return await init_db_command(args, config)

    app = await build_app(config)
    try:
        return await APP_COMMANDS[args.command](args, app)
    finally:
        await app.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bump Bot - round-robin multi-wallet volume on Base",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--config', default='./bump_config.yaml', help='Path to config file')
    parser.add_argument('--database-url', help='Override database URL')
    parser.add_argument('--dry-run', action='store_true', help='Simulate trades with dry-run custody')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Override log level')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    setup_parser = subparsers.add_parser('setup', help='Create a config file')
    setup_parser.add_argument('--backend', choices=['dry_run', 'local'], default='dry_run', help='Custody backend')
    setup_parser.add_argument('--rpc', help='Base RPC URL')
    setup_parser.add_argument('--zerox-key', help='0x API key (stored encrypted)')
    setup_parser.add_argument('--coingecko-key', help='CoinGecko API key (stored encrypted)')
    setup_parser.add_argument('--force', action='store_true', help='Overwrite an existing config')

    subparsers.add_parser('init-db', help='Create database tables')

    wallets_parser = subparsers.add_parser('wallets', help='Get or create worker wallets')
    wallets_parser.add_argument('owner', help='Owner address')

    deposit_parser = subparsers.add_parser('deposit', help='Credit the main balance')
    deposit_parser.add_argument('owner', help='Owner address')
    deposit_parser.add_argument('--amount', type=parse_weth, help='WETH amount')
    deposit_parser.add_argument('--reference', help='Unique deposit reference')
    deposit_parser.add_argument('--tx', help='Deposit transaction hash to verify on chain')
    deposit_parser.add_argument('--expected', help='Expected WETH amount (unverified fallback)')

    fund_parser = subparsers.add_parser('fund', help='Distribute main credit to worker wallets')
    fund_parser.add_argument('owner', help='Owner address')
    fund_parser.add_argument('--amounts', type=parse_weth, nargs='+', required=True, help='WETH per wallet')
    fund_parser.add_argument('--reference', required=True, help='Unique funding reference')

    withdraw_parser = subparsers.add_parser('withdraw', help='Withdraw WETH from a worker wallet')
    withdraw_parser.add_argument('owner', help='Owner address')
    withdraw_parser.add_argument('--wallet', type=int, required=True, help='Worker wallet index')
    withdraw_parser.add_argument('--amount', type=parse_weth, required=True, help='WETH amount')
    withdraw_parser.add_argument('--reference', required=True, help='Unique withdrawal reference')
    withdraw_parser.add_argument('--to', help='Recipient (defaults to the owner)')

    start_parser = subparsers.add_parser('start', help='Start a bump session')
    start_parser.add_argument('owner', help='Owner address')
    start_parser.add_argument('--token', required=True, help='Target token address')
    start_parser.add_argument('--amount-usd', required=True, help='USD per trade')
    start_parser.add_argument('--interval', type=int, required=True, help='Seconds between trades')

    stop_parser = subparsers.add_parser('stop', help='Stop the running session')
    stop_parser.add_argument('owner', help='Owner address')

    status_parser = subparsers.add_parser('status', help='Show session and credit')
    status_parser.add_argument('owner', help='Owner address')

    logs_parser = subparsers.add_parser('logs', help='Show recent activity')
    logs_parser.add_argument('owner', help='Owner address')
    logs_parser.add_argument('--limit', type=int, default=50, help='Number of entries')

    subparsers.add_parser('worker', help='Run the background scheduler')

    loop_parser = subparsers.add_parser('loop', help="Drive one owner's session in the foreground")
    loop_parser.add_argument('owner', help='Owner address')
    loop_parser.add_argument('--iterations', type=int, help='Stop after N trades')

    return parser


def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1
    if args.command == 'setup':
        return setup_command(args)

    try:
        return asyncio.run(dispatch(args))
    except BumpBotError as e:
        console.print(f"[red]{e}[/red]")
        return 1
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        return 1


if __name__ == '__main__':
    sys.exit(main())
