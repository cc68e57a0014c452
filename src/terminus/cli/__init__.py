"""Command line interface for Terminus."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from collections.abc import Sequence

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from terminus.core.config import TerminusConfig, parse_bytes
from terminus.core.exceptions import ConfigurationError, TerminusError
from terminus.core.logging_config import configure_logging, get_logger
from terminus.core.retry_config import RetryConfig
from terminus.keys import KeyMapping
from terminus.ledger import SqliteQuotaLedger
from terminus.poller import Poller, PollerSettings
from terminus.queue import create_sqs_client, resolve_queue_url
from terminus.server import start_server

TERMINUS_THEME = Theme(
    {
        "info": "bold cyan",
        "success": "bold green",
        "warning": "bold yellow",
        "error": "bold red",
        "highlight": "bold magenta",
        "dim": "grey50",
    }
)

console = Console(theme=TERMINUS_THEME)

logger = get_logger(__name__)


async def _open_ledger(config: TerminusConfig) -> SqliteQuotaLedger:
    return await SqliteQuotaLedger.open(
        config.database_path,
        config.default_quota_bytes,
        busy_timeout_seconds=config.database_busy_timeout_seconds,
    )


async def run_cmd(config: TerminusConfig) -> None:
    """Serve HTTP and poll the queue until SIGINT or SIGTERM."""
    key_mapping = KeyMapping.compile(config.key_pattern, config.key_replacement)
    host, port = config.listen_host_port

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop.set)

    async with await _open_ledger(config) as ledger:
        logger.info(
            "ledger_opened",
            database_path=config.database_path,
            default_quota_bytes=ledger.default_quota_bytes,
        )
        runner = await start_server(ledger, host, port)
        try:
            async with create_sqs_client(config) as client:
                queue_url = await resolve_queue_url(
                    client, config.queue, RetryConfig.from_config(config)
                )
                poller = Poller(
                    client,
                    queue_url,
                    key_mapping,
                    ledger,
                    settings=PollerSettings.from_config(config),
                )
                await poller.run(stop)
        finally:
            await runner.cleanup()


async def init_db_cmd(config: TerminusConfig) -> None:
    async with await _open_ledger(config):
        pass
    console.print(f"[success]Ledger ready:[/] {config.database_path}")


async def exceeded_cmd(config: TerminusConfig) -> None:
    async with await _open_ledger(config) as ledger:
        exceeded = await ledger.get_exceeded()

    if not exceeded:
        console.print("[success]No keys over quota.[/]")
        return

    table = Table(
        box=None,
        show_header=True,
        header_style="highlight",
        title="Keys over quota",
        title_justify="left",
        title_style="dim",
        pad_edge=False,
    )
    table.add_column("Key", ratio=3)
    table.add_column("Usage (bytes)", justify="right", ratio=1)
    table.add_column("Quota (bytes)", justify="right", ratio=1)
    for record in exceeded:
        table.add_row(record.key, str(record.info.usage_bytes), str(record.info.quota_bytes))
    console.print(table)


async def get_cmd(config: TerminusConfig, key: str) -> None:
    async with await _open_ledger(config) as ledger:
        record = await ledger.get(key)
    if record is None:
        console.print(f"[warning]Key not found:[/] {key}")
        return
    quota = record.effective_quota(config.default_quota_bytes)
    style = "error" if record.is_exceeded(config.default_quota_bytes) else "success"
    source = "override" if record.quota_bytes is not None else "default"
    console.print(f"[{style}]{key}[/] usage={record.usage_bytes} quota={quota} ({source})")


async def set_cmd(config: TerminusConfig, key: str, size: str) -> None:
    async with await _open_ledger(config) as ledger:
        update = await ledger.set(key, parse_bytes(size))
    _print_update(update.key, update.usage_bytes, update.quota_bytes, update.exceeded)


async def set_quota_cmd(config: TerminusConfig, key: str, quota: str) -> None:
    quota_bytes = None if quota.lower() == "none" else parse_bytes(quota)
    async with await _open_ledger(config) as ledger:
        update = await ledger.set_quota(key, quota_bytes)
    _print_update(update.key, update.usage_bytes, update.quota_bytes, update.exceeded)


def _print_update(key: str, usage_bytes: int, quota_bytes: int, exceeded: bool) -> None:
    if exceeded:
        console.print(f"[error]Quota exceeded:[/] {key} usage={usage_bytes} quota={quota_bytes}")
    else:
        console.print(f"[success]{key}[/] usage={usage_bytes} quota={quota_bytes}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="terminus",
        description="Terminus: track bytes used per key from S3 events, and report keys over quota",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings come from TERMINUS_* environment variables or a .env file.

Examples:
  TERMINUS_QUEUE=terminus-queue TERMINUS_DEFAULT_QUOTA=1G terminus run
  terminus exceeded
  terminus set-quota alice 10GiB
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("run", help="Serve HTTP and apply queue events to the ledger")
    subparsers.add_parser("init-db", help="Create the ledger database and table")
    subparsers.add_parser("exceeded", help="List keys over quota")

    get_parser = subparsers.add_parser("get", help="Show usage and quota for a key")
    get_parser.add_argument("key")

    set_parser = subparsers.add_parser("set", help="Overwrite usage for a key")
    set_parser.add_argument("key")
    set_parser.add_argument("size", help='Usage, e.g. "1500" or "2MB"')

    quota_parser = subparsers.add_parser("set-quota", help="Set or clear a per-key quota")
    quota_parser.add_argument("key")
    quota_parser.add_argument("quota", help='Quota, e.g. "10GiB", or "none" to use the default')

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    try:
        config = TerminusConfig()
    except ValidationError as e:
        console.print(f"[error]Invalid configuration:[/] {escape(str(e))}")
        sys.exit(1)

    configure_logging(config.log_level, config.log_format, config.log_timestamps)

    try:
        if args.command == "run":
            asyncio.run(run_cmd(config))
        elif args.command == "init-db":
            asyncio.run(init_db_cmd(config))
        elif args.command == "exceeded":
            asyncio.run(exceeded_cmd(config))
        elif args.command == "get":
            asyncio.run(get_cmd(config, args.key))
        elif args.command == "set":
            asyncio.run(set_cmd(config, args.key, args.size))
        elif args.command == "set-quota":
            asyncio.run(set_quota_cmd(config, args.key, args.quota))
    except ConfigurationError as e:
        console.print(f"[error]Invalid configuration:[/] {escape(str(e))}")
        sys.exit(1)
    except TerminusError as e:
        console.print(f"[error]{args.command} failed:[/] {escape(str(e))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[warning]Operation cancelled by user.[/]")
        sys.exit(0)


if __name__ == "__main__":
    main()
