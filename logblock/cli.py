#!/usr/bin/env python3
"""logblock daemon entry point.

Wires together:
- journal source following the configured sshd units
- nftables firewall adapter (or the dry-run adapter)
- the Watcher event loop

Usage:
  sudo logblock
  sudo logblock --attempts-per-level 5 --unblock-delay 10m
  DRY_RUN=true logblock --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from pydantic import ValidationError

from logblock import __version__
from logblock.actions import ActionLog
from logblock.config import Settings
from logblock.errors import LogblockError
from logblock.firewall import DryRunFirewall, Firewall, NftFirewall
from logblock.journal import JournalSource
from logblock.watcher import Watcher

logger = logging.getLogger("logblock")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s – %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="logblock",
        description="Block hosts that keep failing SSH authentication, with escalating hold times",
    )
    parser.add_argument("--attempts-per-level", type=int, default=None,
                        help="failed attempts per escalation level (default: 4)")
    parser.add_argument("--attempt-window", default=None,
                        help="forget attempts older than this, e.g. 1h (default: 1h)")
    parser.add_argument("--unblock-delay", dest="base_unblock_delay", default=None,
                        help="hold time at level 1, doubled at each further level (default: 5m)")
    parser.add_argument("--sweep-interval", default=None,
                        help="how often to look for addresses to unblock (default: 30s)")
    parser.add_argument("--reap-after", default=None,
                        help="drop idle addresses after this long, or 'off' (default: 24h)")
    parser.add_argument("--unit", dest="units", action="append", default=None,
                        help="systemd unit to follow; repeatable (default: ssh.service, sshd.service)")
    parser.add_argument("--table", default=None, help="nftables inet table name (default: logblock)")
    parser.add_argument("--action-log", default=None, help="append firewall actions to this JSON Lines file")
    parser.add_argument("--dry-run", action="store_true", default=None,
                        help="log firewall actions instead of applying them")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR (default: INFO)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def build_firewall(settings: Settings) -> Firewall:
    if settings.dry_run:
        return DryRunFirewall()
    return NftFirewall(table=settings.table)


async def serve(settings: Settings) -> int:
    firewall = build_firewall(settings)
    source = JournalSource.for_units(settings.units)
    action_log = ActionLog(settings.action_log, dry_run=settings.dry_run) if settings.action_log else None

    await firewall.init_tables()
    watcher = Watcher(settings, source, firewall, action_log=action_log)

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    watch_task = asyncio.create_task(watcher.run(), name="watcher")
    stop_task = asyncio.create_task(stop.wait(), name="stop")
    try:
        await asyncio.wait({watch_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if watch_task.done():
            # run() only returns by raising
            watch_task.result()
        logger.info("Shutting down")
        return 0
    finally:
        stop_task.cancel()
        if not watch_task.done():
            watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watch_task
        await source.close()
        try:
            await firewall.remove_tables()
        except LogblockError as exc:
            logger.warning("Could not remove firewall tables: %s", exc)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    overrides = vars(args)
    try:
        settings = Settings.from_env(**overrides)
    except ValidationError as exc:
        print(f"logblock: invalid configuration\n{exc}", file=sys.stderr)
        return 2

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    if settings.dry_run:
        logger.info("DRY-RUN: firewall actions are logged, not applied")

    try:
        return asyncio.run(serve(settings))
    except LogblockError as exc:
        logger.error("Fatal: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
