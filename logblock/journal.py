"""
Journal source – follows the systemd journal and yields attacker addresses.

journalctl runs as a child process with JSON output, filtered to the
configured units. Each entry's MESSAGE is matched against the rule for its
_SYSTEMD_UNIT; entries that yield no valid IP address are skipped.

If journalctl exits, it is restarted after the last cursor we saw so that no
entry is read twice or lost.
"""
from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from logblock.attackers import IPAddress
from logblock.errors import JournalError

logger = logging.getLogger("logblock.journal")

IP_PATTERN = r"[0-9.:a-fA-F]+"

# sshd failure lines, e.g.
#   Failed password for invalid user admin from 203.0.113.5 port 51022 ssh2
#   Failed password for root from 2001:db8::7 port 40000 ssh2
#   Connection closed by authenticating user root 198.51.100.7 port 4242 [preauth]
SSHD_PATTERN = (
    r"(?:Connection closed by authenticating user|Failed password for(?: invalid user)?) \S+"
    r"(?: from)? (?P<address>" + IP_PATTERN + r") (?:port \d+ )?"
)

LINE_LIMIT = 1024 * 1024
MAX_RESTARTS = 5
RESTART_DELAY = 1.0   # seconds, multiplied by consecutive failures


@dataclass(frozen=True)
class UnitMatcher:
    pattern: re.Pattern[str]
    group: str = "address"

    def extract(self, message: str) -> IPAddress | None:
        match = self.pattern.search(message)
        if match is None:
            return None
        text = match.group(self.group)
        logger.debug("extracted address string: %s", text)
        try:
            return ipaddress.ip_address(text)
        except ValueError:
            return None


SSHD_MATCHER = UnitMatcher(re.compile(SSHD_PATTERN))


def default_matchers(units: Iterable[str]) -> dict[str, UnitMatcher]:
    return {unit: SSHD_MATCHER for unit in units}


def _field_text(value: Any) -> str | None:
    # journald emits non-UTF-8 fields as arrays of byte values
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        try:
            return bytes(value).decode("utf-8", errors="replace")
        except (TypeError, ValueError):
            return None
    return None


def address_from_entry(entry: dict[str, Any], matchers: dict[str, UnitMatcher]) -> IPAddress | None:
    """Apply the unit's matcher to one decoded journal entry."""
    unit = _field_text(entry.get("_SYSTEMD_UNIT"))
    message = _field_text(entry.get("MESSAGE"))
    if unit is None or message is None:
        return None
    matcher = matchers.get(unit)
    if matcher is None:
        return None
    logger.debug("journal entry UNIT=%s MESSAGE=%s", unit, message)
    address = matcher.extract(message)
    if address is None:
        logger.debug("no address found in message: %s", message)
    return address


class JournalSource:
    def __init__(self, matchers: dict[str, UnitMatcher], journalctl: str = "journalctl") -> None:
        if not matchers:
            raise ValueError("at least one unit matcher is required")
        self._matchers = matchers
        self._journalctl = journalctl
        self._proc: asyncio.subprocess.Process | None = None
        self._cursor: str | None = None
        self._failures = 0

    @classmethod
    def for_units(cls, units: Iterable[str], journalctl: str = "journalctl") -> "JournalSource":
        return cls(default_matchers(units), journalctl=journalctl)

    @property
    def cursor(self) -> str | None:
        return self._cursor

    def command(self) -> list[str]:
        command = [self._journalctl, "--follow", "--output=json", "--system"]
        if self._cursor is None:
            command.append("--lines=0")
        else:
            command.append(f"--after-cursor={self._cursor}")
        command.extend(f"_SYSTEMD_UNIT={unit}" for unit in self._matchers)
        return command

    async def _start(self) -> None:
        command = self.command()
        for unit in self._matchers:
            logger.info("Following journal unit %s", unit)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                limit=LINE_LIMIT,
            )
        except OSError as exc:
            raise JournalError(f"could not start {command[0]}: {exc}") from exc

    async def _restart_after_exit(self, deadline: float | None) -> None:
        assert self._proc is not None
        returncode = await self._proc.wait()
        self._proc = None
        self._failures += 1
        if self._failures > MAX_RESTARTS:
            raise JournalError(
                f"journalctl exited {self._failures} times in a row (last exit status {returncode})"
            )
        logger.warning("journalctl exited with status %s, restarting", returncode)
        delay = RESTART_DELAY * self._failures
        if deadline is not None:
            delay = min(delay, max(0.0, deadline - asyncio.get_running_loop().time()))
        await asyncio.sleep(delay)

    def _handle_line(self, line: bytes) -> IPAddress | None:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Bad journal JSON line: %s", line[:120])
            return None
        if not isinstance(entry, dict):
            return None
        cursor = entry.get("__CURSOR")
        if isinstance(cursor, str):
            self._cursor = cursor
        return address_from_entry(entry, self._matchers)

    async def next(self, wait_limit: float | None = None) -> IPAddress | None:
        """Return the next attacker address, or None once wait_limit expires."""
        loop = asyncio.get_running_loop()
        deadline = None if wait_limit is None else loop.time() + wait_limit
        while True:
            if self._proc is None:
                await self._start()
            assert self._proc is not None and self._proc.stdout is not None
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                line = await asyncio.wait_for(self._proc.stdout.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                return None
            except ValueError:
                # readline drops a line longer than LINE_LIMIT
                logger.warning("Skipping journal line longer than %d bytes", LINE_LIMIT)
                continue

            if not line:
                await self._restart_after_exit(deadline)
                continue

            self._failures = 0
            address = self._handle_line(line)
            if address is not None:
                return address

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        await proc.wait()
