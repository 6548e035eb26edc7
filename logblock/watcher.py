"""
Watcher – the logblock event loop.

Each iteration:
  1. wait for the next attacker address, at most until the next sweep is due
  2. record the attempt and block the address when it crosses a threshold
  3. when sweep_interval has elapsed, unblock every address whose hold time
     has run out and that has not been unblocked since its last attempt,
     then reap entries that are fully stale

The registry is the source of truth for who should be blocked. When nftables
rejects a block because its tables are gone or damaged, the tables are rebuilt
and every address still owed a block is replayed before the block is retried.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from logblock.actions import ActionLog
from logblock.attackers import IPAddress, Registry
from logblock.config import Settings
from logblock.errors import FirewallError
from logblock.escalation import EscalationPolicy
from logblock.firewall import Firewall

logger = logging.getLogger("logblock.watcher")


class EventSource(Protocol):
    async def next(self, wait_limit: float | None = None) -> IPAddress | None: ...


class Watcher:
    def __init__(
        self,
        settings: Settings,
        source: EventSource,
        firewall: Firewall,
        *,
        clock: Callable[[], float] = time.monotonic,
        action_log: ActionLog | None = None,
    ) -> None:
        self.settings = settings
        self.policy = EscalationPolicy.from_settings(settings)
        self.registry = Registry(settings.attempt_window)
        self._source = source
        self._firewall = firewall
        self._clock = clock
        self._action_log = action_log
        self._last_sweep = clock()
        # unblocked since their last attempt; skipped by later sweeps
        self._released: set[IPAddress] = set()

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until the source or the firewall fails for good."""
        logger.info(
            "Watching: %d attempts per level, window %.0fs, base hold %.0fs, sweep every %.0fs",
            self.settings.attempts_per_level,
            self.settings.attempt_window,
            self.settings.base_unblock_delay,
            self.settings.sweep_interval,
        )
        while True:
            await self.step()

    async def step(self) -> None:
        address = await self._source.next(self._wait_limit())
        if address is not None:
            await self.observe(address)

        now = self._clock()
        if self.sweep_due(now):
            await self.sweep(now)

    def _wait_limit(self) -> float:
        interval = self.settings.sweep_interval
        remaining = self._last_sweep + interval - self._clock()
        return min(interval, max(0.0, remaining))

    def sweep_due(self, now: float) -> bool:
        elapsed = now - self._last_sweep
        # a clock that moved backward reads as not due
        return elapsed >= self.settings.sweep_interval

    # ------------------------------------------------------------------
    # Attempts and blocking
    # ------------------------------------------------------------------

    async def observe(self, address: IPAddress) -> None:
        now = self._clock()
        attempts = self.registry.record_attempt(address, now)
        self._released.discard(address)
        level = self.policy.escalation_level(attempts)
        logger.debug("Failed attempt from %s (attempts=%d, level=%d)", address, attempts, level)
        if not self.policy.should_block(attempts):
            return

        hold = self.policy.hold_time(level)
        logger.info("Blocking %s: %d attempts, level %d, hold %.0fs", address, attempts, level, hold)
        try:
            await self.block(address)
        except FirewallError as exc:
            self._record("block", address, applied=False, attempts=attempts, level=level, error=str(exc))
            raise
        self._record("block", address, applied=True, attempts=attempts, level=level)

    async def block(self, address: IPAddress) -> None:
        try:
            await self._firewall.block(address)
            return
        except FirewallError as exc:
            if not exc.recoverable:
                raise
            logger.warning("Block of %s failed, rebuilding firewall tables: %s", address, exc)

        await self.recover()
        await self._firewall.block(address)

    async def recover(self) -> None:
        """Rebuild the firewall tables and replay every owed block."""
        try:
            await self._firewall.init_tables()
            now = self._clock()
            owed = [
                address for address, state in self.registry.snapshot()
                if self.policy.owes_block(state, now)
            ]
            for address in owed:
                await self._firewall.block(address)
        except FirewallError as exc:
            logger.error("Firewall recovery failed: %s", exc)
            self._record("recover", None, applied=False, error=str(exc))
            raise
        logger.info("Firewall tables rebuilt, %d blocked addresses restored", len(owed))
        self._record("recover", None, applied=True)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: float) -> None:
        failed: set[IPAddress] = set()
        snapshot = self.registry.snapshot()

        for address, state in snapshot:
            if address in self._released or not self.policy.is_unblock_due(state, now):
                continue
            level = self.policy.escalation_level(state.attempts)
            try:
                await self._firewall.unblock(address)
            except FirewallError as exc:
                logger.warning("Unblock of %s failed: %s", address, exc)
                failed.add(address)
                self._record("unblock", address, applied=False, attempts=state.attempts,
                             level=level, error=str(exc))
                continue
            logger.info("Unblocked %s (level %d)", address, level)
            self._released.add(address)
            self._record("unblock", address, applied=True, attempts=state.attempts, level=level)

        reaped = self._reap(snapshot, now, failed)
        if reaped:
            logger.debug("Reaped %d stale entries, %d tracked", reaped, len(self.registry))
        self._last_sweep = now

    def _reap(self, snapshot, now: float, failed: set[IPAddress]) -> int:
        horizon = self.settings.reap_after
        if horizon is None:
            return 0
        reaped = 0
        for address, state in snapshot:
            if state.last_seen >= now - horizon:
                continue
            if self.policy.owes_block(state, now) or address in failed:
                continue
            self.registry.forget(address)
            self._released.discard(address)
            reaped += 1
        return reaped

    def _record(self, action: str, address: IPAddress | None, **fields) -> None:
        if self._action_log is not None:
            self._action_log.record(action, address, **fields)
