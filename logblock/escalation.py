"""
Escalation policy.

Levels
------
  level = attempts // attempts_per_level

  0   never blocked, nothing to unblock
  1   blocked until last_seen + base_unblock_delay
  2   blocked until last_seen + 2 * base_unblock_delay
  n   blocked until last_seen + 2**(n-1) * base_unblock_delay

The doubling stops after MAX_DOUBLINGS levels; higher levels keep the
longest hold instead of growing without bound.

A block fires each time attempts crosses a multiple of attempts_per_level,
not on every attempt above it. Hold times are anchored to the most recent
attempt, so an attacker that keeps trying never ages out mid-attack.
"""
from __future__ import annotations

from dataclasses import dataclass

from logblock.attackers import AttackerState
from logblock.config import Settings

MAX_DOUBLINGS = 64


@dataclass(frozen=True)
class EscalationPolicy:
    attempts_per_level: int
    base_unblock_delay: float

    @classmethod
    def from_settings(cls, settings: Settings) -> "EscalationPolicy":
        return cls(
            attempts_per_level=settings.attempts_per_level,
            base_unblock_delay=settings.base_unblock_delay,
        )

    def escalation_level(self, attempts: int) -> int:
        return attempts // self.attempts_per_level

    def should_block(self, attempts: int) -> bool:
        return attempts > 0 and attempts % self.attempts_per_level == 0

    def hold_time(self, level: int) -> float:
        return self.base_unblock_delay * 2.0 ** min(level - 1, MAX_DOUBLINGS)

    def unblock_deadline(self, state: AttackerState) -> float | None:
        level = self.escalation_level(state.attempts)
        if level == 0:
            return None
        return state.last_seen + self.hold_time(level)

    def is_unblock_due(self, state: AttackerState, now: float) -> bool:
        deadline = self.unblock_deadline(state)
        return deadline is not None and now >= deadline

    def owes_block(self, state: AttackerState, now: float) -> bool:
        """True while the address should still be present at the firewall."""
        deadline = self.unblock_deadline(state)
        return deadline is not None and now < deadline
