"""
Attacker registry.

Tracks failed authentication attempts per source address. Each address gets
an AttackerState on its first failure; attempts older than the attempt window
are forgotten before the next one is counted, so a burst after a long silence
starts again from zero instead of adding up unrelated incidents.

The registry is owned by a single Watcher and is never shared between tasks.
"""
from __future__ import annotations

import dataclasses
import ipaddress
from dataclasses import dataclass

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


@dataclass
class AttackerState:
    attempts: int
    last_seen: float   # monotonic seconds

    def record_attempt(self, now: float) -> int:
        self.attempts += 1
        self.last_seen = max(self.last_seen, now)
        return self.attempts


class Registry:
    def __init__(self, attempt_window: float) -> None:
        self._attempt_window = attempt_window
        self._attackers: dict[IPAddress, AttackerState] = {}

    def __len__(self) -> int:
        return len(self._attackers)

    def __contains__(self, address: object) -> bool:
        return address in self._attackers

    def get(self, address: IPAddress) -> AttackerState | None:
        state = self._attackers.get(address)
        return dataclasses.replace(state) if state is not None else None

    def evict_if_stale(self, state: AttackerState, now: float) -> None:
        """Reset attempts once a full window has passed since the last one.

        last_seen is kept as the record of last contact.
        """
        if state.last_seen <= now - self._attempt_window:
            state.attempts = 0

    def record_attempt(self, address: IPAddress, now: float) -> int:
        state = self._attackers.get(address)
        if state is None:
            state = AttackerState(attempts=0, last_seen=now)
            self._attackers[address] = state
        self.evict_if_stale(state, now)
        return state.record_attempt(now)

    def snapshot(self) -> list[tuple[IPAddress, AttackerState]]:
        return [(address, dataclasses.replace(state)) for address, state in self._attackers.items()]

    def forget(self, address: IPAddress) -> None:
        self._attackers.pop(address, None)
