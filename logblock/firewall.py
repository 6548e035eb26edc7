"""
Firewall adapters.

NftFirewall drives nftables through its JSON interface (nft -j -f -). It owns
one inet table:

  table inet logblock
    set logblock_v4 { type ipv4_addr; flags interval; auto-merge }
    set logblock_v6 { type ipv6_addr; flags interval; auto-merge }
    chain input { type filter hook input priority 0; policy accept;
                  ip saddr @logblock_v4 drop
                  ip6 saddr @logblock_v6 drop }

Every operation is one atomic batch. A batch that nft rejects raises
FirewallError(RULESET); a batch that could not be handed to nft at all raises
FirewallError(EXECUTION).

DryRunFirewall keeps the blocked set in memory and only logs what it would do.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Protocol

from logblock.attackers import IPAddress
from logblock.errors import FirewallError, FirewallErrorKind

logger = logging.getLogger("logblock.firewall")

FAMILY = "inet"
CHAIN_NAME = "input"


class Firewall(Protocol):
    async def init_tables(self) -> None: ...

    async def block(self, address: IPAddress) -> None: ...

    async def unblock(self, address: IPAddress) -> None: ...

    async def remove_tables(self) -> None: ...


# ---------------------------------------------------------------------------
# nftables
# ---------------------------------------------------------------------------

class NftFirewall:
    def __init__(self, table: str = "logblock", nft: str = "nft") -> None:
        self.table = table
        self.nft = nft

    @property
    def set4(self) -> str:
        return f"{self.table}_v4"

    @property
    def set6(self) -> str:
        return f"{self.table}_v6"

    def set_for(self, address: IPAddress) -> str:
        return self.set4 if address.version == 4 else self.set6

    # -- batches -----------------------------------------------------------

    def _table(self) -> dict[str, Any]:
        return {"table": {"family": FAMILY, "name": self.table}}

    def _set(self, name: str, addr_type: str) -> dict[str, Any]:
        return {
            "set": {
                "family": FAMILY,
                "table": self.table,
                "name": name,
                "type": addr_type,
                "flags": ["interval"],
                "auto-merge": True,
            }
        }

    def _drop_rule(self, protocol: str, set_name: str) -> dict[str, Any]:
        return {
            "rule": {
                "family": FAMILY,
                "table": self.table,
                "chain": CHAIN_NAME,
                "expr": [
                    {
                        "match": {
                            "op": "==",
                            "left": {"payload": {"protocol": protocol, "field": "saddr"}},
                            "right": f"@{set_name}",
                        }
                    },
                    {"drop": None},
                ],
            }
        }

    def _element(self, address: IPAddress) -> dict[str, Any]:
        return {
            "element": {
                "family": FAMILY,
                "table": self.table,
                "name": self.set_for(address),
                "elem": [str(address)],
            }
        }

    def init_batch(self) -> list[dict[str, Any]]:
        # "add" never fails on an existing table, so the delete that follows
        # always has something to remove
        return [
            {"add": self._table()},
            {"delete": self._table()},
            {"add": self._table()},
            {
                "add": {
                    "chain": {
                        "family": FAMILY,
                        "table": self.table,
                        "name": CHAIN_NAME,
                        "type": "filter",
                        "hook": "input",
                        "prio": 0,
                        "policy": "accept",
                    }
                }
            },
            {"add": self._set(self.set4, "ipv4_addr")},
            {"add": self._set(self.set6, "ipv6_addr")},
            {"add": self._drop_rule("ip", self.set4)},
            {"add": self._drop_rule("ip6", self.set6)},
        ]

    def remove_batch(self) -> list[dict[str, Any]]:
        return [{"add": self._table()}, {"delete": self._table()}]

    def block_batch(self, address: IPAddress) -> list[dict[str, Any]]:
        return [{"add": self._element(address)}]

    def unblock_batch(self, address: IPAddress) -> list[dict[str, Any]]:
        # adding first makes the delete succeed when the address is absent
        return [{"add": self._element(address)}, {"delete": self._element(address)}]

    # -- execution ---------------------------------------------------------

    def _command(self) -> list[str]:
        command = [self.nft, "-j", "-f", "-"]
        if os.geteuid() != 0:
            command = ["sudo", "-n", *command]
        return command

    async def _apply(self, batch: list[dict[str, Any]]) -> None:
        payload = json.dumps({"nftables": batch}, separators=(",", ":"))
        command = self._command()
        logger.debug("nft batch: %s", payload)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate(payload.encode("utf-8"))
        except OSError as exc:
            raise FirewallError(
                FirewallErrorKind.EXECUTION,
                f"could not run {command[0]}: {exc}",
                command=command,
            ) from exc

        if proc.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="replace").strip()[:400]
            raise FirewallError(
                FirewallErrorKind.RULESET,
                f"nft rejected ruleset (exit {proc.returncode}): {err}",
                command=command,
                returncode=proc.returncode,
                stderr=err,
            )

    async def init_tables(self) -> None:
        await self._apply(self.init_batch())
        logger.info("nftables table %s %s initialised", FAMILY, self.table)

    async def remove_tables(self) -> None:
        await self._apply(self.remove_batch())
        logger.info("nftables table %s %s removed", FAMILY, self.table)

    async def block(self, address: IPAddress) -> None:
        await self._apply(self.block_batch(address))

    async def unblock(self, address: IPAddress) -> None:
        await self._apply(self.unblock_batch(address))


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

class DryRunFirewall:
    def __init__(self) -> None:
        self.blocked: set[IPAddress] = set()

    async def init_tables(self) -> None:
        self.blocked.clear()
        logger.info("[DRY-RUN] Would initialise nftables tables")

    async def remove_tables(self) -> None:
        self.blocked.clear()
        logger.info("[DRY-RUN] Would remove nftables tables")

    async def block(self, address: IPAddress) -> None:
        self.blocked.add(address)
        logger.info("[DRY-RUN] Would block %s", address)

    async def unblock(self, address: IPAddress) -> None:
        self.blocked.discard(address)
        logger.info("[DRY-RUN] Would unblock %s", address)
