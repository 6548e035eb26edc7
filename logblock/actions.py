"""Append-only JSON Lines record of firewall actions."""
from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any


class ActionLog:
    def __init__(self, path: Path, *, dry_run: bool = False) -> None:
        self.path = path
        self.dry_run = dry_run

    def record(
        self,
        action: str,
        address: Any,
        *,
        applied: bool,
        attempts: int | None = None,
        level: int | None = None,
        error: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "ts": time.time(),
            "action": action,
            "address": str(address) if address is not None else None,
            "attempts": attempts,
            "level": level,
            "applied": applied,
            "dry_run": self.dry_run,
        }
        if error:
            payload["error"] = error
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, separators=(",", ":"), sort_keys=True))
            f.write("\n")
