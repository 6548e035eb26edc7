"""
Runtime settings for logblock.

Every tunable lives on Settings. Values come from LOGBLOCK_* environment
variables (DRY_RUN for dry-run mode) and can be overridden by CLI flags.

Durations are seconds, either as a bare number or with a unit suffix:
"90", "90s", "5m", "1h", "1d".
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_UNITS = ("ssh.service", "sshd.service")
DEFAULT_REAP_AFTER = 86400.0

_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}
_DISABLED = {"off", "none", "never", "0"}

# field name -> environment variable
ENV_VARS: dict[str, str] = {
    "attempts_per_level": "LOGBLOCK_ATTEMPTS_PER_LEVEL",
    "attempt_window":     "LOGBLOCK_ATTEMPT_WINDOW",
    "base_unblock_delay": "LOGBLOCK_UNBLOCK_DELAY",
    "sweep_interval":     "LOGBLOCK_SWEEP_INTERVAL",
    "reap_after":         "LOGBLOCK_REAP_AFTER",
    "units":              "LOGBLOCK_UNITS",
    "dry_run":            "DRY_RUN",
    "table":              "LOGBLOCK_TABLE",
    "action_log":         "LOGBLOCK_ACTION_LOG",
    "log_level":          "LOGBLOCK_LOG_LEVEL",
}


def parse_duration(value: Any) -> float:
    """Convert "5m" / "1h" / 300 into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    return float(match.group("value")) * _UNIT_SECONDS[match.group("unit").lower()]


class Settings(BaseModel):
    attempts_per_level: int = Field(default=4, gt=0)
    attempt_window: float = Field(default=3600.0, gt=0)
    base_unblock_delay: float = Field(default=300.0, gt=0)
    sweep_interval: float = Field(default=30.0, gt=0)
    reap_after: Annotated[float, Field(gt=0)] | None = DEFAULT_REAP_AFTER
    units: tuple[str, ...] = DEFAULT_UNITS
    dry_run: bool = False
    table: str = Field(default="logblock", pattern=r"^[A-Za-z][A-Za-z0-9_]*$")
    action_log: Path | None = None
    log_level: str = "INFO"

    model_config = {"frozen": True}

    @field_validator("attempt_window", "base_unblock_delay", "sweep_interval", mode="before")
    @classmethod
    def parse_durations(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("reap_after", mode="before")
    @classmethod
    def parse_reap_after(cls, value: Any) -> float | None:
        if value is None or str(value).strip().lower() in _DISABLED:
            return None
        return parse_duration(value)

    @field_validator("units", mode="before")
    @classmethod
    def split_units(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [u.strip() for u in value.split(",")]
        units = tuple(u for u in value if u)
        if not units:
            raise ValueError("at least one systemd unit is required")
        return units

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: Any) -> str:
        level = str(value).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value!r}")
        return level

    @model_validator(mode="before")
    @classmethod
    def default_reap_after(cls, data: Any) -> Any:
        # an unset reap_after stretches to cover a long attempt_window
        if not isinstance(data, dict) or "reap_after" in data or "attempt_window" not in data:
            return data
        try:
            window = parse_duration(data["attempt_window"])
        except ValueError:
            return data
        if window > DEFAULT_REAP_AFTER:
            data = {**data, "reap_after": window}
        return data

    @model_validator(mode="after")
    def check_reap_after(self) -> "Settings":
        # a reaped entry must already be outside the attempt window
        if self.reap_after is not None and self.reap_after < self.attempt_window:
            raise ValueError("reap_after must be at least attempt_window")
        return self

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> "Settings":
        """Build settings from the environment; non-None overrides win."""
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name, var in ENV_VARS.items():
            raw = environ.get(var)
            if raw is not None and raw.strip():
                values[name] = raw.strip()
        if "dry_run" in values:
            values["dry_run"] = values["dry_run"].lower() in {"1", "true", "yes", "on"}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
