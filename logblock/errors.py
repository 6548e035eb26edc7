"""Exception types raised by logblock collaborators."""

from __future__ import annotations

import enum


class LogblockError(Exception):
    """Base class for logblock failures."""


class JournalError(LogblockError):
    """The journal source can no longer produce events."""


class FirewallErrorKind(enum.Enum):
    # nft ran and rejected the batch: tables missing, corrupted or wiped
    RULESET = "ruleset"
    # nft could not be run at all
    EXECUTION = "execution"


class FirewallError(LogblockError):
    def __init__(self, kind: FirewallErrorKind, message: str, *, command: list[str] | None = None,
                 returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.kind = kind
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr

    @property
    def recoverable(self) -> bool:
        return self.kind is FirewallErrorKind.RULESET
