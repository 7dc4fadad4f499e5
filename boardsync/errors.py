"""Exception hierarchy shared by the reconciliation stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

RETRYABLE_STATUSES = frozenset({403, 429})
PERMANENT_STATUSES = frozenset({401, 404})


class BoardSyncError(RuntimeError):
    """Base class for every board-sync failure."""


@dataclass(frozen=True)
class Violation:
    """A single problem found while loading the rule document."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class ConfigurationError(BoardSyncError):
    """Raised when the rule document or the monitored scope cannot be used."""

    def __init__(self, message: str, violations: Optional[Iterable[Violation]] = None) -> None:
        self.violations: tuple[Violation, ...] = tuple(violations or ())
        detail = ""
        if self.violations:
            detail = "\n" + "\n".join(f"  - {violation}" for violation in self.violations)
        super().__init__(f"{message}{detail}")
        self.summary = message


class ExpressionError(ConfigurationError):
    """Raised when a rule condition falls outside the supported grammar."""

    def __init__(self, source: str, message: str, position: Optional[int] = None) -> None:
        self.source = source
        self.position = position
        where = f" at offset {position}" if position is not None else ""
        super().__init__(f"Invalid expression {source!r}{where}: {message}")


class SnapshotError(BoardSyncError):
    """Raised when the board snapshot or its field metadata cannot be read."""


class CollectionError(BoardSyncError):
    """Raised when every activity source failed during a pass."""

    def __init__(self, message: str, failures: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.failures = tuple(failures)


class PlatformError(BoardSyncError):
    """Transport failure reported by the hosting platform."""

    def __init__(self, status: int, message: str = "", *, code: Optional[str] = None) -> None:
        self.status = int(status)
        self.code = code
        self.message = message
        self.attempts = 1
        super().__init__(f"[{self.status}] {message}" if message else f"status {self.status}")

    @property
    def retryable(self) -> bool:
        return is_retryable_status(self.status)


class NotModifiedError(PlatformError):
    """The platform reported that a write left the target unchanged."""

    def __init__(self, message: str = "not modified") -> None:
        super().__init__(304, message, code="NOT_MODIFIED")


def is_retryable_status(status: int) -> bool:
    """Rate limits and server errors are worth another attempt."""

    return status in RETRYABLE_STATUSES or status >= 500


__all__ = [
    "BoardSyncError",
    "CollectionError",
    "ConfigurationError",
    "ExpressionError",
    "NotModifiedError",
    "PERMANENT_STATUSES",
    "PlatformError",
    "RETRYABLE_STATUSES",
    "SnapshotError",
    "Violation",
    "is_retryable_status",
]
