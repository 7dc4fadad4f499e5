"""Pick the current sprint out of the board's iteration configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from boardsync.domain.models import Iteration
from boardsync.errors import ConfigurationError
from boardsync.logging import get_logger

logger = get_logger(__name__)


def today_in(timezone_name: str, *, now: Optional[Callable[[], datetime]] = None) -> date:
    """Return the calendar date at ``timezone_name`` for the reference instant."""

    try:
        zone = ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise ConfigurationError(f"Unknown timezone {timezone_name!r}") from exc
    instant = now() if now else datetime.now(zone)
    if instant.tzinfo is None:
        return instant.date()
    return instant.astimezone(zone).date()


@dataclass(frozen=True)
class SprintCalendar:
    """Ordered iterations; each covers the half-open window ``[start, start + duration)``."""

    iterations: Tuple[Iteration, ...] = ()

    @classmethod
    def from_iterations(cls, iterations: Iterable[Iteration]) -> "SprintCalendar":
        return cls(tuple(sorted(iterations, key=lambda iteration: iteration.start_date)))

    def containing(self, day: date) -> Tuple[Iteration, ...]:
        return tuple(iteration for iteration in self.iterations if iteration.contains(day))

    def current(self, day: date) -> Optional[Iteration]:
        """Return the iteration containing ``day`` or ``None``.

        Overlapping iterations should not happen on a well-kept board; when they
        do the latest-starting one is used and a warning is logged.
        """

        matches = self.containing(day)
        if not matches:
            logger.error(
                "No current sprint contains %s; sprint rules will be skipped",
                day.isoformat(),
                extra={"metadata": {"reason": "no-current-sprint", "iterations": len(self.iterations)}},
            )
            return None
        if len(matches) > 1:
            logger.warning(
                "%d iterations overlap on %s, using %s",
                len(matches),
                day.isoformat(),
                matches[-1].title,
            )
        current = matches[-1]
        logger.info(
            "Current sprint: %s (%s)",
            current.title,
            current.id,
            extra={"metadata": {"start": current.start_date.isoformat(), "days": current.duration_days}},
        )
        return current


__all__ = ["SprintCalendar", "today_in"]
