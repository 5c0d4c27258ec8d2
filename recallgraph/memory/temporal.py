"""Temporal context for query enhancement.

Describes "now" in the coarse terms a personal assistant cares about (time
of day, weekend, work hours, season) plus recent session activity.
"""

from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger

SESSION_GAP_SECONDS = 30 * 60


def time_of_day(moment: datetime) -> str:
    hour = moment.hour
    if 5 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


def season(moment: datetime) -> str:
    """Northern-hemisphere meteorological season."""
    month = moment.month
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


def is_weekend(moment: datetime) -> bool:
    return moment.weekday() >= 5


def is_work_hours(moment: datetime) -> bool:
    return not is_weekend(moment) and 9 <= moment.hour < 17


class TemporalContextManager:
    """
    Default temporal-context collaborator.

    The context is cached and rebuilt when older than the update interval;
    session activity survives rebuilds.
    """

    def __init__(
        self,
        update_interval_seconds: float = 900.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            update_interval_seconds: Rebuild the cached context after this long
            clock: Returns the current local time
        """
        self.update_interval_seconds = update_interval_seconds
        self.clock = clock
        self._context: Optional[dict[str, Any]] = None
        self._updated_at: Optional[datetime] = None
        self._last_interaction_type: Optional[str] = None
        self._last_interaction_at: Optional[datetime] = None
        self._session_seconds = 0.0

    async def get_current_context(self) -> dict[str, Any]:
        """Return the current context as a flat map (a copy)."""
        now = self.clock()
        stale = (
            self._context is None
            or self._updated_at is None
            or (now - self._updated_at).total_seconds() > self.update_interval_seconds
        )
        if stale:
            self._context = self._build(now)
            self._updated_at = now
            logger.debug(f"Temporal context refreshed: {self._context}")
        return dict(self._context)

    def _build(self, now: datetime) -> dict[str, Any]:
        context: dict[str, Any] = {
            "timeOfDay": time_of_day(now),
            "dayOfWeek": now.strftime("%A").lower(),
            "isWeekend": is_weekend(now),
            "isWorkHours": is_work_hours(now),
            "season": season(now),
            "timezone": now.astimezone().tzname() or "UTC",
        }
        if self._last_interaction_type is not None:
            context["lastInteractionType"] = self._last_interaction_type
            context["activeSession"] = self._in_session(now)
        return context

    def _in_session(self, now: datetime) -> bool:
        if self._last_interaction_at is None:
            return False
        return (now - self._last_interaction_at).total_seconds() < SESSION_GAP_SECONDS

    async def record_interaction(self, interaction_type: str) -> None:
        """
        Note an interaction. Interactions less than 30 minutes apart extend the
        current session; a longer gap starts a new one.
        """
        now = self.clock()
        if self._in_session(now):
            self._session_seconds += (now - self._last_interaction_at).total_seconds()
        else:
            self._session_seconds = 0.0

        self._last_interaction_type = interaction_type
        self._last_interaction_at = now
        if self._context is not None:
            self._context["lastInteractionType"] = interaction_type
            self._context["activeSession"] = True

    @property
    def session_duration_seconds(self) -> float:
        """Length of the current session (0 when idle)."""
        if not self._in_session(self.clock()):
            return 0.0
        return self._session_seconds
