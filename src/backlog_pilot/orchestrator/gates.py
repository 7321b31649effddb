"""Pure scheduling gates: quiet hours, token budget and daily rollover."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time

from backlog_pilot.orchestrator.models import OrchestratorSettings, QuietHours, TokenBudget

logger = logging.getLogger(__name__)


class SystemClock:
    """Clock backed by the host's real time."""

    def utc_now(self) -> datetime:
        return datetime.now(tz=UTC)

    def local_now(self) -> datetime:
        return datetime.now().astimezone()


def is_in_quiet_hours(quiet_hours: QuietHours, local_time: time) -> bool:
    """Return True when ``local_time`` falls inside the configured window.

    A window whose start is after its end wraps past midnight, e.g. 22:00-07:00
    covers 23:00 and 06:59 but not 07:00. Equal start and end is an empty window.
    """

    if not quiet_hours.enabled:
        return False
    start = quiet_hours.start
    end = quiet_hours.end
    if start > end:
        return local_time >= start or local_time < end
    return start <= local_time < end


def is_budget_exhausted(budget: TokenBudget) -> bool:
    """Return True when an enabled positive cap has been reached."""

    return budget.enabled and budget.daily_cap > 0 and budget.used_today >= budget.daily_cap


def roll_over_daily_budget(settings: OrchestratorSettings, today: date) -> bool:
    """Reset the daily counter when the date moved on. Returns True if reset."""

    budget = settings.token_budget
    if budget.last_reset_date is not None and budget.last_reset_date >= today:
        return False
    logger.info(
        "Resetting daily token counter (used=%d, last_reset=%s, today=%s)",
        budget.used_today,
        budget.last_reset_date,
        today,
    )
    budget.used_today = 0
    budget.last_reset_date = today
    return True
