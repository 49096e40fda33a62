"""
Time-exclusion windows.

A task may carry rules describing when it must not run (nightly quiet
hours, weekends, holidays). The trigger still fires in an excluded window;
execution is skipped and next_run moves on to the next allowed occurrence.
"""

import logging
from datetime import date, datetime, time
from typing import Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

from barkcron.cron import next_fire_time
from barkcron.models import TimeExclusionConfig, TimeExclusionRule

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 100

WEEKDAY_LABELS = ('Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat')


def _parse_time(value: str) -> Optional[time]:
    try:
        return datetime.strptime(value.strip(), "%H:%M").time()
    except ValueError:
        logger.warning(f"Failed to parse exclusion time '{value}'")
        return None


def _parse_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        logger.warning(f"Failed to parse exclusion date '{value}'")
        return None


def _cron_weekday(timestamp: datetime) -> int:
    """Weekday with 0 = Sunday."""
    return (timestamp.weekday() + 1) % 7


def _in_daily_window(timestamp: datetime, rule: TimeExclusionRule) -> bool:
    if not rule.start_time or not rule.end_time:
        return False
    start = _parse_time(rule.start_time)
    end = _parse_time(rule.end_time)
    if start is None or end is None:
        return False

    now = timestamp.time().replace(microsecond=0, tzinfo=None)
    if end < start:
        # Wraps midnight, e.g. 22:00-06:00
        return now >= start or now < end
    return start <= now < end


def _match_daily(timestamp: datetime, rule: TimeExclusionRule) -> Tuple[bool, str]:
    if _in_daily_window(timestamp, rule):
        return True, f"daily exclusion {rule.start_time}-{rule.end_time}"
    return False, ""


def _match_weekly(timestamp: datetime, rule: TimeExclusionRule) -> Tuple[bool, str]:
    if not rule.weekdays or _cron_weekday(timestamp) not in rule.weekdays:
        return False, ""

    if rule.start_time and rule.end_time:
        if _in_daily_window(timestamp, rule):
            return True, f"weekly exclusion {rule.start_time}-{rule.end_time}"
        return False, ""

    days = [WEEKDAY_LABELS[d] for d in rule.weekdays if 0 <= d < 7]
    return True, f"weekly exclusion {','.join(days)}"


def _match_date_range(timestamp: datetime, rule: TimeExclusionRule) -> Tuple[bool, str]:
    if not rule.start_date or not rule.end_date:
        return False, ""
    start = _parse_date(rule.start_date)
    end = _parse_date(rule.end_date)
    if start is None or end is None:
        return False, ""

    # Boundary dates are not excluded
    if not start < timestamp.date() < end:
        return False, ""

    if rule.start_time and rule.end_time:
        if _in_daily_window(timestamp, rule):
            return True, (
                f"date range exclusion {rule.start_date}..{rule.end_date} "
                f"{rule.start_time}-{rule.end_time}"
            )
        return False, ""

    return True, f"date range exclusion {rule.start_date}..{rule.end_date}"


RULE_MATCHERS = {
    'daily': _match_daily,
    'weekly': _match_weekly,
    'date_range': _match_date_range,
}


def is_time_excluded(timestamp: datetime, config: Optional[TimeExclusionConfig]) -> Tuple[bool, str]:
    """
    Check a timestamp against exclusion rules.

    The timestamp is evaluated in its own timezone (wall-clock time).

    Returns:
        (excluded, reason) where reason names the first matching rule
    """
    if config is None or not config.enabled or not config.exclusion_rules:
        return False, ""

    for rule in config.exclusion_rules:
        matcher = RULE_MATCHERS.get(rule.type)
        if matcher is None:
            logger.warning(f"Unknown time exclusion rule type: {rule.type}")
            continue
        excluded, reason = matcher(timestamp, rule)
        if excluded:
            if rule.name:
                reason = f"{rule.name}: {reason}"
            return True, reason

    return False, ""


def get_next_allowed_time(
    trigger: CronTrigger,
    config: Optional[TimeExclusionConfig],
    from_time: datetime,
) -> Optional[datetime]:
    """
    Next trigger occurrence after from_time that is not excluded.

    At most MAX_CANDIDATES occurrences are examined. If all of them are
    excluded, the plain next occurrence after from_time is returned.
    """
    first = next_fire_time(trigger, from_time)
    if config is None or not config.enabled:
        return first

    candidate = first
    for _ in range(MAX_CANDIDATES):
        if candidate is None:
            break
        excluded, _ = is_time_excluded(candidate, config)
        if not excluded:
            return candidate
        candidate = next_fire_time(trigger, candidate)

    logger.warning(
        f"No allowed run time within {MAX_CANDIDATES} occurrences after {from_time}, "
        f"falling back to {first}"
    )
    return first
