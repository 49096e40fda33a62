"""
Six-field trigger expressions (second minute hour day month day-of-week).

Expressions are compiled into APScheduler CronTriggers. Day-of-week numbers
follow cron numbering (0 and 7 are Sunday) while APScheduler counts from
Monday, so that field is translated to weekday names before compiling.
"""

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from barkcron.errors import ValidationError

logger = logging.getLogger(__name__)

FIELD_NAMES = ('second', 'minute', 'hour', 'day', 'month', 'day_of_week')

WEEKDAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _weekday_number(token: str, expression: str) -> int:
    token = token.strip().lower()
    if token in WEEKDAY_NAMES:
        return WEEKDAY_NAMES.index(token)
    try:
        value = int(token)
    except ValueError:
        raise ValidationError(f"Invalid day-of-week '{token}' in '{expression}'")
    if not 0 <= value <= 7:
        raise ValidationError(f"Day-of-week {value} out of range 0-7 in '{expression}'")
    return value


def translate_day_of_week(field: str, expression: str = "") -> str:
    """
    Translate a cron day-of-week field into APScheduler weekday names.

    Examples:
        '1-5'  -> 'mon,tue,wed,thu,fri'
        '0,7'  -> 'sun'
        '*/2'  -> 'sun,tue,thu,sat'
        '?'    -> '*'
    """
    field = field.strip().lower()
    if field in ('*', '?'):
        return '*'

    days = []
    for item in field.split(','):
        base, _, step_text = item.partition('/')
        step = 1
        if step_text:
            try:
                step = int(step_text)
            except ValueError:
                raise ValidationError(f"Invalid step '{step_text}' in '{expression}'")
            if step <= 0:
                raise ValidationError(f"Step must be positive in '{expression}'")

        if base in ('*', '?'):
            first, last = 0, 6
        elif '-' in base:
            first_text, last_text = base.split('-', 1)
            first = _weekday_number(first_text, expression)
            last = _weekday_number(last_text, expression)
            if first > last:
                raise ValidationError(f"Invalid day-of-week range '{base}' in '{expression}'")
        else:
            first = _weekday_number(base, expression)
            last = 6 if step_text else first

        for day in range(first, last + 1, step):
            day %= 7
            if day not in days:
                days.append(day)

    if not days:
        raise ValidationError(f"Empty day-of-week field in '{expression}'")
    return ','.join(WEEKDAY_NAMES[d] for d in sorted(days))


def split_expression(expression: str) -> Dict[str, str]:
    """Split a 6-field expression into CronTrigger keyword arguments."""
    if not expression or not expression.strip():
        raise ValidationError("Cron expression is empty")

    parts = expression.split()
    if len(parts) != len(FIELD_NAMES):
        raise ValidationError(
            f"Cron expression '{expression}' must have 6 fields "
            f"(second minute hour day month day-of-week), got {len(parts)}"
        )

    fields = dict(zip(FIELD_NAMES, parts))
    if fields['day'] == '?':
        fields['day'] = '*'
    fields['day_of_week'] = translate_day_of_week(fields['day_of_week'], expression)
    return fields


def parse_cron_expression(expression: str, timezone: Optional[tzinfo] = None) -> CronTrigger:
    """
    Compile a 6-field expression into a CronTrigger.

    Raises:
        ValidationError: If the expression is malformed
    """
    fields = split_expression(expression)
    try:
        return CronTrigger(timezone=timezone, **fields)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid cron expression '{expression}': {e}") from e


def validate_cron_expression(expression: str) -> bool:
    """Raise ValidationError if the expression does not compile."""
    parse_cron_expression(expression)
    return True


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.astimezone()
    return value


def next_fire_time(trigger: CronTrigger, after: datetime) -> Optional[datetime]:
    """First occurrence strictly after `after`, or None if the schedule is exhausted."""
    start = _aware(after) + timedelta(microseconds=1)
    return trigger.get_next_fire_time(None, start)


def upcoming_fire_times(trigger: CronTrigger, after: datetime, count: int) -> List[datetime]:
    """The next `count` occurrences after `after`, in order."""
    times = []
    current = after
    for _ in range(count):
        current = next_fire_time(trigger, current)
        if current is None:
            break
        times.append(current)
    return times
