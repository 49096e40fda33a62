"""
Tests for time-exclusion windows and next-allowed-time search.
"""

from datetime import datetime, timezone

import pytest

from barkcron.cron import parse_cron_expression
from barkcron.errors import ValidationError
from barkcron.models import TimeExclusionConfig, TimeExclusionRule
from barkcron.timeexclusion import MAX_CANDIDATES, get_next_allowed_time, is_time_excluded


def at(year, month, day, hour=12, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def config(*rules, enabled=True):
    return TimeExclusionConfig(enabled=enabled, exclusion_rules=list(rules))


NIGHT = TimeExclusionRule(type="daily", name="night", start_time="22:00", end_time="06:00")


@pytest.mark.parametrize("hour,minute,expected", [
    (23, 0, True),
    (3, 0, True),
    (22, 0, True),
    (5, 59, True),
    (6, 0, False),
    (10, 0, False),
    (21, 59, False),
])
def test_daily_window_wrapping_midnight(hour, minute, expected):
    excluded, reason = is_time_excluded(at(2024, 3, 1, hour, minute), config(NIGHT))
    assert excluded is expected
    if expected:
        assert "night" in reason


def test_daily_window_same_day_is_half_open():
    office = TimeExclusionRule(type="daily", start_time="09:00", end_time="17:00")
    assert is_time_excluded(at(2024, 3, 1, 9, 0), config(office))[0]
    assert is_time_excluded(at(2024, 3, 1, 16, 59), config(office))[0]
    assert not is_time_excluded(at(2024, 3, 1, 17, 0), config(office))[0]
    assert not is_time_excluded(at(2024, 3, 1, 8, 59), config(office))[0]


def test_weekly_whole_day():
    # 2024-01-06 is a Saturday, 2024-01-07 a Sunday, 2024-01-08 a Monday
    weekend = TimeExclusionRule(type="weekly", weekdays=[0, 6])
    assert is_time_excluded(at(2024, 1, 6), config(weekend))[0]
    assert is_time_excluded(at(2024, 1, 7), config(weekend))[0]
    assert not is_time_excluded(at(2024, 1, 8), config(weekend))[0]


def test_weekly_with_time_window():
    monday_morning = TimeExclusionRule(type="weekly", weekdays=[1], start_time="08:00", end_time="10:00")
    assert is_time_excluded(at(2024, 1, 8, 9, 0), config(monday_morning))[0]
    assert not is_time_excluded(at(2024, 1, 8, 11, 0), config(monday_morning))[0]
    assert not is_time_excluded(at(2024, 1, 9, 9, 0), config(monday_morning))[0]


def test_weekly_without_weekdays_never_matches():
    rule = TimeExclusionRule(type="weekly", weekdays=[])
    assert not is_time_excluded(at(2024, 1, 8), config(rule))[0]


def test_date_range_excludes_inner_dates_only():
    holiday = TimeExclusionRule(type="date_range", start_date="2024-01-01", end_date="2024-01-10")
    assert is_time_excluded(at(2024, 1, 5), config(holiday))[0]
    assert is_time_excluded(at(2024, 1, 2, 0, 0), config(holiday))[0]
    # Boundary dates are not excluded
    assert not is_time_excluded(at(2024, 1, 1), config(holiday))[0]
    assert not is_time_excluded(at(2024, 1, 10), config(holiday))[0]
    assert not is_time_excluded(at(2024, 1, 11), config(holiday))[0]


def test_date_range_with_time_window():
    rule = TimeExclusionRule(
        type="date_range", start_date="2024-01-01", end_date="2024-01-10",
        start_time="12:00", end_time="13:00",
    )
    assert is_time_excluded(at(2024, 1, 5, 12, 30), config(rule))[0]
    assert not is_time_excluded(at(2024, 1, 5, 14, 0), config(rule))[0]


def test_disabled_or_empty_config_never_excludes():
    noon = at(2024, 1, 5, 23, 0)
    assert is_time_excluded(noon, None) == (False, "")
    assert is_time_excluded(noon, config(NIGHT, enabled=False)) == (False, "")
    assert is_time_excluded(noon, config()) == (False, "")


def test_bad_rules_do_not_match():
    rules = [
        TimeExclusionRule(type="monthly", start_time="00:00", end_time="23:59"),
        TimeExclusionRule(type="daily", start_time="25:99", end_time="06:00"),
        TimeExclusionRule(type="daily", start_time="", end_time="06:00"),
        TimeExclusionRule(type="date_range", start_date="2024/01/01", end_date="2024-02-01"),
    ]
    assert not is_time_excluded(at(2024, 1, 5, 3, 0), config(*rules))[0]


def test_first_matching_rule_wins():
    first = TimeExclusionRule(type="daily", name="first", start_time="00:00", end_time="12:00")
    second = TimeExclusionRule(type="daily", name="second", start_time="00:00", end_time="23:00")
    excluded, reason = is_time_excluded(at(2024, 1, 5, 6, 0), config(first, second))
    assert excluded
    assert reason.startswith("first")


def test_config_from_json():
    parsed = TimeExclusionConfig.from_json(
        '{"enabled": true, "exclusion_rules": [{"type": "weekly", "weekdays": [0, 6]}]}'
    )
    assert parsed.enabled
    assert parsed.exclusion_rules[0].weekdays == [0, 6]
    assert not TimeExclusionConfig.from_json("").enabled


@pytest.mark.parametrize("raw", [
    '{"enabled": true, "exclusion_rules": {}}',
    '{"enabled": true, "exclusion_rules": "weekly"}',
    '{"enabled": true, "exclusion_rules": ["weekly"]}',
    '{"enabled": true, "exclusion_rules": [{"type": "weekly", "weekdays": ["sat"]}]}',
    '{"enabled": true, "exclusion_rules": [{"type": "weekly", "weekdays": 6}]}',
    '{"enabled": true, "exclusion_rules": [{"type": "weekly", "weekdays": [true]}]}',
])
def test_wrong_shapes_raise_validation_error(raw):
    with pytest.raises(ValidationError):
        TimeExclusionConfig.from_json(raw)


def test_numeric_string_weekdays_accepted():
    parsed = TimeExclusionConfig.from_json(
        '{"enabled": true, "exclusion_rules": [{"type": "weekly", "weekdays": ["0", 6]}]}'
    )
    assert parsed.exclusion_rules[0].weekdays == [0, 6]


class TestNextAllowedTime:

    def setup_method(self):
        self.hourly = parse_cron_expression("0 0 * * * *", timezone.utc)

    def test_skips_excluded_occurrences(self):
        next_time = get_next_allowed_time(self.hourly, config(NIGHT), at(2024, 1, 1, 21, 30))
        assert next_time == at(2024, 1, 2, 6, 0)

    def test_plain_next_without_exclusions(self):
        assert get_next_allowed_time(self.hourly, None, at(2024, 1, 1, 21, 30)) == at(2024, 1, 1, 22, 0)
        disabled = config(NIGHT, enabled=False)
        assert get_next_allowed_time(self.hourly, disabled, at(2024, 1, 1, 21, 30)) == at(2024, 1, 1, 22, 0)

    def test_strictly_after_from_time(self):
        assert get_next_allowed_time(self.hourly, None, at(2024, 1, 1, 10, 0)) == at(2024, 1, 1, 11, 0)

    def test_falls_back_when_everything_is_excluded(self):
        always = config(TimeExclusionRule(type="weekly", weekdays=[0, 1, 2, 3, 4, 5, 6]))
        assert get_next_allowed_time(self.hourly, always, at(2024, 1, 1, 21, 30)) == at(2024, 1, 1, 22, 0)

    def test_never_returns_excluded_time_when_allowed_one_exists(self):
        # Weekdays only, every hour: the weekend must be skipped
        weekend = config(TimeExclusionRule(type="weekly", weekdays=[0, 6]))
        start = at(2024, 1, 6, 0, 30)  # Saturday
        result = get_next_allowed_time(self.hourly, weekend, start)
        assert not is_time_excluded(result, weekend)[0]
        assert result == at(2024, 1, 8, 0, 0)

    def test_search_is_bounded(self):
        # A month-long exclusion needs more hourly steps than the search allows
        long_break = config(TimeExclusionRule(
            type="date_range", start_date="2023-12-31", end_date="2024-02-01",
        ))
        start = at(2024, 1, 1, 0, 30)
        result = get_next_allowed_time(self.hourly, long_break, start)
        assert MAX_CANDIDATES < 24 * 30
        assert result == at(2024, 1, 1, 1, 0)
