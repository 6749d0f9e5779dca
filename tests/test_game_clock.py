from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytz

from cardleague.models import GameState
from cardleague.services.game_clock import (
    TUESDAY,
    current_week,
    format_week_range,
    is_locked,
    league_week_info,
    season_year_for_week,
    week_anchor,
    week_interval,
)

UTC = timezone.utc


def game(start, state=GameState.SCHEDULED):
    return SimpleNamespace(scheduled_start=start, state=state)


class TestIsLocked:
    def test_open_before_start(self):
        start = datetime(2025, 9, 7, 17, 0, tzinfo=UTC)
        assert not is_locked(game(start), start - timedelta(seconds=1))

    def test_locked_at_start(self):
        start = datetime(2025, 9, 7, 17, 0, tzinfo=UTC)
        assert is_locked(game(start), start)

    def test_locked_when_feed_reports_started_early(self):
        start = datetime(2025, 9, 7, 17, 0, tzinfo=UTC)
        assert is_locked(game(start, GameState.IN_PROGRESS), start - timedelta(hours=1))
        assert is_locked(game(start, GameState.FINAL), start - timedelta(hours=1))

    def test_naive_times_are_utc(self):
        start = datetime(2025, 9, 7, 17, 0)
        # 13:30 EDT is 17:30 UTC
        as_of = datetime(2025, 9, 7, 13, 30, tzinfo=pytz.FixedOffset(-240))
        assert is_locked(game(start), as_of)

    def test_lock_is_monotonic(self):
        start = datetime(2025, 9, 7, 17, 0, tzinfo=UTC)
        g = game(start)
        checks = [is_locked(g, start + timedelta(minutes=m)) for m in range(-5, 6)]
        assert checks == sorted(checks)


class TestCurrentWeek:
    def test_week_one_starts_at_first_boundary(self):
        # Monday creation, Tuesday boundary
        created = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
        assert week_anchor(created) == datetime(2025, 9, 2, tzinfo=UTC)
        assert current_week(created, datetime(2025, 9, 2, 0, 0, tzinfo=UTC)) == 1
        assert current_week(created, datetime(2025, 9, 8, 23, 59, tzinfo=UTC)) == 1
        assert current_week(created, datetime(2025, 9, 9, 0, 0, tzinfo=UTC)) == 2

    def test_before_anchor_clamps_to_one(self):
        created = datetime(2025, 9, 3, 12, 0, tzinfo=UTC)  # Wednesday
        assert current_week(created, datetime(2025, 9, 4, tzinfo=UTC)) == 1
        # Anchor is the following Tuesday
        assert current_week(created, datetime(2025, 9, 9, tzinfo=UTC)) == 1
        assert current_week(created, datetime(2025, 9, 16, tzinfo=UTC)) == 2

    def test_created_on_boundary_day(self):
        created = datetime(2025, 9, 2, 20, 0, tzinfo=UTC)
        assert week_anchor(created) == datetime(2025, 9, 2, tzinfo=UTC)
        assert current_week(created, datetime(2025, 9, 30, tzinfo=UTC)) == 5

    def test_custom_boundary_weekday(self):
        created = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
        # Sunday boundary: anchor 2025-09-07
        assert current_week(created, datetime(2025, 9, 13, tzinfo=UTC), boundary_weekday=6) == 1
        assert current_week(created, datetime(2025, 9, 14, tzinfo=UTC), boundary_weekday=6) == 2

    def test_boundary_follows_league_timezone(self):
        tz = pytz.timezone("America/New_York")
        created = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
        # 2025-09-09 02:00 UTC is still Monday evening in New York
        assert current_week(created, datetime(2025, 9, 9, 2, 0, tzinfo=UTC), TUESDAY, tz) == 1
        assert current_week(created, datetime(2025, 9, 9, 4, 0, tzinfo=UTC), TUESDAY, tz) == 2

    def test_dst_change_does_not_shift_boundaries(self):
        tz = pytz.timezone("America/New_York")
        created = datetime(2025, 3, 3, 12, 0, tzinfo=UTC)  # Monday, EST
        # DST starts 2025-03-09; week 2 starts Tuesday 2025-03-11 00:00 EDT
        start, end = week_interval(created, 2, TUESDAY, tz)
        assert start == datetime(2025, 3, 11, 4, 0, tzinfo=UTC)
        assert end == datetime(2025, 3, 18, 4, 0, tzinfo=UTC)
        week1_start, week1_end = week_interval(created, 1, TUESDAY, tz)
        assert week1_start == datetime(2025, 3, 4, 5, 0, tzinfo=UTC)
        assert week1_end == start
        assert current_week(created, start - timedelta(minutes=1), TUESDAY, tz) == 1
        assert current_week(created, start, TUESDAY, tz) == 2

    def test_unknown_timezone_falls_back_to_utc(self):
        created = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
        assert current_week(created, datetime(2025, 9, 9, tzinfo=UTC), TUESDAY, "Mars/Olympus") == 2


class TestWeekInterval:
    def test_intervals_are_contiguous(self):
        created = datetime(2025, 9, 1, 12, 0, tzinfo=UTC)
        previous_end = None
        for week in range(1, 6):
            start, end = week_interval(created, week)
            assert end - start == timedelta(days=7)
            if previous_end is not None:
                assert start == previous_end
            previous_end = end
            assert current_week(created, start) == week

    def test_week_zero_rejected(self):
        with pytest.raises(ValueError):
            week_interval(datetime(2025, 9, 1, tzinfo=UTC), 0)

    def test_format_week_range(self):
        created = datetime(2024, 12, 1, 12, 0, tzinfo=UTC)
        assert format_week_range(created, 1) == "Dec 3 - Dec 9"
        assert format_week_range(created, 5) == "Dec 31 - Jan 6"

    def test_season_year_follows_week_start(self):
        created = datetime(2024, 12, 1, 12, 0, tzinfo=UTC)
        assert season_year_for_week(created, 5) == 2024
        assert season_year_for_week(created, 6) == 2025


def test_league_week_info_uses_league_settings(app, factory):
    owner = factory.user("owner")
    league = factory.league(
        owner,
        created_at=datetime(2025, 9, 1, 12, 0, tzinfo=UTC),
        week_boundary_weekday=6,
        timezone="Europe/Berlin",
    )
    info = league_week_info(league, 1, now=datetime(2025, 9, 8, 12, 0, tzinfo=UTC))
    # Week 1 starts Sunday 2025-09-07 00:00 CEST
    assert info["starts_at"] == "2025-09-06T22:00:00+00:00"
    assert info["label"] == "Sep 7 - Sep 13"
    assert info["season_year"] == 2025
    assert info["is_current"] is True
