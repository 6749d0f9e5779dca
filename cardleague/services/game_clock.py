"""
Game clock and lock policy.

``is_locked`` is the only place that decides whether picks against a game may
still change, and ``current_week`` / ``week_interval`` are the only places
that turn timestamps into league week numbers. Everything here is a pure
function of its arguments.
"""

from datetime import datetime, time, timedelta, timezone

import pytz
from flask import current_app, has_app_context

from cardleague.models.enums import GameState

TUESDAY = 1
DAYS_PER_WEEK = 7


def ensure_utc(dt):
    """Return an aware UTC datetime; naive values are assumed to be UTC"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt):
    """Naive UTC datetime for comparisons against stored columns"""
    if dt is None:
        return None
    return ensure_utc(dt).replace(tzinfo=None)


def resolve_timezone(tz):
    """Accept a pytz/tzinfo object, an IANA name, or None (UTC)"""
    if tz is None:
        return pytz.UTC
    if isinstance(tz, str):
        try:
            return pytz.timezone(tz)
        except pytz.UnknownTimeZoneError:
            return pytz.UTC
    return tz


def is_locked(game, as_of):
    """Picks against ``game`` are frozen at ``as_of``.

    A game locks once its scheduled start has passed or once the feed has
    moved it out of SCHEDULED, whichever comes first.
    """
    if game.state is not None and GameState(game.state) != GameState.SCHEDULED:
        return True
    start = ensure_utc(game.scheduled_start)
    if start is None:
        return False
    return ensure_utc(as_of) >= start


def _local_midnight(day, tz):
    tz = resolve_timezone(tz)
    naive = datetime.combine(day, time.min)
    if hasattr(tz, "localize"):
        local = tz.localize(naive)
    else:
        local = naive.replace(tzinfo=tz)
    return local.astimezone(timezone.utc)


def _local_date(dt, tz):
    return ensure_utc(dt).astimezone(resolve_timezone(tz)).date()


def week_anchor_date(league_created_at, boundary_weekday=TUESDAY, tz=None):
    """First boundary weekday on or after the league's creation date (local)"""
    created = _local_date(league_created_at, tz)
    days_until_boundary = (boundary_weekday - created.weekday()) % DAYS_PER_WEEK
    return created + timedelta(days=days_until_boundary)


def week_anchor(league_created_at, boundary_weekday=TUESDAY, tz=None):
    """Start of week 1 as an aware UTC datetime"""
    return _local_midnight(week_anchor_date(league_created_at, boundary_weekday, tz), tz)


def current_week(league_created_at, now, boundary_weekday=TUESDAY, tz=None):
    """League-relative week number at ``now`` (minimum 1).

    Counted in local calendar days so DST shifts never move a boundary.
    """
    anchor = week_anchor_date(league_created_at, boundary_weekday, tz)
    days_elapsed = (_local_date(now, tz) - anchor).days
    return max(1, days_elapsed // DAYS_PER_WEEK + 1)


def week_interval(league_created_at, week, boundary_weekday=TUESDAY, tz=None):
    """Half-open ``[start, end)`` interval of ``week`` as aware UTC datetimes"""
    if week < 1:
        raise ValueError(f"Week numbers start at 1, got {week}")
    anchor = week_anchor_date(league_created_at, boundary_weekday, tz)
    start_day = anchor + timedelta(days=(week - 1) * DAYS_PER_WEEK)
    end_day = start_day + timedelta(days=DAYS_PER_WEEK)
    return _local_midnight(start_day, tz), _local_midnight(end_day, tz)


def season_year_for_week(league_created_at, week, boundary_weekday=TUESDAY, tz=None):
    """Calendar year of the week's first (local) day"""
    anchor = week_anchor_date(league_created_at, boundary_weekday, tz)
    return (anchor + timedelta(days=(week - 1) * DAYS_PER_WEEK)).year


def format_week_range(league_created_at, week, boundary_weekday=TUESDAY, tz=None):
    """Display label for a week, e.g. ``"Dec 3 - Dec 9"``"""
    anchor = week_anchor_date(league_created_at, boundary_weekday, tz)
    start = anchor + timedelta(days=(week - 1) * DAYS_PER_WEEK)
    last = start + timedelta(days=DAYS_PER_WEEK - 1)
    return f"{start:%b} {start.day} - {last:%b} {last.day}"


def league_week_settings(league):
    """(boundary weekday, timezone) for a league, falling back to app config"""
    default_weekday = TUESDAY
    default_tz = "UTC"
    if has_app_context():
        default_weekday = current_app.config.get("WEEK_BOUNDARY_WEEKDAY", TUESDAY)
        default_tz = current_app.config.get("TIMEZONE", "UTC")

    weekday = league.week_boundary_weekday
    if weekday is None:
        weekday = default_weekday
    return weekday, resolve_timezone(league.timezone or default_tz)


def league_current_week(league, now):
    weekday, tz = league_week_settings(league)
    return current_week(league.created_at, now, weekday, tz)


def league_week_info(league, week, now=None):
    """Week number, interval, season year and label for a league week"""
    weekday, tz = league_week_settings(league)
    start, end = week_interval(league.created_at, week, weekday, tz)
    info = {
        "league_id": league.id,
        "week": week,
        "season_year": season_year_for_week(league.created_at, week, weekday, tz),
        "starts_at": start.isoformat(),
        "ends_at": end.isoformat(),
        "label": format_week_range(league.created_at, week, weekday, tz),
    }
    if now is not None:
        info["is_current"] = current_week(league.created_at, now, weekday, tz) == week
    return info
