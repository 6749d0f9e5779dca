from datetime import datetime, timezone
from functools import wraps

from flask import current_app, jsonify, request

from cardleague import db, limiter
from cardleague.errors import InvalidPick, LeagueNotFound, NotLeagueMember
from cardleague.models import League
from cardleague.routes.api import bp
from cardleague.services.game_clock import league_current_week, league_week_info
from cardleague.services.pick_ledger import PickLedger
from cardleague.services.scoring import ScoreAggregator
from cardleague.services.settlement import build_settlement_service
from cardleague.utils.cache_utils import get_cache_stats


def add_security_headers(f):
    """Add security headers to API responses"""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        response = f(*args, **kwargs)
        if hasattr(response, "headers"):
            response.headers["Cache-Control"] = (
                "no-store, no-cache, must-revalidate, max-age=0"
            )
        return response

    return decorated_function


def current_user_id():
    """Caller identity set by the upstream authentication layer"""
    value = request.headers.get("X-User-Id")
    if not value:
        raise NotLeagueMember("Missing X-User-Id header")
    try:
        return int(value)
    except ValueError:
        raise NotLeagueMember(f"Invalid X-User-Id header: {value!r}")


def get_league_or_404(league_id):
    league = db.session.get(League, league_id)
    if league is None:
        raise LeagueNotFound(f"League {league_id} not found")
    return league


def require_member(league, user_id):
    if not league.is_user_member(user_id):
        raise NotLeagueMember(
            f"User {user_id} is not a member of league {league.id}",
            user_id=user_id,
            league_id=league.id,
        )


def optional_int(name):
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidPick(f"{name} must be an integer")


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidPick("Request body must be a JSON object")
    return data


@bp.route("/leagues/<int:league_id>/cards", methods=["POST"])
@limiter.limit("60 per minute")
@add_security_headers
def submit_card(league_id):
    """Submit or edit the caller's card for a week"""
    user_id = current_user_id()
    data = json_body()
    picks = data.get("picks")
    if not isinstance(picks, list):
        raise InvalidPick("picks must be a list")

    ledger = PickLedger()
    card = ledger.submit_or_edit_card(
        user_id,
        league_id,
        week=data.get("week"),
        year=data.get("year"),
        desired_picks=picks,
    )
    return jsonify(ledger.get_card_view(card.id))


@bp.route("/leagues/<int:league_id>/cards/toggle", methods=["POST"])
@limiter.limit("120 per minute")
@add_security_headers
def toggle_pick(league_id):
    """Select or deselect one pick on the caller's card"""
    user_id = current_user_id()
    data = json_body()
    missing = [k for k in ("game_id", "bet_kind", "selection") if data.get(k) is None]
    if missing:
        raise InvalidPick(f"Missing fields: {', '.join(missing)}")

    ledger = PickLedger()
    card = ledger.toggle_pick(
        user_id,
        league_id,
        data["game_id"],
        data["bet_kind"],
        data["selection"],
        week=data.get("week"),
        year=data.get("year"),
    )
    return jsonify(ledger.get_card_view(card.id))


@bp.route("/cards/<int:card_id>")
@add_security_headers
def card_view(card_id):
    """Card with picks, lock flags and score"""
    user_id = current_user_id()
    ledger = PickLedger()
    view = ledger.get_card_view(card_id)
    require_member(get_league_or_404(view["league_id"]), user_id)
    return jsonify(view)


@bp.route("/leagues/<int:league_id>/cards")
@add_security_headers
def card_history(league_id):
    """A member's cards in a league, newest first (defaults to the caller)"""
    user_id = current_user_id()
    league = get_league_or_404(league_id)
    require_member(league, user_id)

    target_user_id = optional_int("user_id") or user_id
    cards = PickLedger().get_card_history(target_user_id, league_id)
    return jsonify(
        {
            "league_id": league_id,
            "user_id": target_user_id,
            "cards": [card.to_dict() for card in cards],
        }
    )


@bp.route("/leagues/<int:league_id>/standings/weekly/<int:week>")
@add_security_headers
def weekly_standings(league_id, week):
    """Ranked card scores for one league week"""
    require_member(get_league_or_404(league_id), current_user_id())
    if week < 1:
        raise InvalidPick(f"Week numbers start at 1, got {week}")
    year = optional_int("year")
    entries = ScoreAggregator().weekly_standings(league_id, week, year=year)
    return jsonify(
        {
            "league_id": league_id,
            "week": week,
            "year": year,
            "standings": [entry.to_dict() for entry in entries],
        }
    )


@bp.route("/leagues/<int:league_id>/standings/all-time")
@add_security_headers
def all_time_standings(league_id):
    """Ranking points summed over every week of the league"""
    require_member(get_league_or_404(league_id), current_user_id())
    entries = ScoreAggregator().all_time_standings(league_id)
    return jsonify(
        {"league_id": league_id, "standings": [entry.to_dict() for entry in entries]}
    )


@bp.route("/leagues/<int:league_id>/weeks/current")
def current_week(league_id):
    """Current league week with its interval and label"""
    league = get_league_or_404(league_id)
    require_member(league, current_user_id())
    now = datetime.now(timezone.utc)
    return jsonify(league_week_info(league, league_current_week(league, now), now))


@bp.route("/leagues/<int:league_id>/weeks/<int:week>")
def week_info(league_id, week):
    league = get_league_or_404(league_id)
    require_member(league, current_user_id())
    try:
        info = league_week_info(league, week, datetime.now(timezone.utc))
    except ValueError as e:
        raise InvalidPick(str(e))
    return jsonify(info)


@bp.route("/settlement/run", methods=["POST"])
@limiter.limit("10 per hour")
@add_security_headers
def run_settlement():
    """Run one settlement pass now"""
    current_user_id()
    report = build_settlement_service(current_app).run_settlement_pass()
    return jsonify(report.to_dict())


@bp.route("/settlement/status")
def settlement_status():
    """Background scheduler status and last settlement report"""
    from cardleague.services.scheduler_service import scheduler_service

    status = scheduler_service.get_status()
    status["cache"] = get_cache_stats()
    return jsonify(status)
