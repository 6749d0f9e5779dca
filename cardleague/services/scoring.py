"""
Score aggregation for cards and league standings.

Card scores and standings are always re-derived from pick results; the
``total_score`` column on a card is only a cache of ``card_score``.
"""

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional

from flask import current_app, has_app_context
from sqlalchemy.orm import selectinload

from cardleague import db
from cardleague.errors import CardNotFound, LeagueNotFound
from cardleague.models import BetKind, Card, League, PickResult
from cardleague.services.game_clock import league_week_settings, season_year_for_week
from cardleague.utils.cache_utils import (
    get_cached_standings,
    invalidate_league_standings,
    set_cached_standings,
    standings_cache_key,
)
from cardleague.utils.locks import card_locks, lock_timeout
from cardleague.utils.performance import timer

logger = logging.getLogger(__name__)

ALL_TIME = "all_time"

# Ranking points for a weekly finish: 1st=10, 2nd=9, ... 10th and below=1
MAX_RANKING_POINTS = 10


def flat_points(pick):
    """One point per winning pick"""
    return 1


def odds_weighted_points(pick):
    """Underdog moneyline wins pay the American odds in hundreds, minimum 1"""
    if pick.bet_kind == BetKind.MONEYLINE and pick.line is not None and pick.line > 0:
        return max(1, int(round(pick.line / 100.0)))
    return 1


POINT_SYSTEMS: Dict[str, Callable] = {
    "flat": flat_points,
    "odds": odds_weighted_points,
}


def register_point_system(name, point_value):
    POINT_SYSTEMS[name] = point_value


def get_point_value(name=None):
    """Resolve a point-value policy by name (default from config)"""
    if name is None:
        name = current_app.config.get("POINT_SYSTEM", "flat") if has_app_context() else "flat"
    try:
        return POINT_SYSTEMS[name]
    except KeyError:
        raise ValueError(f"Unknown point system: {name}")


def ranking_points(rank):
    return max(1, MAX_RANKING_POINTS - (rank - 1))


def win_rate(wins, losses):
    """Percentage of decided picks won; pushes and pending picks do not count"""
    decided = wins + losses
    return round(wins / decided * 100, 1) if decided else 0.0


@dataclass
class StandingsEntry:
    user_id: int
    rank: int
    points: int
    wins: int
    losses: int
    pushes: int
    pending: int
    win_rate: float
    card_id: Optional[int] = None
    weeks_played: int = 0

    def to_dict(self):
        return asdict(self)


class ScoreAggregator:
    def __init__(self, point_value=None, locks=None):
        self._point_value = point_value
        self.locks = locks or card_locks

    @property
    def point_value(self):
        return self._point_value or get_point_value()

    def card_score(self, card):
        point_value = self.point_value
        return sum(point_value(p) for p in card.picks if p.result == PickResult.WON)

    def recompute_card(self, card_id, commit=True):
        """Rebuild a card's cached total_score from its picks.

        Returns:
            The new total score
        """
        card = db.session.get(Card, card_id)
        if card is None:
            raise CardNotFound(f"Card {card_id} not found")

        with self.locks.hold(card.lock_key, timeout_s=lock_timeout()):
            # Row lock serializes against ledger writes in other processes
            card = (
                Card.query.filter_by(id=card_id)
                .options(selectinload(Card.picks))
                .populate_existing()
                .with_for_update()
                .one()
            )
            score = self.card_score(card)
            completed = bool(card.picks) and all(
                p.result != PickResult.PENDING for p in card.picks
            )

            if card.total_score != score or card.is_completed != completed:
                logger.debug(
                    f"Card {card.id} score {card.total_score} -> {score}, "
                    f"completed={completed}"
                )
                card.total_score = score
                card.is_completed = completed
            card.needs_recompute = False

            db.session.flush()
            if commit:
                db.session.commit()

        invalidate_league_standings(card.league_id)
        return score

    def _rank_cards(self, cards):
        """Weekly order: score descending, then lower user id first"""
        scored = [(self.card_score(card), card) for card in cards]
        scored.sort(key=lambda item: (-item[0], item[1].user_id))
        return scored

    @staticmethod
    def _tally(picks):
        counts = defaultdict(int)
        for pick in picks:
            counts[pick.result] += 1
        return counts

    def _weekly_standings(self, cards) -> List[StandingsEntry]:
        entries = []
        for index, (score, card) in enumerate(self._rank_cards(cards)):
            counts = self._tally(card.picks)
            entries.append(
                StandingsEntry(
                    user_id=card.user_id,
                    rank=index + 1,
                    points=score,
                    wins=counts[PickResult.WON],
                    losses=counts[PickResult.LOST],
                    pushes=counts[PickResult.PUSH],
                    pending=counts[PickResult.PENDING],
                    win_rate=win_rate(counts[PickResult.WON], counts[PickResult.LOST]),
                    card_id=card.id,
                    weeks_played=1,
                )
            )
        return entries

    def _all_time_standings(self, cards) -> List[StandingsEntry]:
        weeks = defaultdict(list)
        for card in cards:
            weeks[(card.season_year, card.week_number)].append(card)

        points = defaultdict(int)
        weeks_played = defaultdict(int)
        for week_cards in weeks.values():
            for index, (_score, card) in enumerate(self._rank_cards(week_cards)):
                points[card.user_id] += ranking_points(index + 1)
                weeks_played[card.user_id] += 1

        # Win rate spans every pick the user made in the league
        tallies = defaultdict(lambda: defaultdict(int))
        for card in cards:
            for result, count in self._tally(card.picks).items():
                tallies[card.user_id][result] += count

        ordered = sorted(points, key=lambda user_id: (-points[user_id], user_id))
        entries = []
        for index, user_id in enumerate(ordered):
            counts = tallies[user_id]
            entries.append(
                StandingsEntry(
                    user_id=user_id,
                    rank=index + 1,
                    points=points[user_id],
                    wins=counts[PickResult.WON],
                    losses=counts[PickResult.LOST],
                    pushes=counts[PickResult.PUSH],
                    pending=counts[PickResult.PENDING],
                    win_rate=win_rate(counts[PickResult.WON], counts[PickResult.LOST]),
                    weeks_played=weeks_played[user_id],
                )
            )
        return entries

    @timer
    def compute_standings(self, league_id, week=ALL_TIME, year=None, use_cache=True):
        """Ranked standings for one league week, or all-time.

        Pure read; safe to call on every request. Ranks are always distinct.
        """
        league = db.session.get(League, league_id)
        if league is None:
            raise LeagueNotFound(f"League {league_id} not found")

        if week != ALL_TIME and year is None:
            weekday, tz = league_week_settings(league)
            year = season_year_for_week(league.created_at, week, weekday, tz)

        scope = ALL_TIME if week == ALL_TIME else f"{year}_{week}"
        cache_key = standings_cache_key(league_id, scope) if use_cache else None
        if cache_key is not None:
            cached = get_cached_standings(cache_key)
            if cached is not None:
                return cached

        query = Card.query.filter_by(league_id=league_id).options(
            selectinload(Card.picks)
        )
        if week == ALL_TIME:
            entries = self._all_time_standings(query.all())
        else:
            cards = query.filter_by(week_number=week, season_year=year).all()
            entries = self._weekly_standings(cards)

        if cache_key is not None:
            set_cached_standings(cache_key, entries)
        return entries

    def weekly_standings(self, league_id, week, year=None):
        return self.compute_standings(league_id, week=week, year=year)

    def all_time_standings(self, league_id):
        return self.compute_standings(league_id, week=ALL_TIME)
