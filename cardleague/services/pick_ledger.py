"""
Pick ledger: submission and editing of weekly cards.

Every submission is checked against the game clock twice: once when the
card is partitioned into locked and editable picks, and again right before
the write, so a game that starts mid-request is never edited.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from cardleague import db
from cardleague.errors import (
    CapacityExceeded,
    CardLeagueError,
    CardNotFound,
    DuplicateSelection,
    InvalidPick,
    LeagueNotFound,
    NotLeagueMember,
    StaleLockState,
)
from cardleague.models import BetKind, Card, Game, League, Pick, Selection
from cardleague.models.enums import VALID_SELECTIONS
from cardleague.services.game_clock import (
    ensure_utc,
    is_locked,
    league_current_week,
    league_week_settings,
    season_year_for_week,
)
from cardleague.services.scoring import ScoreAggregator
from cardleague.utils.cache_utils import invalidate_league_standings
from cardleague.utils.locks import card_locks, lock_timeout

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PickRequest:
    game_id: int
    bet_kind: BetKind
    selection: Selection

    @property
    def selection_key(self):
        return (self.game_id, self.bet_kind)

    @classmethod
    def from_mapping(cls, data):
        try:
            game_id = int(data["game_id"])
            bet_kind = BetKind(str(data["bet_kind"]).lower())
            selection = Selection(str(data["selection"]).lower())
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidPick(f"Malformed pick {data!r}: {e}")

        if selection not in VALID_SELECTIONS[bet_kind]:
            raise InvalidPick(
                f"Selection {selection.value} is not valid for {bet_kind.value}",
                game_id=game_id,
            )
        return cls(game_id, bet_kind, selection)


def normalize_picks(desired_picks):
    """Apply toggle semantics to a submission.

    An exact (game, kind, selection) repeated an even number of times
    cancels out. Two different selections left on one game and bet kind
    are a conflict.

    Raises:
        InvalidPick: a pick is malformed
        DuplicateSelection: conflicting selections on one game and bet kind
    """
    occurrences = OrderedDict()
    for data in desired_picks or []:
        request = data if isinstance(data, PickRequest) else PickRequest.from_mapping(data)
        occurrences[request] = occurrences.get(request, 0) + 1

    kept = [request for request, count in occurrences.items() if count % 2 == 1]

    seen = set()
    for request in kept:
        if request.selection_key in seen:
            raise DuplicateSelection(request.game_id, request.bet_kind.value)
        seen.add(request.selection_key)
    return kept


class PickLedger:
    def __init__(self, clock=None, aggregator=None, locks=None, max_picks=None):
        self.clock = clock or _utcnow
        self.aggregator = aggregator or ScoreAggregator(locks=locks)
        self.locks = locks or card_locks
        self._max_picks = max_picks

    @property
    def max_picks(self):
        if self._max_picks is not None:
            return self._max_picks
        if has_app_context():
            return current_app.config.get("MAX_PICKS", 5)
        return 5

    # Lookups

    def _get_league(self, league_id):
        league = db.session.get(League, league_id)
        if league is None:
            raise LeagueNotFound(f"League {league_id} not found")
        return league

    def _get_league_for_member(self, user_id, league_id):
        league = self._get_league(league_id)
        if not league.is_user_member(user_id):
            raise NotLeagueMember(
                f"User {user_id} is not a member of league {league_id}",
                user_id=user_id,
                league_id=league_id,
            )
        return league

    def resolve_week(self, league, week=None, year=None, now=None):
        """(week, season year) for a request, defaulting to the league's current week"""
        if week is None:
            week = league_current_week(league, ensure_utc(now or self.clock()))
        week = int(week)
        if week < 1:
            raise InvalidPick(f"Week numbers start at 1, got {week}", week=week)
        if year is None:
            weekday, tz = league_week_settings(league)
            year = season_year_for_week(league.created_at, week, weekday, tz)
        return week, int(year)

    def _find_card(self, user_id, league_id, week, year, for_update=False):
        query = Card.query.filter_by(
            user_id=user_id, league_id=league_id, week_number=week, season_year=year
        )
        if for_update:
            query = query.populate_existing().with_for_update()
        return query.first()

    def _create_card(self, user_id, league_id, week, year):
        card = Card(user_id=user_id, league_id=league_id, week_number=week, season_year=year)
        try:
            with db.session.begin_nested():
                db.session.add(card)
        except IntegrityError:
            # Another writer created the card first
            logger.info(
                f"Card for user {user_id} league {league_id} week {week}/{year} "
                "created concurrently, using existing row"
            )
            card = self._find_card(user_id, league_id, week, year, for_update=True)
        return card

    def _load_games(self, requests):
        game_ids = {r.game_id for r in requests}
        if not game_ids:
            return {}
        games = {g.id: g for g in Game.query.filter(Game.id.in_(game_ids)).all()}
        missing = sorted(game_ids - set(games))
        if missing:
            raise InvalidPick(f"Unknown games: {missing}", game_ids=missing)
        return games

    # Operations

    def submit_or_edit_card(
        self, user_id, league_id, week=None, year=None, desired_picks=None, now=None
    ):
        """Replace the editable picks on a user's card with ``desired_picks``.

        Locked picks are kept whatever the caller sends; desired picks on a
        game the card already holds a locked pick for are dropped.

        Raises:
            LeagueNotFound, NotLeagueMember, InvalidPick, DuplicateSelection,
            StaleLockState, CapacityExceeded
        """
        explicit_now = now is not None
        now = ensure_utc(now or self.clock())

        league = self._get_league_for_member(user_id, league_id)
        week, year = self.resolve_week(league, week, year, now)
        requests = normalize_picks(desired_picks)
        games = self._load_games(requests)

        lock_key = (user_id, league_id, week, year)
        with self.locks.hold(lock_key, timeout_s=lock_timeout()):
            try:
                card = self._apply(
                    user_id, league_id, week, year, requests, games, now, explicit_now
                )
            except (CardLeagueError, SQLAlchemyError):
                db.session.rollback()
                raise

        invalidate_league_standings(league_id)
        return card

    def _apply(self, user_id, league_id, week, year, requests, games, now, explicit_now):
        card = self._find_card(user_id, league_id, week, year, for_update=True)
        existing = list(card.picks) if card else []

        locked = [p for p in existing if is_locked(p.game, now)]
        editable = [p for p in existing if not is_locked(p.game, now)]

        locked_game_ids = {p.game_id for p in locked}
        dropped = [r for r in requests if r.game_id in locked_game_ids]
        if dropped:
            logger.info(
                f"Ignoring {len(dropped)} picks on locked games for user {user_id} "
                f"league {league_id} week {week}"
            )
        requests = [r for r in requests if r.game_id not in locked_game_ids]

        stale = [r.game_id for r in requests if is_locked(games[r.game_id], now)]
        if stale:
            raise StaleLockState(stale)

        if len(locked) + len(requests) > self.max_picks:
            raise CapacityExceeded(len(locked), len(requests), self.max_picks)

        lines = {}
        for request in requests:
            line = games[request.game_id].current_line(request.bet_kind, request.selection)
            if line is None:
                raise InvalidPick(
                    f"Game {request.game_id} offers no {request.bet_kind.value} line",
                    game_id=request.game_id,
                    bet_kind=request.bet_kind.value,
                )
            lines[request] = line

        # Write-time re-check against fresh game state, including the games of
        # picks this write would delete
        recheck_at = now if explicit_now else ensure_utc(self.clock())
        checked = dict(games)
        for pick in editable:
            checked.setdefault(pick.game_id, pick.game)
        for game in checked.values():
            db.session.refresh(game)
        stale = [r.game_id for r in requests if is_locked(games[r.game_id], recheck_at)]
        stale += [p.game_id for p in editable if is_locked(p.game, recheck_at)]
        if stale:
            logger.warning(f"Games {stale} locked during submission by user {user_id}")
            raise StaleLockState(stale)

        if card is None:
            card = self._create_card(user_id, league_id, week, year)

        for pick in editable:
            card.picks.remove(pick)
        db.session.flush()

        for request in requests:
            card.picks.append(
                Pick(
                    game_id=request.game_id,
                    bet_kind=request.bet_kind,
                    selection=request.selection,
                    line=lines[request],
                )
            )
        db.session.flush()

        self.aggregator.recompute_card(card.id, commit=False)
        db.session.commit()

        logger.info(
            f"Card {card.id} saved for user {user_id} league {league_id} week {week}/{year}: "
            f"{len(locked)} locked, {len(requests)} open picks"
        )
        return card

    def toggle_pick(
        self, user_id, league_id, game_id, bet_kind, selection, week=None, year=None, now=None
    ):
        """Select or deselect one pick on the user's card.

        Picking the current selection removes it; picking the other side of
        the same game and bet kind switches to it.
        """
        as_of = ensure_utc(now or self.clock())
        league = self._get_league_for_member(user_id, league_id)
        week, year = self.resolve_week(league, week, year, as_of)
        target = PickRequest.from_mapping(
            {"game_id": game_id, "bet_kind": bet_kind, "selection": selection}
        )

        game = db.session.get(Game, target.game_id)
        if game is None:
            raise InvalidPick(f"Unknown game {target.game_id}", game_id=target.game_id)
        if is_locked(game, as_of):
            raise StaleLockState([game.id])

        card = self._find_card(user_id, league_id, week, year)
        desired = []
        replaced = False
        for pick in card.picks if card else []:
            if is_locked(pick.game, as_of):
                continue
            if pick.selection_key == target.selection_key:
                replaced = True
                if pick.selection != target.selection:
                    desired.append(target)
                continue
            desired.append(PickRequest(pick.game_id, pick.bet_kind, pick.selection))
        if not replaced:
            desired.append(target)

        return self.submit_or_edit_card(
            user_id, league_id, week=week, year=year, desired_picks=desired, now=now
        )

    def get_card_view(self, card_id, now=None):
        """Card with its picks, lock flags and score"""
        now = ensure_utc(now or self.clock())
        card = db.session.get(Card, card_id)
        if card is None:
            raise CardNotFound(f"Card {card_id} not found")

        picks = []
        locked_count = 0
        for pick in card.picks:
            locked = is_locked(pick.game, now)
            locked_count += locked
            data = pick.to_dict(is_locked=locked)
            data["game"] = pick.game.to_dict(as_of=now)
            picks.append(data)

        view = card.to_dict()
        view.update(
            {
                "picks": picks,
                "locked_count": locked_count,
                "max_picks": self.max_picks,
                "open_slots": max(0, self.max_picks - len(card.picks)),
            }
        )
        return view

    def get_card_for_week(self, user_id, league_id, week=None, year=None, now=None):
        league = self._get_league(league_id)
        week, year = self.resolve_week(league, week, year, now)
        return self._find_card(user_id, league_id, week, year)

    def get_card_history(self, user_id, league_id):
        """All of a user's cards in a league, newest week first"""
        self._get_league(league_id)
        return (
            Card.query.filter_by(user_id=user_id, league_id=league_id)
            .order_by(Card.season_year.desc(), Card.week_number.desc())
            .all()
        )
