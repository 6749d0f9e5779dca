from datetime import datetime, timedelta, timezone

import pytest

from cardleague import create_app, db
from cardleague.errors import FeedUnavailable
from cardleague.models import (
    BetKind,
    Card,
    Game,
    GameState,
    League,
    LeagueRole,
    Pick,
    PickResult,
    Selection,
    User,
)
from cardleague.services.game_clock import to_naive_utc
from cardleague.services.game_feed import GameFeed
from cardleague.utils.locks import card_locks

# Wednesday of week 2 for a league created on Monday 2025-09-01
NOW = datetime(2025, 9, 10, 18, 0, tzinfo=timezone.utc)
LEAGUE_CREATED = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)
WEEK = 2
YEAR = 2025


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    card_locks.clear()


@pytest.fixture
def client(app):
    return app.test_client()


class Factory:
    """Builds persisted users, leagues, games and cards for tests"""

    def __init__(self):
        self._game_seq = 0

    def user(self, username):
        user = User(username=username, display_name=username.title())
        db.session.add(user)
        db.session.commit()
        return user

    def league(self, owner, members=(), created_at=LEAGUE_CREATED, **kwargs):
        league = League(
            name=kwargs.pop("name", "Sunday Sharps"),
            created_by=owner.id,
            created_at=to_naive_utc(created_at),
            **kwargs,
        )
        db.session.add(league)
        db.session.flush()
        league.add_member(owner.id, role=LeagueRole.OWNER)
        for member in members:
            league.add_member(member.id)
        db.session.commit()
        return league

    def game(
        self,
        start=NOW + timedelta(days=1),
        state=GameState.SCHEDULED,
        home_score=None,
        away_score=None,
        home_moneyline=-150.0,
        away_moneyline=130.0,
        home_spread=-3.5,
        total_line=45.0,
        external_id=None,
        **kwargs,
    ):
        self._game_seq += 1
        game = Game(
            external_id=external_id or f"evt-{self._game_seq}",
            home_team=kwargs.pop("home_team", f"HOME{self._game_seq}"),
            away_team=kwargs.pop("away_team", f"AWAY{self._game_seq}"),
            scheduled_start=to_naive_utc(start),
            state=state,
            home_score=home_score,
            away_score=away_score,
            home_moneyline=home_moneyline,
            away_moneyline=away_moneyline,
            home_spread=home_spread,
            total_line=total_line,
            **kwargs,
        )
        db.session.add(game)
        db.session.commit()
        return game

    def final_game(self, home_score, away_score, start=NOW - timedelta(hours=4), **kwargs):
        game = self.game(start=start, **kwargs)
        game.record_result(home_score, away_score, GameState.FINAL, as_of=start + timedelta(hours=3))
        db.session.commit()
        return game

    def card(self, user, league, week=WEEK, year=YEAR, results=()):
        """Card whose picks already carry ``results`` (one moneyline pick per result)"""
        card = Card(user_id=user.id, league_id=league.id, week_number=week, season_year=year)
        db.session.add(card)
        db.session.flush()
        for result in results:
            game = self.game(start=NOW - timedelta(days=1))
            card.picks.append(
                Pick(
                    game_id=game.id,
                    bet_kind=BetKind.MONEYLINE,
                    selection=Selection.HOME,
                    line=game.home_moneyline,
                    result=PickResult(result),
                )
            )
        db.session.commit()
        return card


@pytest.fixture
def factory(app):
    return Factory()


@pytest.fixture
def members(factory):
    """Owner plus two members of one league"""
    alice = factory.user("alice")
    bob = factory.user("bob")
    carol = factory.user("carol")
    league = factory.league(alice, members=[bob, carol])
    return league, alice, bob, carol


def pick(game, bet_kind="moneyline", selection="home"):
    return {"game_id": game.id, "bet_kind": bet_kind, "selection": selection}


class FakeFeed(GameFeed):
    """In-memory game feed keyed by external id"""

    def __init__(self, payloads=(), fail=False):
        self.payloads = {p["id"]: p for p in payloads}
        self.fail = fail
        self.requested = []

    def set(self, payload):
        self.payloads[payload["id"]] = payload

    def fetch_games(self, external_ids):
        if self.fail:
            raise FeedUnavailable("feed is down")
        self.requested.append(sorted(external_ids))
        return [self.payloads[i] for i in external_ids if i in self.payloads]

    def fetch_schedule(self):
        if self.fail:
            raise FeedUnavailable("feed is down")
        return list(self.payloads.values())


def final_payload(game, home_score, away_score):
    return {
        "id": game.external_id,
        "home_team": game.home_team,
        "away_team": game.away_team,
        "scheduled_start": game.scheduled_start.isoformat() + "Z",
        "state": "final",
        "home_score": home_score,
        "away_score": away_score,
    }
