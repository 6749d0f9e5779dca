from datetime import datetime, timedelta, timezone

import pytest

from cardleague import db
from cardleague.errors import CardLockTimeout
from cardleague.models import BetKind, Card, GameState, Pick, Selection
from cardleague.utils.locks import CardLockRegistry
from tests.conftest import WEEK, YEAR


def future(days=2):
    return datetime.now(timezone.utc) + timedelta(days=days)


def headers(user):
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def api_members(factory):
    alice = factory.user("alice")
    bob = factory.user("bob")
    league = factory.league(alice, members=[bob], created_at=datetime.now(timezone.utc) - timedelta(days=30))
    return league, alice, bob


def card_body(*games, week=None):
    body = {"picks": [{"game_id": g.id, "bet_kind": "moneyline", "selection": "home"} for g in games]}
    if week is not None:
        body["week"] = week
    return body


class TestCardEndpoints:
    def test_submit_card(self, client, factory, api_members):
        league, alice, _ = api_members
        game = factory.game(start=future())

        response = client.post(
            f"/api/leagues/{league.id}/cards", json=card_body(game), headers=headers(alice)
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data["user_id"] == alice.id
        assert [p["game_id"] for p in data["picks"]] == [game.id]
        assert data["picks"][0]["is_locked"] is False
        assert data["open_slots"] == 4

    def test_busy_card_returns_503(self, client, factory, api_members, monkeypatch):
        league, alice, _ = api_members
        game = factory.game(start=future())

        def busy(self, key, timeout_s=None):
            raise CardLockTimeout(key, timeout_s)

        monkeypatch.setattr(CardLockRegistry, "hold", busy)
        response = client.post(
            f"/api/leagues/{league.id}/cards", json=card_body(game), headers=headers(alice)
        )

        assert response.status_code == 503
        assert response.get_json()["error"] == "card_busy"

    def test_capacity_error_payload(self, client, factory, api_members):
        league, alice, _ = api_members
        games = [factory.game(start=future()) for _ in range(6)]

        response = client.post(
            f"/api/leagues/{league.id}/cards", json=card_body(*games), headers=headers(alice)
        )

        assert response.status_code == 409
        data = response.get_json()
        assert data["error"] == "capacity_exceeded"
        assert (data["locked_count"], data["requested"], data["max_picks"]) == (0, 6, 5)
        assert Card.query.count() == 0

    def test_stale_lock_payload(self, client, factory, api_members):
        league, alice, _ = api_members
        started = factory.game(start=future(), state=GameState.IN_PROGRESS)

        response = client.post(
            f"/api/leagues/{league.id}/cards", json=card_body(started), headers=headers(alice)
        )

        assert response.status_code == 409
        assert response.get_json()["game_ids"] == [started.id]

    def test_duplicate_selection(self, client, factory, api_members):
        league, alice, _ = api_members
        game = factory.game(start=future())
        body = {
            "picks": [
                {"game_id": game.id, "bet_kind": "spread", "selection": "home"},
                {"game_id": game.id, "bet_kind": "spread", "selection": "away"},
            ]
        }
        response = client.post(f"/api/leagues/{league.id}/cards", json=body, headers=headers(alice))
        assert response.status_code == 400
        assert response.get_json()["error"] == "duplicate_selection"

    def test_non_member_forbidden(self, client, factory, api_members):
        league, _, _ = api_members
        outsider = factory.user("mallory")
        response = client.post(
            f"/api/leagues/{league.id}/cards",
            json=card_body(factory.game(start=future())),
            headers=headers(outsider),
        )
        assert response.status_code == 403

    def test_missing_identity(self, client, api_members):
        league, _, _ = api_members
        response = client.post(f"/api/leagues/{league.id}/cards", json={"picks": []})
        assert response.status_code == 403

    def test_unknown_league(self, client, api_members):
        _, alice, _ = api_members
        response = client.post("/api/leagues/999/cards", json={"picks": []}, headers=headers(alice))
        assert response.status_code == 404
        assert response.get_json()["error"] == "league_not_found"

    def test_bad_body(self, client, api_members):
        league, alice, _ = api_members
        response = client.post(
            f"/api/leagues/{league.id}/cards", json={"picks": "all of them"}, headers=headers(alice)
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_pick"

    def test_toggle(self, client, factory, api_members):
        league, alice, _ = api_members
        game = factory.game(start=future())
        body = {"game_id": game.id, "bet_kind": "total", "selection": "over"}
        url = f"/api/leagues/{league.id}/cards/toggle"

        first = client.post(url, json=body, headers=headers(alice)).get_json()
        assert [(p["bet_kind"], p["selection"]) for p in first["picks"]] == [("total", "over")]

        second = client.post(url, json=body, headers=headers(alice)).get_json()
        assert second["picks"] == []

    def test_card_view_and_history(self, client, factory, api_members):
        league, alice, bob = api_members
        game = factory.game(start=future())
        card = client.post(
            f"/api/leagues/{league.id}/cards", json=card_body(game), headers=headers(alice)
        ).get_json()

        view = client.get(f"/api/cards/{card['id']}", headers=headers(bob))
        assert view.status_code == 200
        assert view.get_json()["picks"][0]["game"]["id"] == game.id

        history = client.get(
            f"/api/leagues/{league.id}/cards?user_id={alice.id}", headers=headers(bob)
        ).get_json()
        assert [c["id"] for c in history["cards"]] == [card["id"]]

        assert client.get("/api/cards/999", headers=headers(bob)).status_code == 404


class TestStandingsEndpoints:
    def test_weekly_and_all_time(self, client, factory, api_members):
        league, alice, bob = api_members
        factory.card(alice, league, week=WEEK, year=YEAR, results=["won", "lost"])
        factory.card(bob, league, week=WEEK, year=YEAR, results=["won", "won"])

        weekly = client.get(
            f"/api/leagues/{league.id}/standings/weekly/{WEEK}?year={YEAR}", headers=headers(alice)
        ).get_json()
        assert [(e["user_id"], e["rank"], e["points"]) for e in weekly["standings"]] == [
            (bob.id, 1, 2),
            (alice.id, 2, 1),
        ]

        all_time = client.get(
            f"/api/leagues/{league.id}/standings/all-time", headers=headers(bob)
        ).get_json()
        assert [(e["user_id"], e["points"]) for e in all_time["standings"]] == [
            (bob.id, 10),
            (alice.id, 9),
        ]

    def test_non_member_cannot_read_standings(self, client, factory, api_members):
        league, alice, _ = api_members
        factory.card(alice, league, week=WEEK, year=YEAR, results=["won"])
        outsider = factory.user("mallory")

        for path in (f"standings/weekly/{WEEK}?year={YEAR}", "standings/all-time"):
            response = client.get(f"/api/leagues/{league.id}/{path}", headers=headers(outsider))
            assert response.status_code == 403
            assert response.get_json()["error"] == "not_league_member"
            assert client.get(f"/api/leagues/{league.id}/{path}").status_code == 403

    def test_unknown_league(self, client, api_members):
        _, alice, _ = api_members
        response = client.get("/api/leagues/404/standings/all-time", headers=headers(alice))
        assert response.status_code == 404

    def test_week_zero(self, client, api_members):
        league, alice, _ = api_members
        response = client.get(f"/api/leagues/{league.id}/standings/weekly/0", headers=headers(alice))
        assert response.status_code == 400


class TestWeekEndpoints:
    def test_current_week(self, client, api_members):
        league, alice, _ = api_members
        data = client.get(f"/api/leagues/{league.id}/weeks/current", headers=headers(alice)).get_json()
        assert data["is_current"] is True
        assert data["week"] >= 4
        assert {"starts_at", "ends_at", "label", "season_year"} <= set(data)

    def test_specific_week(self, client, api_members):
        league, _, bob = api_members
        data = client.get(f"/api/leagues/{league.id}/weeks/1", headers=headers(bob)).get_json()
        assert data["week"] == 1
        assert data["is_current"] is False

    def test_non_member_cannot_read_weeks(self, client, factory, api_members):
        league, _, _ = api_members
        outsider = factory.user("mallory")
        for path in ("weeks/current", "weeks/1"):
            response = client.get(f"/api/leagues/{league.id}/{path}", headers=headers(outsider))
            assert response.status_code == 403


class TestSettlementEndpoints:
    def test_run_settlement(self, client, factory, api_members):
        league, alice, _ = api_members
        game = factory.final_game(24, 20, start=datetime.now(timezone.utc) - timedelta(hours=5))
        card = factory.card(alice, league)
        card.picks.append(Pick(game_id=game.id, bet_kind=BetKind.MONEYLINE, selection=Selection.HOME, line=-150.0))
        db.session.commit()

        response = client.post("/api/settlement/run", headers=headers(alice))

        assert response.status_code == 200
        report = response.get_json()
        assert report["picks_graded"] == 1
        assert report["cards_updated"] == 1

    def test_status(self, client, app):
        data = client.get("/api/settlement/status").get_json()
        assert data["is_running"] is False
        assert "last_report" in data["stats"]
        assert data["cache"]["type"] == "SimpleCache"
