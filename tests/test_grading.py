from datetime import datetime, timezone

import pytest

from cardleague import db
from cardleague.errors import UngradeableOutcome
from cardleague.models import BetKind, Game, GameState, Pick, PickResult, Selection
from cardleague.services.grading import GradingEngine, grade_pick
from tests.conftest import NOW


def final(home_score, away_score, state=GameState.FINAL):
    return Game(
        id=1,
        home_team="KC",
        away_team="BUF",
        scheduled_start=datetime(2025, 9, 7, 17, 0),
        state=state,
        home_score=home_score,
        away_score=away_score,
        result_revision=1,
    )


def bet(bet_kind, selection, line=None):
    return Pick(id=10, bet_kind=BetKind(bet_kind), selection=Selection(selection), line=line)


class TestGradePick:
    def test_moneyline(self):
        game = final(27, 20)
        assert grade_pick(bet("moneyline", "home", -150), game) == PickResult.WON
        assert grade_pick(bet("moneyline", "away", 130), game) == PickResult.LOST

    def test_moneyline_tie_policy(self):
        game = final(20, 20)
        assert grade_pick(bet("moneyline", "home", -150), game) == PickResult.PUSH
        assert grade_pick(bet("moneyline", "home", -150), game, "loss") == PickResult.LOST

    def test_spread_underdog_covers(self):
        # +3.5 on a team that loses by 2
        game = final(24, 22)
        assert grade_pick(bet("spread", "away", 3.5), game) == PickResult.WON
        assert grade_pick(bet("spread", "home", -3.5), game) == PickResult.LOST

    def test_spread_push_on_whole_number(self):
        game = final(24, 21)
        assert grade_pick(bet("spread", "home", -3.0), game) == PickResult.PUSH
        assert grade_pick(bet("spread", "away", 3.0), game) == PickResult.PUSH

    def test_total_on_the_number_pushes(self):
        game = final(24, 21)
        assert grade_pick(bet("total", "under", 45.0), game) == PickResult.PUSH
        assert grade_pick(bet("total", "over", 45.0), game) == PickResult.PUSH

    def test_total(self):
        game = final(31, 20)
        assert grade_pick(bet("total", "over", 45.5), game) == PickResult.WON
        assert grade_pick(bet("total", "under", 45.5), game) == PickResult.LOST

    def test_unfinished_game_stays_pending(self):
        game = final(14, 10, state=GameState.IN_PROGRESS)
        assert grade_pick(bet("moneyline", "home", -150), game) == PickResult.PENDING

    def test_missing_score_is_ungradeable(self):
        with pytest.raises(UngradeableOutcome) as exc:
            grade_pick(bet("moneyline", "home", -150), final(None, 17))
        assert exc.value.game_id == 1
        assert exc.value.pick_id == 10

    def test_missing_line_is_ungradeable(self):
        with pytest.raises(UngradeableOutcome):
            grade_pick(bet("spread", "home"), final(24, 21))

    def test_impossible_selection_is_ungradeable(self):
        with pytest.raises(UngradeableOutcome):
            grade_pick(bet("total", "home", 45.0), final(24, 21))

    def test_unknown_tie_policy(self, app):
        with pytest.raises(ValueError):
            GradingEngine(tie_policy="coin_flip")


class TestGradingEngine:
    @pytest.fixture
    def engine(self, app):
        return GradingEngine(clock=lambda: NOW)

    @pytest.fixture
    def graded_setup(self, factory, members):
        league, alice, bob, _ = members
        game = factory.game(start=NOW, home_spread=-3.5)
        card_a = factory.card(alice, league)
        card_b = factory.card(bob, league)
        card_a.picks.append(Pick(game_id=game.id, bet_kind=BetKind.SPREAD, selection=Selection.AWAY, line=3.5))
        card_b.picks.append(Pick(game_id=game.id, bet_kind=BetKind.MONEYLINE, selection=Selection.HOME, line=-150.0))
        db.session.commit()
        return game, card_a, card_b

    def test_non_final_games_are_skipped(self, engine, graded_setup):
        game, _, _ = graded_setup
        outcome = engine.grade_picks([game])
        assert outcome.skipped_games == [game.id]
        assert outcome.graded == []

    def test_grades_once_per_revision(self, engine, graded_setup):
        game, card_a, card_b = graded_setup
        game.record_result(24, 22, GameState.FINAL, NOW)
        db.session.commit()

        first = engine.grade_picks([game])
        db.session.commit()
        results = {g.card_id: g.result for g in first.graded}
        assert results == {card_a.id: PickResult.WON, card_b.id: PickResult.WON}
        assert all(g.changed for g in first.graded)
        assert first.touched_card_ids == sorted([card_a.id, card_b.id])

        second = engine.grade_picks([game])
        assert second.graded == []

        pick = card_a.picks[0]
        assert pick.graded_revision == game.result_revision == 1
        assert pick.graded_at is not None

    def test_correction_regrades(self, engine, graded_setup):
        game, card_a, card_b = graded_setup
        game.record_result(24, 22, GameState.FINAL, NOW)
        engine.grade_picks([game])
        db.session.commit()

        game.record_result(20, 22, GameState.FINAL, NOW)
        db.session.commit()
        assert game.result_revision == 2

        outcome = engine.grade_picks([game])
        db.session.commit()
        by_card = {g.card_id: g for g in outcome.graded}
        # Away +3.5 still covers; home moneyline now loses
        assert by_card[card_a.id].result == PickResult.WON
        assert not by_card[card_a.id].changed
        assert by_card[card_b.id].previous == PickResult.WON
        assert by_card[card_b.id].result == PickResult.LOST
        assert outcome.touched_card_ids == [card_b.id]

    def test_ungradeable_pick_does_not_block_batch(self, engine, factory, members):
        league, alice, _, _ = members
        bad = factory.game(start=NOW)
        good = factory.game(start=NOW)
        card = factory.card(alice, league)
        card.picks.append(Pick(game_id=bad.id, bet_kind=BetKind.TOTAL, selection=Selection.OVER, line=None))
        card.picks.append(Pick(game_id=good.id, bet_kind=BetKind.TOTAL, selection=Selection.OVER, line=40.5))
        bad.record_result(30, 20, GameState.FINAL, NOW)
        good.record_result(30, 20, GameState.FINAL, NOW)
        db.session.commit()

        outcome = engine.grade_picks([bad, good])

        assert [e.game_id for e in outcome.errors] == [bad.id]
        assert [(g.game_id, g.result) for g in outcome.graded] == [(good.id, PickResult.WON)]
        assert card.picks[0].result == PickResult.PENDING

    def test_final_without_scores_is_reported(self, engine, factory):
        game = factory.game(start=NOW, state=GameState.FINAL)
        outcome = engine.grade_picks([game])
        assert len(outcome.errors) == 1
        assert outcome.errors[0].reason == "missing or malformed final score"
