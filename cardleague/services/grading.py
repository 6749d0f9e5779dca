"""
Grading engine: turns final game outcomes into pick results.

A pick is graded at most once per game result revision. Re-running the
engine over the same outcomes changes nothing; a corrected outcome (a new
revision) re-evaluates every pick on the game and may flip a result.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List

from flask import current_app, has_app_context

from cardleague.errors import UngradeableOutcome
from cardleague.models import BetKind, PickResult, Selection
from cardleague.models.enums import VALID_SELECTIONS

logger = logging.getLogger(__name__)

TIE_POLICIES = ("push", "loss")


def _compare(value):
    if value > 0:
        return PickResult.WON
    if value < 0:
        return PickResult.LOST
    return PickResult.PUSH


def grade_pick(pick, game, tie_policy="push"):
    """Result of ``pick`` under the game's stored outcome.

    Returns PENDING for games that are not final yet.

    Raises:
        UngradeableOutcome: the final score is missing or malformed, or the
            pick carries no line or a selection its bet kind cannot take
    """
    if not game.is_final:
        return PickResult.PENDING

    if not game.has_outcome:
        raise UngradeableOutcome(game.id, "missing or malformed final score", pick.id)

    bet_kind = BetKind(pick.bet_kind)
    selection = Selection(pick.selection)
    if selection not in VALID_SELECTIONS[bet_kind]:
        raise UngradeableOutcome(
            game.id, f"selection {selection.value} is not valid for {bet_kind.value}", pick.id
        )

    if bet_kind == BetKind.MONEYLINE:
        if game.is_tie:
            return PickResult.LOST if tie_policy == "loss" else PickResult.PUSH
        return PickResult.WON if selection == game.winning_side else PickResult.LOST

    if pick.line is None:
        raise UngradeableOutcome(game.id, f"{bet_kind.value} pick has no line", pick.id)

    if bet_kind == BetKind.SPREAD:
        margin = game.score_for(selection) - game.opponent_score(selection)
        return _compare(margin + pick.line)

    # TOTAL
    difference = game.total_score - pick.line
    if selection == Selection.UNDER:
        difference = -difference
    return _compare(difference)


@dataclass
class GradedPick:
    pick_id: int
    card_id: int
    game_id: int
    previous: PickResult
    result: PickResult

    @property
    def changed(self):
        return self.previous != self.result


@dataclass
class GradingOutcome:
    graded: List[GradedPick] = field(default_factory=list)
    skipped_games: List[int] = field(default_factory=list)
    errors: List[UngradeableOutcome] = field(default_factory=list)

    @property
    def changed(self):
        return [g for g in self.graded if g.changed]

    @property
    def touched_card_ids(self):
        return sorted({g.card_id for g in self.changed})

    def merge(self, other):
        self.graded.extend(other.graded)
        self.skipped_games.extend(other.skipped_games)
        self.errors.extend(other.errors)
        return self


class GradingEngine:
    def __init__(self, tie_policy=None, clock=None):
        if tie_policy is None:
            tie_policy = (
                current_app.config.get("MONEYLINE_TIE_POLICY", "push")
                if has_app_context()
                else "push"
            )
        if tie_policy not in TIE_POLICIES:
            raise ValueError(f"Unknown moneyline tie policy: {tie_policy}")
        self.tie_policy = tie_policy
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def grade_game(self, game):
        """Grade every pick on one game that is not graded under its current revision"""
        outcome = GradingOutcome()

        if not game.is_final:
            outcome.skipped_games.append(game.id)
            return outcome

        if not game.has_outcome:
            error = UngradeableOutcome(game.id, "missing or malformed final score")
            logger.warning(f"Skipping game {game.id}: {error.message}")
            outcome.errors.append(error)
            return outcome

        graded_at = self.clock()
        for pick in game.picks:
            if not pick.needs_grading(game):
                continue

            previous = pick.result
            try:
                result = grade_pick(pick, game, self.tie_policy)
            except UngradeableOutcome as error:
                logger.warning(f"Pick {pick.id} left pending: {error.message}")
                outcome.errors.append(error)
                continue

            pick.result = result
            pick.graded_revision = game.result_revision
            pick.graded_at = graded_at
            outcome.graded.append(
                GradedPick(
                    pick_id=pick.id,
                    card_id=pick.card_id,
                    game_id=game.id,
                    previous=previous,
                    result=result,
                )
            )

            if previous not in (PickResult.PENDING, result):
                logger.info(
                    f"Pick {pick.id} regraded {previous.value} -> {result.value} "
                    f"(game {game.id} revision {game.result_revision})"
                )

        return outcome

    def grade_picks(self, finalized_games):
        """Grade the picks on a batch of games.

        Games that are not final are reported in ``skipped_games``; an
        ungradeable game or pick is reported in ``errors`` and never blocks
        the rest of the batch.
        """
        outcome = GradingOutcome()
        for game in finalized_games:
            outcome.merge(self.grade_game(game))

        logger.debug(
            f"Graded {len(outcome.graded)} picks ({len(outcome.changed)} changed), "
            f"{len(outcome.skipped_games)} games skipped, {len(outcome.errors)} errors"
        )
        return outcome
