"""
Settlement orchestrator.

One pass refreshes game state from the feed, grades every final game that
has picks not graded under its current result revision, recomputes the
cards flagged by that grading (or left flagged by an earlier failed
recompute) and invalidates the affected leagues' standings.
Passes are safe to repeat: grading is idempotent and card recomputation is
a full re-derivation.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from flask import current_app, has_app_context
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from cardleague import db
from cardleague.errors import FeedUnavailable, GameNotFound, UngradeableOutcome
from cardleague.models import Card, Game, GameState, Pick, PickResult
from cardleague.services.game_clock import ensure_utc, to_naive_utc
from cardleague.services.game_feed import apply_feed_update
from cardleague.services.grading import GradingEngine, GradingOutcome
from cardleague.services.scoring import ScoreAggregator
from cardleague.utils.cache_utils import invalidate_league_standings
from cardleague.utils.performance import PerformanceMonitor

logger = logging.getLogger(__name__)


@dataclass
class SettlementReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    feed_available: bool = True
    games_refreshed: int = 0
    games_considered: int = 0
    picks_graded: int = 0
    picks_changed: int = 0
    picks_skipped: int = 0
    cards_updated: int = 0
    errors: List[dict] = field(default_factory=list)
    timings: dict = field(default_factory=dict)

    def add_error(self, error):
        if hasattr(error, "to_dict"):
            self.errors.append(error.to_dict())
        else:
            self.errors.append({"error": error.__class__.__name__, "message": str(error)})

    def to_dict(self):
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "feed_available": self.feed_available,
            "games_refreshed": self.games_refreshed,
            "games_considered": self.games_considered,
            "picks_graded": self.picks_graded,
            "picks_changed": self.picks_changed,
            "picks_skipped": self.picks_skipped,
            "cards_updated": self.cards_updated,
            "errors": self.errors,
            "timings": self.timings,
        }


class SettlementService:
    def __init__(self, feed=None, grading=None, aggregator=None, clock=None):
        self.feed = feed
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.grading = grading or GradingEngine(clock=self.clock)
        self.aggregator = aggregator or ScoreAggregator()

    @property
    def correction_window(self):
        hours = 72
        if has_app_context():
            hours = current_app.config.get("RESULT_CORRECTION_WINDOW_HOURS", 72)
        return timedelta(hours=hours)

    def _games_to_refresh(self, now):
        """Started games not yet final, plus finals still open to correction"""
        cutoff = to_naive_utc(now - self.correction_window)
        return (
            Game.query.filter(Game.external_id.isnot(None))
            .filter(
                or_(
                    and_(
                        Game.state != GameState.FINAL,
                        or_(
                            Game.state == GameState.IN_PROGRESS,
                            Game.scheduled_start <= to_naive_utc(now),
                        ),
                    ),
                    and_(Game.state == GameState.FINAL, Game.finalized_at >= cutoff),
                )
            )
            .all()
        )

    def refresh_games(self, now, report):
        if self.feed is None:
            return

        games = self._games_to_refresh(now)
        if not games:
            return

        try:
            payloads = self.feed.fetch_games([g.external_id for g in games])
        except FeedUnavailable as e:
            logger.warning(f"Game feed unavailable, grading stored results only: {e}")
            report.feed_available = False
            report.add_error(e)
            return

        try:
            update = apply_feed_update(payloads, now=now)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to store feed update: {e}", exc_info=True)
            report.add_error(e)
            return

        report.games_refreshed = len(update.updated)
        if update.newly_final or update.corrected:
            logger.info(
                f"Feed refresh: {len(update.newly_final)} newly final, "
                f"{len(update.corrected)} corrected"
            )

    @staticmethod
    def games_awaiting_grading():
        """Final games with picks pending or graded under an older revision"""
        stale_pick = or_(
            Pick.result == PickResult.PENDING,
            Pick.graded_revision.is_(None),
            Pick.graded_revision != Game.result_revision,
        )
        return (
            Game.query.filter(Game.state == GameState.FINAL)
            .filter(Game.picks.any(stale_pick))
            .order_by(Game.scheduled_start, Game.id)
            .all()
        )

    def _grade_game(self, game, report):
        """Grade one game inside its own savepoint.

        Cards whose picks changed are flagged for recompute in the same
        savepoint, so a recompute that fails later is retried next pass.
        """
        try:
            with db.session.begin_nested():
                outcome = self.grading.grade_picks([game])
                for card_id in outcome.touched_card_ids:
                    db.session.get(Card, card_id).needs_recompute = True
        except SQLAlchemyError as e:
            logger.error(f"Grading game {game.id} failed: {e}", exc_info=True)
            report.add_error(e)
            return GradingOutcome()

        report.picks_graded += len(outcome.graded)
        report.picks_changed += len(outcome.changed)
        report.picks_skipped += len(outcome.errors)
        for error in outcome.errors:
            report.add_error(error)
        return outcome

    @staticmethod
    def cards_awaiting_recompute():
        return [
            card_id
            for (card_id,) in db.session.query(Card.id)
            .filter(Card.needs_recompute.is_(True))
            .order_by(Card.id)
        ]

    def _recompute_cards(self, report):
        """Recompute every flagged card; failures stay flagged for the next pass"""
        league_ids = set()
        for card_id in self.cards_awaiting_recompute():
            try:
                self.aggregator.recompute_card(card_id)
                report.cards_updated += 1
            except Exception as e:
                db.session.rollback()
                logger.error(f"Recomputing card {card_id} failed: {e}", exc_info=True)
                report.add_error(e)
                continue
            card = db.session.get(Card, card_id)
            if card is not None:
                league_ids.add(card.league_id)

        for league_id in league_ids:
            invalidate_league_standings(league_id)

    def run_settlement_pass(self, now=None):
        """Refresh, grade, recompute. Never raises for per-game or per-card failures."""
        now = ensure_utc(now or self.clock())
        report = SettlementReport(started_at=now)
        started = time.time()

        with PerformanceMonitor("settlement_refresh") as monitor:
            self.refresh_games(now, report)
        report.timings["refresh"] = round(monitor.duration, 3)

        with PerformanceMonitor("settlement_grading") as monitor:
            games = self.games_awaiting_grading()
            report.games_considered = len(games)
            for game in games:
                self._grade_game(game, report)
            db.session.commit()
        report.timings["grading"] = round(monitor.duration, 3)

        with PerformanceMonitor("settlement_recompute") as monitor:
            self._recompute_cards(report)
        report.timings["recompute"] = round(monitor.duration, 3)

        report.timings["total"] = round(time.time() - started, 3)
        report.finished_at = ensure_utc(self.clock())

        logger.info(
            f"Settlement pass: {report.games_considered} games, "
            f"{report.picks_graded} picks graded ({report.picks_changed} changed, "
            f"{report.picks_skipped} skipped), {report.cards_updated} cards updated, "
            f"{len(report.errors)} errors in {report.timings['total']}s"
        )
        return report

    def regrade_game(self, game_id, now=None):
        """Force every pick on a final game to be graded again.

        Used for corrections that arrive after the automatic correction
        window has closed.
        """
        now = ensure_utc(now or self.clock())
        game = db.session.get(Game, game_id)
        if game is None:
            raise GameNotFound(f"Game {game_id} not found")
        if not game.is_final:
            raise UngradeableOutcome(game.id, "game is not final")

        report = SettlementReport(started_at=now, games_considered=1)
        for pick in game.picks:
            pick.graded_revision = None
        db.session.flush()

        self._grade_game(game, report)
        db.session.commit()
        self._recompute_cards(report)

        report.finished_at = ensure_utc(self.clock())
        logger.info(
            f"Regraded game {game.id}: {report.picks_graded} picks, "
            f"{report.picks_changed} changed"
        )
        return report


def build_settlement_service(app):
    """Settlement service wired to the app's configured feed"""
    from cardleague.services.game_feed import build_game_feed

    return SettlementService(feed=build_game_feed(app.config))
