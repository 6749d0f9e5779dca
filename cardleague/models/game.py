from datetime import datetime, timezone

from cardleague import db

from .enums import BetKind, GameState, Selection, enum_column_type

STATE_ORDER = {GameState.SCHEDULED: 0, GameState.IN_PROGRESS: 1, GameState.FINAL: 2}


class Game(db.Model):
    __tablename__ = "games"

    id = db.Column(db.Integer, primary_key=True)

    # External ID for feed integration
    external_id = db.Column(db.String(64), unique=True, index=True)

    # Participants
    home_team = db.Column(db.String(64), nullable=False)
    away_team = db.Column(db.String(64), nullable=False)

    # Game timing
    scheduled_start = db.Column(db.DateTime, nullable=False)

    # Game status
    state = db.Column(
        enum_column_type(db, GameState), nullable=False, default=GameState.SCHEDULED
    )

    # Scores
    home_score = db.Column(db.Integer)
    away_score = db.Column(db.Integer)

    # Current lines offered for new picks (captured onto picks at submission)
    home_moneyline = db.Column(db.Float)
    away_moneyline = db.Column(db.Float)
    home_spread = db.Column(db.Float)  # Negative = home team favored
    total_line = db.Column(db.Float)

    # Bumped every time a final outcome is recorded or corrected
    result_revision = db.Column(db.Integer, nullable=False, default=0)
    finalized_at = db.Column(db.DateTime)

    # Timestamps
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    picks = db.relationship(
        "Pick", backref="game", lazy="dynamic", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.Index("idx_game_start", "scheduled_start"),
        db.Index("idx_game_state", "state"),
        db.CheckConstraint("home_team != away_team", name="different_teams"),
    )

    def __repr__(self):
        return f"<Game {self.away_team} @ {self.home_team} {self.state.value if self.state else 'unknown'}>"

    @property
    def is_final(self):
        return self.state == GameState.FINAL

    @property
    def has_outcome(self):
        """Final scores are present and usable"""
        return (
            isinstance(self.home_score, int)
            and isinstance(self.away_score, int)
            and self.home_score >= 0
            and self.away_score >= 0
        )

    @property
    def winning_side(self):
        """HOME or AWAY (None if not final, no outcome, or tie)"""
        if not self.is_final or not self.has_outcome:
            return None
        if self.home_score == self.away_score:
            return None
        return Selection.HOME if self.home_score > self.away_score else Selection.AWAY

    @property
    def is_tie(self):
        return self.is_final and self.has_outcome and self.home_score == self.away_score

    @property
    def total_score(self):
        """Get total combined score"""
        if self.home_score is None or self.away_score is None:
            return None
        return self.home_score + self.away_score

    def score_for(self, side):
        if side == Selection.HOME:
            return self.home_score
        if side == Selection.AWAY:
            return self.away_score
        return None

    def opponent_score(self, side):
        if side == Selection.HOME:
            return self.away_score
        if side == Selection.AWAY:
            return self.home_score
        return None

    def current_line(self, bet_kind, selection):
        """Line currently offered for a selection, or None when not offered"""
        if bet_kind == BetKind.MONEYLINE:
            return self.home_moneyline if selection == Selection.HOME else self.away_moneyline
        if bet_kind == BetKind.SPREAD:
            if self.home_spread is None:
                return None
            return self.home_spread if selection == Selection.HOME else -self.home_spread
        if bet_kind == BetKind.TOTAL:
            return self.total_line
        return None

    def is_locked(self, as_of=None):
        """Picks against this game can no longer change"""
        from cardleague.services.game_clock import is_locked

        return is_locked(self, as_of or datetime.now(timezone.utc))

    def accepts_state(self, state):
        """A game only moves forward: SCHEDULED -> IN_PROGRESS -> FINAL"""
        current = GameState(self.state or GameState.SCHEDULED)
        return STATE_ORDER[GameState(state)] >= STATE_ORDER[current]

    def record_result(self, home_score, away_score, state, as_of=None):
        """Apply a state/score update from the feed.

        A transition into FINAL, or a changed final score (a correction),
        bumps ``result_revision`` so affected picks get regraded.

        Raises:
            ValueError: the update would move the game back to an earlier state

        Returns:
            True if anything changed
        """
        as_of = as_of or datetime.now(timezone.utc)
        state = GameState(state)
        if not self.accepts_state(state):
            raise ValueError(f"Game {self.id} cannot move from {self.state.value} to {state.value}")

        score_changed = (
            home_score is not None
            and away_score is not None
            and (self.home_score != home_score or self.away_score != away_score)
        )
        state_changed = state != self.state

        if not score_changed and not state_changed:
            return False

        was_final = self.is_final

        if home_score is not None:
            self.home_score = home_score
        if away_score is not None:
            self.away_score = away_score
        self.state = state

        if state == GameState.FINAL and (not was_final or score_changed):
            self.result_revision = (self.result_revision or 0) + 1
            self.finalized_at = as_of

        return True

    def to_dict(self, as_of=None):
        return {
            "id": self.id,
            "external_id": self.external_id,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "scheduled_start": (
                self.scheduled_start.isoformat() if self.scheduled_start else None
            ),
            "state": self.state.value if self.state else None,
            "home_score": self.home_score,
            "away_score": self.away_score,
            "lines": {
                "home_moneyline": self.home_moneyline,
                "away_moneyline": self.away_moneyline,
                "home_spread": self.home_spread,
                "total": self.total_line,
            },
            "result_revision": self.result_revision,
            "is_locked": self.is_locked(as_of),
        }
