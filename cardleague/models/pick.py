from datetime import datetime, timezone

from cardleague import db

from .enums import BetKind, PickResult, Selection, enum_column_type


class Pick(db.Model):
    __tablename__ = "picks"

    id = db.Column(db.Integer, primary_key=True)

    card_id = db.Column(
        db.Integer, db.ForeignKey("cards.id", ondelete="CASCADE"), nullable=False
    )
    game_id = db.Column(db.Integer, db.ForeignKey("games.id"), nullable=False)

    # Pick details; immutable once the game locks
    bet_kind = db.Column(enum_column_type(db, BetKind), nullable=False)
    selection = db.Column(enum_column_type(db, Selection), nullable=False)
    line = db.Column(db.Float)  # Spread, total or moneyline odds at submission

    # Results (written only by the grading engine)
    result = db.Column(
        enum_column_type(db, PickResult), nullable=False, default=PickResult.PENDING
    )
    graded_revision = db.Column(db.Integer)
    graded_at = db.Column(db.DateTime)

    # Timestamps
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("card_id", "game_id", "bet_kind", name="unique_card_game_kind"),
        db.Index("idx_pick_game", "game_id"),
        db.Index("idx_pick_result", "result"),
    )

    def __repr__(self):
        return (
            f"<Pick card_id={self.card_id} game_id={self.game_id} "
            f"{self.bet_kind.value}:{self.selection.value}@{self.line} {self.result.value}>"
        )

    @property
    def selection_key(self):
        return (self.game_id, self.bet_kind)

    def needs_grading(self, game):
        """Not yet graded under the game's current final outcome"""
        return (
            self.result == PickResult.PENDING
            or self.graded_revision != game.result_revision
        )

    def to_dict(self, is_locked=None):
        data = {
            "id": self.id,
            "card_id": self.card_id,
            "game_id": self.game_id,
            "bet_kind": self.bet_kind.value,
            "selection": self.selection.value,
            "line": self.line,
            "result": self.result.value,
            "graded_at": self.graded_at.isoformat() if self.graded_at else None,
        }
        if is_locked is not None:
            data["is_locked"] = is_locked
        return data
