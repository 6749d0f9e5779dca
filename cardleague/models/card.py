from datetime import datetime, timezone

from cardleague import db

from .enums import PickResult


class Card(db.Model):
    """A user's picks for one league week"""

    __tablename__ = "cards"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    league_id = db.Column(
        db.Integer, db.ForeignKey("leagues.id", ondelete="CASCADE"), nullable=False
    )
    week_number = db.Column(db.Integer, nullable=False)
    season_year = db.Column(db.Integer, nullable=False)

    # Cache of the graded picks; rebuilt by ScoreAggregator.recompute_card
    total_score = db.Column(db.Integer, nullable=False, default=0)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    # Set with the grading that changed a pick, cleared by a successful recompute
    needs_recompute = db.Column(db.Boolean, nullable=False, default=False, index=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    picks = db.relationship(
        "Pick",
        backref="card",
        lazy="select",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Pick.id",
    )

    __table_args__ = (
        db.UniqueConstraint(
            "user_id",
            "league_id",
            "week_number",
            "season_year",
            name="unique_user_league_week",
        ),
        db.Index("idx_card_league_week", "league_id", "season_year", "week_number"),
        db.Index("idx_card_user", "user_id"),
    )

    def __repr__(self):
        return (
            f"<Card user_id={self.user_id} league_id={self.league_id} "
            f"week={self.week_number}/{self.season_year} score={self.total_score}>"
        )

    @property
    def lock_key(self):
        """Key used to serialize mutations of this card"""
        return (self.user_id, self.league_id, self.week_number, self.season_year)

    def result_counts(self):
        counts = {result: 0 for result in PickResult}
        for pick in self.picks:
            counts[pick.result] += 1
        return counts

    def to_dict(self):
        counts = self.result_counts()
        return {
            "id": self.id,
            "user_id": self.user_id,
            "league_id": self.league_id,
            "week_number": self.week_number,
            "season_year": self.season_year,
            "total_score": self.total_score,
            "is_completed": self.is_completed,
            "pick_count": len(self.picks),
            "wins": counts[PickResult.WON],
            "losses": counts[PickResult.LOST],
            "pushes": counts[PickResult.PUSH],
            "pending": counts[PickResult.PENDING],
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
