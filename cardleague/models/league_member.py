from datetime import datetime, timezone

from cardleague import db

from .enums import LeagueRole, enum_column_type


class LeagueMember(db.Model):
    __tablename__ = "league_members"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    league_id = db.Column(
        db.Integer, db.ForeignKey("leagues.id", ondelete="CASCADE"), nullable=False
    )
    role = db.Column(
        enum_column_type(db, LeagueRole), nullable=False, default=LeagueRole.MEMBER
    )

    joined_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "league_id", name="unique_user_league"),
        db.Index("idx_user_leagues", "user_id"),
    )

    def __repr__(self):
        return f"<LeagueMember user_id={self.user_id} league_id={self.league_id} role={self.role.value}>"

    @property
    def is_admin(self):
        return self.role in (LeagueRole.OWNER, LeagueRole.ADMIN)

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "league_id": self.league_id,
            "role": self.role.value,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }
