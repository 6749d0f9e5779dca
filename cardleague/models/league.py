from datetime import datetime, timezone

from cardleague import db

from .enums import LeagueRole


class League(db.Model):
    __tablename__ = "leagues"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)

    # League settings
    is_private = db.Column(db.Boolean, default=True)
    max_members = db.Column(db.Integer, default=50)

    # Week numbering anchor: created_at in the league's timezone, rounded
    # forward to the boundary weekday. Null columns fall back to app config.
    week_boundary_weekday = db.Column(db.Integer)
    timezone = db.Column(db.String(64))

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(
        db.DateTime, nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships
    members = db.relationship(
        "LeagueMember", backref="league", lazy="dynamic", cascade="all, delete-orphan"
    )
    cards = db.relationship(
        "Card", backref="league", lazy="dynamic", cascade="all, delete-orphan"
    )
    creator = db.relationship("User", foreign_keys=[created_by])

    __table_args__ = (
        db.Index("idx_league_creator", "created_by"),
        db.Index("idx_league_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<League {self.name}>"

    def is_user_member(self, user_id):
        """Check if user belongs to the league"""
        return self.members.filter_by(user_id=user_id).first() is not None

    def get_member_count(self):
        return self.members.count()

    def is_full(self):
        return self.max_members is not None and self.get_member_count() >= self.max_members

    def add_member(self, user_id, role=LeagueRole.MEMBER):
        """Add a user to the league"""
        from .league_member import LeagueMember

        if self.is_user_member(user_id):
            return None, "User is already a member"

        if self.is_full():
            return None, "League is full"

        membership = LeagueMember(league_id=self.id, user_id=user_id, role=role)
        db.session.add(membership)
        return membership, "User added successfully"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_private": self.is_private,
            "max_members": self.max_members,
            "member_count": self.get_member_count(),
            "week_boundary_weekday": self.week_boundary_weekday,
            "timezone": self.timezone,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
