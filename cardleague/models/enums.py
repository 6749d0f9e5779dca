import enum


class GameState(str, enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    FINAL = "final"


class BetKind(str, enum.Enum):
    MONEYLINE = "moneyline"
    SPREAD = "spread"
    TOTAL = "total"


class Selection(str, enum.Enum):
    HOME = "home"
    AWAY = "away"
    OVER = "over"
    UNDER = "under"


class PickResult(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    PUSH = "push"


class LeagueRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


# Selections that make sense for each bet kind
VALID_SELECTIONS = {
    BetKind.MONEYLINE: (Selection.HOME, Selection.AWAY),
    BetKind.SPREAD: (Selection.HOME, Selection.AWAY),
    BetKind.TOTAL: (Selection.OVER, Selection.UNDER),
}


def enum_column_type(db, enum_cls):
    """String-backed column storing the enum's value"""
    return db.Enum(
        enum_cls,
        native_enum=False,
        length=16,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
