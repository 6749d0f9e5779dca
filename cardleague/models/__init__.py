from cardleague import db  # noqa: F401 - imported for model imports

from .card import Card
from .enums import BetKind, GameState, LeagueRole, PickResult, Selection
from .game import Game
from .league import League
from .league_member import LeagueMember
from .pick import Pick
from .user import User

__all__ = [
    "User",
    "League",
    "LeagueMember",
    "Game",
    "Card",
    "Pick",
    "BetKind",
    "GameState",
    "LeagueRole",
    "PickResult",
    "Selection",
]
