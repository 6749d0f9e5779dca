"""
Typed errors raised by the card ledger, grading engine and settlement loop.

Every error carries a machine-readable ``code`` and an HTTP status so the
JSON blueprint can surface submission failures precisely.
"""


class CardLeagueError(Exception):
    """Base class for all domain errors"""

    code = "card_league_error"
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        data = {"error": self.code, "message": self.message}
        data.update(self.details)
        return data


class CapacityExceeded(CardLeagueError):
    code = "capacity_exceeded"
    status_code = 409

    def __init__(self, locked_count, requested, max_picks):
        super().__init__(
            f"Card allows {max_picks} picks: {locked_count} already locked, "
            f"{requested} requested",
            locked_count=locked_count,
            requested=requested,
            max_picks=max_picks,
        )
        self.locked_count = locked_count
        self.requested = requested
        self.max_picks = max_picks


class DuplicateSelection(CardLeagueError):
    code = "duplicate_selection"

    def __init__(self, game_id, bet_kind):
        super().__init__(
            f"Game {game_id} has more than one {bet_kind} selection",
            game_id=game_id,
            bet_kind=bet_kind,
        )
        self.game_id = game_id
        self.bet_kind = bet_kind


class StaleLockState(CardLeagueError):
    """A targeted game locked between the client's read and this write"""

    code = "stale_lock_state"
    status_code = 409

    def __init__(self, game_ids):
        game_ids = sorted(set(game_ids))
        super().__init__(
            f"Games already started: {', '.join(str(g) for g in game_ids)}. "
            "Refresh the card and try again.",
            game_ids=game_ids,
        )
        self.game_ids = game_ids


class InvalidPick(CardLeagueError):
    code = "invalid_pick"


class NotLeagueMember(CardLeagueError):
    code = "not_league_member"
    status_code = 403


class LeagueNotFound(CardLeagueError):
    code = "league_not_found"
    status_code = 404


class CardNotFound(CardLeagueError):
    code = "card_not_found"
    status_code = 404


class UngradeableOutcome(CardLeagueError):
    """A final game (or one pick on it) cannot be graded from the stored outcome"""

    code = "ungradeable_outcome"
    status_code = 422

    def __init__(self, game_id, reason, pick_id=None):
        super().__init__(
            f"Game {game_id} cannot be graded: {reason}",
            game_id=game_id,
            pick_id=pick_id,
            reason=reason,
        )
        self.game_id = game_id
        self.pick_id = pick_id
        self.reason = reason


class FeedUnavailable(CardLeagueError):
    code = "feed_unavailable"
    status_code = 503


class GameNotFound(CardLeagueError):
    code = "game_not_found"
    status_code = 404


class CardLockTimeout(CardLeagueError):
    """Another writer held the card for longer than the lock timeout"""

    code = "card_busy"
    status_code = 503

    def __init__(self, key, timeout_s):
        super().__init__(
            f"Card {key} is busy, try again shortly",
            timeout_s=timeout_s,
        )
        self.key = key
        self.timeout_s = timeout_s
