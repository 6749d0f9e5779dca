"""
Game feed: the read side of the upstream odds and results provider.

``HttpGameFeed`` talks JSON over HTTP with rate limiting and retries;
``apply_feed_update`` writes feed payloads onto stored games, bumping the
result revision whenever a final outcome is recorded or corrected.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import List

import requests

from cardleague import db
from cardleague.errors import FeedUnavailable
from cardleague.models import Game, GameState
from cardleague.services.game_clock import ensure_utc, is_locked, to_naive_utc

logger = logging.getLogger(__name__)

# Feed status strings mapped onto game states
STATE_ALIASES = {
    "scheduled": GameState.SCHEDULED,
    "pre": GameState.SCHEDULED,
    "in_progress": GameState.IN_PROGRESS,
    "live": GameState.IN_PROGRESS,
    "in": GameState.IN_PROGRESS,
    "final": GameState.FINAL,
    "post": GameState.FINAL,
    "completed": GameState.FINAL,
}

LINE_FIELDS = ("home_moneyline", "away_moneyline", "home_spread", "total_line")


def _retry_delay(error, attempt, base_delay, backoff_factor):
    """Seconds to wait before retrying ``error``, or None if it is not retryable"""
    delay = base_delay * (backoff_factor**attempt)
    if not isinstance(error, requests.exceptions.HTTPError):
        return delay

    response = error.response
    if response is None:
        return delay
    if response.status_code == 429:  # Too Many Requests
        try:
            return float(response.headers.get("Retry-After", delay))
        except (TypeError, ValueError):
            return delay
    if response.status_code >= 500:  # Server errors
        return delay
    return None


def rate_limit_decorator(max_retries=None, base_delay=1.0, backoff_factor=2.0):
    """
    Decorator to handle API rate limiting with exponential backoff

    ``max_retries`` defaults to the feed's own ``max_retries`` setting.
    429 responses wait for ``Retry-After``; other 4xx responses fail at once.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            retries = max(1, max_retries or self.max_retries)
            for attempt in range(retries):
                try:
                    return func(self, *args, **kwargs)

                except requests.exceptions.RequestException as e:
                    delay = _retry_delay(e, attempt, base_delay, backoff_factor)
                    if delay is None:
                        raise FeedUnavailable(f"Game feed rejected request: {e}") from e
                    if attempt == retries - 1:
                        raise FeedUnavailable(f"Game feed request failed: {e}") from e
                    logger.warning(
                        f"Request failed: {e}. Waiting {delay}s before retry {attempt + 1}/{retries}"
                    )
                    time.sleep(delay)

            raise FeedUnavailable(f"Max retries ({retries}) exceeded")

        return wrapper

    return decorator


class GameFeed:
    """Source of game state, lines and results"""

    def fetch_games(self, external_ids):
        """Current payloads for the given feed ids"""
        raise NotImplementedError

    def fetch_schedule(self):
        """Payloads for every game the feed currently lists"""
        raise NotImplementedError


class HttpGameFeed(GameFeed):
    """
    JSON feed over HTTP.

    ``GET {base_url}/games?ids=a,b`` and ``GET {base_url}/schedule`` return
    either a list of game payloads or ``{"games": [...]}``.
    """

    def __init__(self, base_url, timeout=10.0, max_retries=3):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = requests.Session()
        self.session.headers.update(
            {"User-Agent": "CardLeague-Settlement/1.0", "Accept": "application/json"}
        )
        self.request_count = 0

    @classmethod
    def from_config(cls, config):
        return cls(
            config["GAME_FEED_URL"],
            timeout=config.get("GAME_FEED_TIMEOUT", 10.0),
            max_retries=config.get("GAME_FEED_MAX_RETRIES", 3),
        )

    @rate_limit_decorator(base_delay=1.0)
    def _make_api_request(self, path, params=None):
        """Make API request with retry logic"""
        url = f"{self.base_url}{path}"
        self.request_count += 1
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response

        except requests.exceptions.Timeout:
            logger.warning(f"Request timeout for {url}")
            raise
        except requests.exceptions.ConnectionError:
            logger.warning(f"Connection error for {url}")
            raise
        except requests.exceptions.HTTPError as e:
            if e.response is not None and e.response.status_code == 429:
                logger.warning(f"Rate limited: {url}")
            elif e.response is not None and e.response.status_code >= 500:
                logger.warning(f"Server error {e.response.status_code}: {url}")
            else:
                logger.error(f"HTTP error: {url}: {e}")
            raise

    def _get_games(self, path, params=None):
        response = self._make_api_request(path, params=params)
        try:
            data = response.json()
        except ValueError as e:
            raise FeedUnavailable(f"Game feed returned invalid JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("games")
        if not isinstance(data, list):
            raise FeedUnavailable("Game feed response has no game list")
        return data

    def fetch_games(self, external_ids):
        external_ids = [str(i) for i in external_ids if i]
        if not external_ids:
            return []
        return self._get_games("/games", params={"ids": ",".join(external_ids)})

    def fetch_schedule(self):
        return self._get_games("/schedule")


def build_game_feed(config):
    """Feed configured for the app, or None when no feed URL is set"""
    if not config.get("GAME_FEED_URL"):
        return None
    return HttpGameFeed.from_config(config)


def _parse_time(value):
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _parse_score(value):
    if value is None or value == "":
        return None
    score = int(value)
    if score < 0:
        raise ValueError(f"negative score {score}")
    return score


def parse_game_payload(payload):
    """Normalize one feed payload.

    Raises:
        ValueError: the payload is missing required fields or malformed
    """
    if not isinstance(payload, dict):
        raise ValueError("payload is not an object")

    external_id = payload.get("id", payload.get("external_id"))
    if external_id in (None, ""):
        raise ValueError("payload has no id")

    state = STATE_ALIASES.get(str(payload.get("state", "scheduled")).lower())
    if state is None:
        raise ValueError(f"unknown state {payload.get('state')!r}")

    lines = payload.get("lines") or {}
    parsed = {
        "external_id": str(external_id),
        "home_team": payload.get("home_team"),
        "away_team": payload.get("away_team"),
        "scheduled_start": (
            _parse_time(payload["scheduled_start"])
            if payload.get("scheduled_start")
            else None
        ),
        "state": state,
        "home_score": _parse_score(payload.get("home_score")),
        "away_score": _parse_score(payload.get("away_score")),
        "lines": {},
    }
    for name in LINE_FIELDS:
        key = "total" if name == "total_line" and "total" in lines else name
        if lines.get(key) is not None:
            parsed["lines"][name] = float(lines[key])
    return parsed


@dataclass
class FeedUpdate:
    created: List[int] = field(default_factory=list)
    updated: List[int] = field(default_factory=list)
    newly_final: List[int] = field(default_factory=list)
    corrected: List[int] = field(default_factory=list)
    rejected: int = 0

    def to_dict(self):
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "newly_final": len(self.newly_final),
            "corrected": len(self.corrected),
            "rejected": self.rejected,
        }


def apply_feed_update(payloads, now=None, create_missing=False):
    """Write feed payloads onto stored games.

    Lines and start times only change while a game is unlocked, and a game
    never moves back to an earlier state. Malformed payloads and refused
    changes are logged and counted in ``rejected``. Does not commit.
    """
    now = ensure_utc(now or datetime.now(timezone.utc))
    update = FeedUpdate()

    for payload in payloads:
        try:
            data = parse_game_payload(payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"Rejected feed payload {payload!r}: {e}")
            update.rejected += 1
            continue

        game = Game.query.filter_by(external_id=data["external_id"]).first()
        if game is None:
            if not create_missing:
                continue
            if not (data["home_team"] and data["away_team"] and data["scheduled_start"]):
                logger.warning(f"Feed game {data['external_id']} lacks teams or start time")
                update.rejected += 1
                continue
            game = Game(
                external_id=data["external_id"],
                home_team=data["home_team"],
                away_team=data["away_team"],
                scheduled_start=to_naive_utc(data["scheduled_start"]),
                state=GameState.SCHEDULED,
            )
            db.session.add(game)
            db.session.flush()
            update.created.append(game.id)

        if not game.accepts_state(data["state"]):
            logger.warning(
                f"Rejected feed payload for game {game.id}: state would move back from "
                f"{game.state.value} to {data['state'].value}"
            )
            update.rejected += 1
            continue

        changed = False
        if not is_locked(game, now):
            if data["scheduled_start"] is not None:
                start = to_naive_utc(data["scheduled_start"])
                if game.scheduled_start != start:
                    game.scheduled_start = start
                    changed = True
            for name, value in data["lines"].items():
                if getattr(game, name) != value:
                    setattr(game, name, value)
                    changed = True
        elif (
            data["scheduled_start"] is not None
            and to_naive_utc(data["scheduled_start"]) != game.scheduled_start
        ):
            logger.warning(
                f"Ignoring start time change for locked game {game.id}: "
                f"{game.scheduled_start} -> {data['scheduled_start']}"
            )
            update.rejected += 1

        was_final = game.is_final
        revision = game.result_revision or 0
        if game.record_result(data["home_score"], data["away_score"], data["state"], now):
            changed = True
        if game.result_revision != revision:
            if was_final:
                logger.info(
                    f"Result correction for game {game.id}: "
                    f"{game.away_score}-{game.home_score} (revision {game.result_revision})"
                )
                update.corrected.append(game.id)
            else:
                update.newly_final.append(game.id)

        if changed and game.id not in update.created:
            update.updated.append(game.id)

    return update


def sync_schedule(feed, now=None):
    """Pull the feed's full schedule, creating games it lists that are not stored yet"""
    payloads = feed.fetch_schedule()
    try:
        update = apply_feed_update(payloads, now=now, create_missing=True)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Schedule sync: {update.to_dict()}")
    return update
