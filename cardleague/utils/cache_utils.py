"""
Cache utilities for league standings.

Each league has a generation token; standings are cached under keys that
include it, so invalidating a league is a single write and never touches
other leagues' entries. Callers resolve the key once, before reading the
data it describes, so results computed across an invalidation land under
the old generation and are never served again.
"""

import logging
import secrets

from flask import current_app

from cardleague import cache

logger = logging.getLogger(__name__)


def _generation_key(league_id):
    return f"standings_gen_{league_id}"


def _league_generation(league_id):
    key = _generation_key(league_id)
    generation = cache.get(key)
    if generation is None:
        generation = secrets.token_hex(8)
        cache.set(key, generation, timeout=0)
    return generation


def standings_cache_key(league_id, scope):
    """Key for one standings view under the league's current generation (None if the cache is down)"""
    try:
        return f"standings_{league_id}_{_league_generation(league_id)}_{scope}"
    except Exception as e:
        logger.warning(f"Standings cache unavailable for league {league_id}: {e}")
        return None


def get_cached_standings(key):
    if key is None:
        return None
    try:
        return cache.get(key)
    except Exception as e:
        logger.warning(f"Standings cache read failed for {key}: {e}")
        return None


def set_cached_standings(key, entries):
    if key is None:
        return
    try:
        cache.set(
            key,
            entries,
            timeout=current_app.config.get("STANDINGS_CACHE_TIMEOUT", 600),
        )
    except Exception as e:
        logger.warning(f"Standings cache write failed for {key}: {e}")


def invalidate_league_standings(league_id):
    """Drop every cached standings view of a league"""
    try:
        cache.set(_generation_key(league_id), secrets.token_hex(8), timeout=0)
        logger.debug(f"Standings cache invalidated for league {league_id}")
    except Exception as e:
        logger.error(f"Failed to invalidate standings cache for league {league_id}: {e}")


def get_cache_stats():
    """Get cache statistics"""
    return {
        "type": current_app.config.get("CACHE_TYPE", "Unknown"),
        "timeout": current_app.config.get("CACHE_DEFAULT_TIMEOUT", 300),
        "standings_timeout": current_app.config.get("STANDINGS_CACHE_TIMEOUT", 600),
    }
