#!/usr/bin/env python3
"""
Card League Management CLI

Command-line management for leagues, the game feed, settlement and
standings. ``settle run`` is the entry point for external cron deployments.
"""

import logging
import os

import click
from flask.cli import with_appcontext
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

# The CLI never runs the background scheduler
os.environ.setdefault("SCHEDULER_ENABLED", "False")

from cardleague import create_app, db  # noqa: E402
from cardleague.errors import CardLeagueError  # noqa: E402
from cardleague.models import Card, Game, GameState, League, LeagueRole, User  # noqa: E402
from cardleague.services.game_clock import (  # noqa: E402
    league_current_week,
    league_week_info,
)
from cardleague.services.game_feed import build_game_feed, sync_schedule  # noqa: E402
from cardleague.services.pick_ledger import PickLedger  # noqa: E402
from cardleague.services.scoring import ScoreAggregator  # noqa: E402
from cardleague.services.settlement import build_settlement_service  # noqa: E402
from cardleague.utils.cache_utils import get_cache_stats  # noqa: E402

app = create_app()


def _get_or_create_user(username):
    user = User.query.filter_by(username=username).first()
    if user is None:
        user = User(username=username)
        db.session.add(user)
        db.session.flush()
    return user


@click.group()
def cli():
    """Card League Management CLI"""
    pass


# League Management Commands
@cli.group()
def league():
    """League management commands"""
    pass


@league.command()
@click.argument("name")
@click.argument("owner")
@click.option("--description", help="League description")
@click.option("--public", is_flag=True, help="Make the league public")
@click.option("--max-members", type=int, default=50, show_default=True)
@click.option(
    "--boundary-weekday",
    type=click.IntRange(0, 6),
    help="Weekday weeks start on (0=Monday ... 6=Sunday)",
)
@click.option("--timezone", "tz_name", help="IANA timezone for week boundaries")
@with_appcontext
def create(name, owner, description, public, max_members, boundary_weekday, tz_name):
    """Create a league owned by OWNER (username)"""
    try:
        user = _get_or_create_user(owner)
        new_league = League(
            name=name,
            description=description,
            is_private=not public,
            max_members=max_members,
            week_boundary_weekday=boundary_weekday,
            timezone=tz_name,
            created_by=user.id,
        )
        db.session.add(new_league)
        db.session.flush()
        new_league.add_member(user.id, role=LeagueRole.OWNER)
        db.session.commit()
        click.echo(f"✅ Created league {new_league.id} '{name}' owned by {owner}")

    except SQLAlchemyError as e:
        db.session.rollback()
        click.echo(f"❌ Database error creating league: {str(e)}")
        logging.error(f"League creation failed - SQL error: {e}")


@league.command("add-member")
@click.argument("league_id", type=int)
@click.argument("username")
@click.option(
    "--role",
    type=click.Choice([r.value for r in LeagueRole]),
    default=LeagueRole.MEMBER.value,
    show_default=True,
)
@with_appcontext
def add_member(league_id, username, role):
    """Add USERNAME to a league"""
    target = db.session.get(League, league_id)
    if not target:
        click.echo(f"❌ League {league_id} not found!")
        return

    try:
        user = _get_or_create_user(username)
        membership, message = target.add_member(user.id, role=LeagueRole(role))
        if membership is None:
            db.session.rollback()
            click.echo(f"⚠️  {message}")
            return
        db.session.commit()
        click.echo(f"✅ Added {username} to league {league_id} as {role}")

    except IntegrityError as e:
        db.session.rollback()
        click.echo(f"❌ {username} is already a member!")
        logging.error(f"Add member failed - integrity error: {e}")
    except SQLAlchemyError as e:
        db.session.rollback()
        click.echo(f"❌ Database error adding member: {str(e)}")
        logging.error(f"Add member failed - SQL error: {e}")


@league.command("show-week")
@click.argument("league_id", type=int)
@click.option("--week", type=int, help="Week number (defaults to the current week)")
@with_appcontext
def show_week(league_id, week):
    """Show a league week's interval and cards"""
    target = db.session.get(League, league_id)
    if not target:
        click.echo(f"❌ League {league_id} not found!")
        return

    ledger = PickLedger()
    now = ledger.clock()
    if week is None:
        week = league_current_week(target, now)
    try:
        info = league_week_info(target, week, now)
    except ValueError as e:
        click.echo(f"❌ {e}")
        return

    current = " (current)" if info["is_current"] else ""
    click.echo(f"📅 {target.name} week {week}{current}: {info['label']} {info['season_year']}")
    cards = Card.query.filter_by(
        league_id=league_id, week_number=week, season_year=info["season_year"]
    ).all()
    if not cards:
        click.echo("No cards submitted.")
    for card in cards:
        view = ledger.get_card_view(card.id, now)
        click.echo(
            f"  {card.user.full_name}: {len(view['picks'])} picks, "
            f"{view['locked_count']} locked, score {card.total_score}"
        )


# Game Feed Commands
@cli.group()
def feed():
    """Game feed commands"""
    pass


@feed.command("sync")
@with_appcontext
def feed_sync():
    """Pull the full schedule from the game feed"""
    game_feed = build_game_feed(app.config)
    if game_feed is None:
        click.echo("❌ GAME_FEED_URL is not configured")
        return

    try:
        update = sync_schedule(game_feed)
        click.echo(f"✅ Schedule synced: {update.to_dict()}")
    except CardLeagueError as e:
        click.echo(f"❌ {e.message}")


# Settlement Commands
@cli.group()
def settle():
    """Settlement commands"""
    pass


@settle.command("run")
@with_appcontext
def settle_run():
    """Run one settlement pass"""
    report = build_settlement_service(app).run_settlement_pass()
    click.echo(
        f"✅ Settlement pass: {report.games_considered} games, "
        f"{report.picks_graded} picks graded ({report.picks_changed} changed), "
        f"{report.cards_updated} cards updated"
    )
    if not report.feed_available:
        click.echo("⚠️  Game feed unavailable, graded stored results only")
    for error in report.errors:
        click.echo(f"   ❌ {error.get('message', error)}")


@settle.command("regrade")
@click.argument("game_id", type=int)
@with_appcontext
def settle_regrade(game_id):
    """Force every pick on GAME_ID to be graded again"""
    try:
        report = build_settlement_service(app).regrade_game(game_id)
    except CardLeagueError as e:
        click.echo(f"❌ {e.message}")
        return
    click.echo(
        f"✅ Regraded game {game_id}: {report.picks_graded} picks, "
        f"{report.picks_changed} changed, {report.cards_updated} cards updated"
    )


# Standings Commands
@cli.group()
def standings():
    """Standings commands"""
    pass


def _echo_standings(entries):
    if not entries:
        click.echo("No cards yet.")
        return
    for entry in entries:
        user = db.session.get(User, entry.user_id)
        name = user.full_name if user else entry.user_id
        click.echo(
            f"  {entry.rank:>3}. {name:<20} {entry.points:>4} pts  "
            f"{entry.wins}-{entry.losses}-{entry.pushes}  {entry.win_rate}%"
        )


@standings.command("weekly")
@click.argument("league_id", type=int)
@click.argument("week", type=int)
@click.option("--year", type=int, help="Season year (defaults to the week's year)")
@with_appcontext
def standings_weekly(league_id, week, year):
    """Weekly standings for a league"""
    try:
        entries = ScoreAggregator().weekly_standings(league_id, week, year=year)
    except CardLeagueError as e:
        click.echo(f"❌ {e.message}")
        return
    click.echo(f"🏆 League {league_id} week {week}")
    _echo_standings(entries)


@standings.command("all-time")
@click.argument("league_id", type=int)
@with_appcontext
def standings_all_time(league_id):
    """All-time standings for a league"""
    try:
        entries = ScoreAggregator().all_time_standings(league_id)
    except CardLeagueError as e:
        click.echo(f"❌ {e.message}")
        return
    click.echo(f"🏆 League {league_id} all-time")
    _echo_standings(entries)


# Database Commands
@cli.group()
def db_cmd():
    """Database management commands"""
    pass


@db_cmd.command("init")
@with_appcontext
def init_db():
    """Initialize database tables"""
    db.create_all()
    click.echo("✅ Database tables created")


@db_cmd.command()
@with_appcontext
def reset():
    """Reset database (WARNING: Deletes all data)"""
    if not click.confirm("This will DELETE ALL DATA. Are you sure?"):
        click.echo("Operation cancelled.")
        return

    db.drop_all()
    db.create_all()
    click.echo("✅ Database reset complete")


@cli.command()
@with_appcontext
def status():
    """Show application status"""
    click.echo("🎯 Card League Status")
    click.echo("=" * 40)

    # Database connection
    try:
        db.session.execute(text("SELECT 1"))
        click.echo("✅ Database: Connected")
    except Exception as e:
        click.echo(f"❌ Database: Error - {str(e)}")
        return

    click.echo(f"👥 Users: {User.query.count()}")
    click.echo(f"🏆 Leagues: {League.query.count()}")

    game_count = Game.query.count()
    final_count = Game.query.filter_by(state=GameState.FINAL).count()
    click.echo(f"🎮 Games: {final_count}/{game_count} final")

    settlement = build_settlement_service(app)
    awaiting = len(settlement.games_awaiting_grading())
    click.echo(f"⏳ Final games awaiting grading: {awaiting}")
    click.echo(f"🧮 Cards awaiting recompute: {len(settlement.cards_awaiting_recompute())}")

    feed_url = app.config.get("GAME_FEED_URL")
    click.echo(f"📡 Game feed: {feed_url or 'not configured'}")

    cache_stats = get_cache_stats()
    click.echo(f"🗄️  Cache: {cache_stats['type']} (standings timeout {cache_stats['standings_timeout']}s)")


if __name__ == "__main__":
    with app.app_context():
        cli()
