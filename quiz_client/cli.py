import asyncio
import logging
import sys

import click

from quiz_client.config import Config
from quiz_client import create_client
from quiz_client.api.games import GameApi
from quiz_client.errors import ConnectFailure, QuizClientError
from quiz_client.identity import IdentityCache
from quiz_client.models import GamePhase
from quiz_client.services.games.submission import SubmitPath


def _build_config(server_url=None, cache_path=None, log_level=None):
    overrides = {}
    if server_url:
        overrides['SERVER_URL'] = server_url
    if cache_path:
        overrides['IDENTITY_CACHE_PATH'] = cache_path
    if log_level:
        overrides['LOG_LEVEL'] = log_level.upper()
    return type('CliConfig', (Config,), overrides)


@click.group()
@click.option('--server-url', default=None, help='Quiz server base URL.')
@click.option('--cache-path', default=None, help='Identity cache file.')
@click.option('--log-level', default=None, help='Logging level (INFO, DEBUG, ...).')
@click.pass_context
def cli(ctx, server_url, cache_path, log_level):
    """Competitive quiz client."""
    config_class = _build_config(server_url, cache_path, log_level)
    logging.basicConfig(
        level=config_class.LOG_LEVEL,
        format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    )
    ctx.obj = config_class


def _run_api(config_class, call):
    async def runner():
        api = GameApi.from_config(config_class())
        try:
            return await call(api)
        finally:
            await api.close()
    try:
        return asyncio.run(runner())
    except QuizClientError as e:
        raise click.ClickException(str(e))


@cli.command('leaderboard')
@click.option('--limit', default=10, show_default=True, type=int)
@click.pass_obj
def leaderboard_command(config_class, limit):
    """Show the top players."""
    board = _run_api(config_class, lambda api: api.get_leaderboard(limit))
    if not board.entries:
        click.echo('No scores yet. Be the first to win!')
        return
    for rank, entry in enumerate(board.entries, start=1):
        click.echo(f"{rank:>2}. {entry.display_name:<20} {entry.high_score:>6}  {entry.games_won} wins")


@cli.command('stats')
@click.pass_obj
def stats_command(config_class):
    """Show server game statistics."""
    stats = _run_api(config_class, lambda api: api.get_stats())
    click.echo(f"online: {stats.connected_users}")
    click.echo(f"game active: {stats.is_game_active}")
    click.echo(f"question active: {stats.has_active_question}")
    click.echo(f"participants: {stats.participant_count}")
    click.echo(f"current winner: {stats.current_winner or '-'}")


@cli.command('health')
@click.pass_obj
def health_command(config_class):
    """Check that the server is up."""
    health = _run_api(config_class, lambda api: api.health_check())
    click.echo(f"{health.status} (uptime {health.uptime_seconds}s, at {health.timestamp_iso})")


@cli.command('question')
@click.pass_obj
def question_command(config_class):
    """Show the current question over the request path."""
    current = _run_api(config_class, lambda api: api.get_current_question())
    if current.question is None:
        click.echo('No active question available')
        return
    state = 'open' if current.is_active else 'closed'
    click.echo(f"[{current.question.difficulty.upper()}] {current.question.problem_text} ({state})")


@cli.command('whoami')
@click.pass_obj
def whoami_command(config_class):
    """Print the cached identity."""
    identity = IdentityCache.from_config(config_class()).load()
    if identity is None:
        click.echo('No cached identity')
        return
    click.echo(f"{identity.display_name} ({identity.id})")


@cli.command('forget')
@click.pass_obj
def forget_command(config_class):
    """Clear the cached identity."""
    IdentityCache.from_config(config_class()).clear()
    click.echo('Cached identity cleared')


@cli.command('ping')
@click.pass_obj
def ping_command(config_class):
    """Connect and measure round-trip latency."""
    async def runner():
        client = create_client(config_class)
        try:
            return await client.start()
        finally:
            await client.close()
    try:
        latency = asyncio.run(runner())
    except ConnectFailure as e:
        raise click.ClickException(f"Failed to connect to game server: {e}")
    click.echo(f"{latency}ms")


def _renderer():
    shown = {}

    def render(snapshot):
        question = snapshot.question
        if question is not None and shown.get('question') != question.id:
            shown['question'] = question.id
            shown['winner'] = None
            click.echo(f"\n[{question.difficulty.upper()}] {question.problem_text}")
        if snapshot.outcome is not None and shown.get('outcome') is not snapshot.outcome:
            shown['outcome'] = snapshot.outcome
            outcome = snapshot.outcome
            if outcome.error_reason:
                click.echo(outcome.error_reason)
            elif outcome.is_winner:
                click.echo(f"You won this round! ({outcome.time_taken_ms / 1000:.2f}s)")
            elif outcome.is_correct:
                click.echo('Correct! But someone was faster.')
            else:
                click.echo('Incorrect answer. Keep trying!')
        winner = snapshot.round_state.winner if snapshot.round_state else None
        if snapshot.phase is GamePhase.ROUND_CONCLUDED and winner is not None and shown.get('winner') is not winner:
            shown['winner'] = winner
            click.echo(f"{winner.display_name} won! Answer: {snapshot.correct_answer}")

    return render


async def _play(config_class, name):
    client = create_client(config_class)
    client.synchronizer.add_listener(_renderer())
    client.synchronizer.add_error_listener(lambda exc: click.echo(f"error: {exc}", err=True))
    try:
        offline = False
        try:
            latency = await client.start()
        except ConnectFailure as e:
            # start() already pulled the current question over HTTP
            sync = client.synchronizer
            if sync.question is None or sync.identity is None:
                raise click.ClickException(f"Failed to connect to game server: {e}")
            offline = True
            click.echo('Event stream unavailable, answering over HTTP (empty line refreshes)', err=True)
        else:
            click.echo(f"Connected to game server! ({latency}ms latency)")

        if not offline:
            identity = client.synchronizer.identity
            display_name = name or (identity.display_name if identity else None)
            if not display_name:
                raise click.UsageError('--name is required when no identity is cached')
            try:
                await client.join(display_name)
            except QuizClientError as e:
                raise click.ClickException(str(e))

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            answer = line.strip()
            if not answer:
                if offline:
                    try:
                        await client.refresh_question()
                    except QuizClientError as e:
                        click.echo(str(e), err=True)
                continue
            try:
                path = await client.submit(answer)
            except QuizClientError as e:
                click.echo(str(e), err=True)
                continue
            click.echo('Answer submitted!' if path is SubmitPath.STREAM else 'Answer submitted via HTTP!')
    finally:
        await client.close()


@cli.command('play')
@click.option('--name', default=None, help='Display name (2-20 characters).')
@click.pass_obj
def play_command(config_class, name):
    """Join the game and answer questions typed on stdin."""
    asyncio.run(_play(config_class, name))
