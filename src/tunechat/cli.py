"""CLI interface for tunechat."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from tunechat.config import AppConfig, config_exists, ensure_dirs, get_base_dir, load_config, save_config

if TYPE_CHECKING:
    from tunechat.provider.spotify import SpotifyClient
    from tunechat.storage.database import Database

app = typer.Typer(
    name="tunechat",
    help="Realtime music chat rooms with taste-based playlist matching.",
    add_completion=False,
)
console = Console()


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _open_db(cfg: AppConfig) -> AsyncIterator[Database]:
    from tunechat.storage.database import Database

    ensure_dirs()
    async with Database(cfg.db_path) as db:
        yield db


@asynccontextmanager
async def _spotify_for(cfg: AppConfig, db: Database, user_id: str) -> AsyncIterator[SpotifyClient]:
    """Yield a Spotify client acting as *user_id*, backed by the stored provider session."""
    from tunechat.provider.auth import TokenExchanger
    from tunechat.provider.spotify import SpotifyClient
    from tunechat.session import SessionManager

    stored = await db.get_provider_session(user_id)
    if stored is None:
        console.print(f"[red]No Spotify session for user[/red] [bold]{user_id}[/bold].  Run [bold]tunechat init[/bold].")
        raise typer.Exit(1)

    exchanger = TokenExchanger(
        db,
        cfg.spotify,
        buffer_seconds=cfg.provider.server_token_buffer_seconds,
    )
    session = SessionManager(
        lambda: exchanger.refresh_for_user(user_id),
        buffer_seconds=cfg.session.token_buffer_seconds,
    )
    session.sign_in(
        user_id,
        provider_user_id=stored.provider_user_id,
        access_token=stored.access_token,
        expires_at=stored.expires_at,
    )
    async with SpotifyClient(session) as spotify:
        yield spotify


def _short(value: str, width: int = 60) -> str:
    return value if len(value) <= width else value[: width - 1] + "…"


def _human_time(iso_str: str | None) -> str:
    """Convert an ISO timestamp to a relative time string."""
    if not iso_str:
        return "—"
    from datetime import datetime

    try:
        dt = datetime.fromisoformat(iso_str.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        diff = (datetime.now(UTC) - dt).total_seconds()
        if diff < 60:
            return f"{max(int(diff), 0)}s ago"
        if diff < 3600:
            return f"{int(diff / 60)} min ago"
        if diff < 86400:
            return f"{int(diff / 3600)}h {int((diff % 3600) / 60)}m ago"
        return dt.strftime("%Y-%m-%d %H:%M")
    except (ValueError, AttributeError):
        return iso_str


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def init() -> None:
    """Run the setup wizard: store Spotify credentials and link a user."""
    from tunechat.wizard import run_wizard

    ensure_dirs()
    current = load_config() if config_exists() else None
    cfg, authorized = run_wizard(current)
    save_config(cfg)
    console.print("[green]Configuration saved.[/green]")

    if authorized is None:
        return

    async def _store() -> None:
        async with _open_db(cfg) as db:
            await db.upsert_profile(
                authorized.user_id,
                username=authorized.display_name,
                spotify_user_id=authorized.provider_user_id,
            )
            await db.upsert_provider_session(
                authorized.user_id,
                access_token=authorized.access_token,
                expires_at=authorized.expires_at,
                refresh_token=authorized.refresh_token,
                provider_user_id=authorized.provider_user_id,
            )

    asyncio.run(_store())
    console.print(f"[green]Linked[/green] user [bold]{authorized.user_id}[/bold] to Spotify.")


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind address (default: server.host)"),
    port: int = typer.Option(0, "--port", "-p", help="Port (default: server.port)"),
) -> None:
    """Run the HTTP API (token refresh, room history, matches)."""
    import uvicorn

    from tunechat.logging import setup_logging
    from tunechat.server.api import ApiState, create_api_app

    cfg = load_config()
    ensure_dirs()
    setup_logging(cfg.server.log_level, cfg.log_dir)
    if not cfg.is_spotify_configured():
        console.print("[yellow]Spotify credentials are not set; token refresh will fail.[/yellow]")

    bind_host = host or cfg.server.host
    bind_port = port or cfg.server.port
    console.print(f"Serving tunechat API on [bold]http://{bind_host}:{bind_port}[/bold]")
    uvicorn.run(
        create_api_app(ApiState(cfg)),
        host=bind_host,
        port=bind_port,
        log_config=None,
        access_log=False,
    )


@app.command(name="import-top-artists")
def import_top_artists(
    user_id: str = typer.Argument(help="tunechat user id"),
    time_range: str = typer.Option("medium_term", "--range", help="short_term, medium_term or long_term"),
    limit: int = typer.Option(50, "--limit", "-n", help="Number of artists to fetch"),
) -> None:
    """Fetch a user's top artists from Spotify and store them as their taste profile."""
    from tunechat.logging import setup_logging
    from tunechat.provider.importer import LibraryImporter

    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir)

    async def _run() -> int:
        async with _open_db(cfg) as db, _spotify_for(cfg, db, user_id) as spotify:
            return await LibraryImporter(db, spotify).import_top_artists(user_id, time_range=time_range, limit=limit)

    count = asyncio.run(_run())
    console.print(f"[green]Stored[/green] {count} top artists for [bold]{user_id}[/bold].")


@app.command(name="import-playlist")
def import_playlist(
    user_id: str = typer.Argument(help="tunechat user id submitting the playlist"),
    ref: str = typer.Argument(help="Playlist id, spotify: URI or open.spotify.com URL"),
) -> None:
    """Import a playlist into the catalogue together with its artist aggregate."""
    from tunechat.logging import setup_logging
    from tunechat.provider.importer import LibraryImporter, parse_playlist_id

    try:
        parse_playlist_id(ref)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    cfg = load_config()
    setup_logging(cfg.server.log_level, cfg.log_dir)

    async def _run():
        async with _open_db(cfg) as db, _spotify_for(cfg, db, user_id) as spotify:
            return await LibraryImporter(db, spotify).import_playlist(user_id, ref)

    summary = asyncio.run(_run())
    console.print(
        f"[green]Imported[/green] [bold]{summary.playlist.name}[/bold]: "
        f"{summary.tracks} tracks, {summary.artists} artists."
    )


@app.command(name="delete-playlist")
def delete_playlist(
    user_id: str = typer.Argument(help="tunechat user id that submitted the playlist"),
    playlist_id: int = typer.Argument(help="Catalogue playlist id (see `tunechat match`)"),
) -> None:
    """Remove a submitted playlist from the catalogue, with its tracks and matches."""
    from tunechat.matching.actions import PlaylistActions

    cfg = load_config()

    async def _run():
        async with _open_db(cfg) as db:
            return await PlaylistActions(db).delete_playlist(user_id, playlist_id)

    result = asyncio.run(_run())
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]Deleted[/green] playlist {playlist_id}.")


@app.command()
def match(
    user_id: str = typer.Argument(help="tunechat user id"),
    save: bool = typer.Option(True, "--save/--no-save", help="Persist the ranked matches"),
) -> None:
    """Rank catalogue playlists against a user's taste profile."""
    from tunechat.matching.ranker import TasteMatcher

    cfg = load_config()

    async def _run():
        async with _open_db(cfg) as db:
            matcher = TasteMatcher(db, threshold=cfg.matching.similarity_threshold)
            return await matcher.match_for_user(user_id, persist=save)

    ranked = asyncio.run(_run())
    if not ranked:
        console.print("[dim]No matching playlists.[/dim]")
        return

    table = Table(title=f"Matches for {user_id}")
    table.add_column("#", justify="right")
    table.add_column("Playlist")
    table.add_column("Submitted by")
    table.add_column("Similarity", justify="right")
    for i, candidate in enumerate(ranked, start=1):
        table.add_row(str(i), candidate.name, candidate.submitted_by or "—", f"{candidate.similarity:.3f}")
    console.print(table)


@app.command()
def similar(
    user_a: str = typer.Argument(help="First user id"),
    user_b: str = typer.Argument(help="Second user id"),
) -> None:
    """Compare two users' top artists and report whether their taste is similar."""
    from tunechat.matching.similarity import calculate_taste_similarity, is_taste_similar_logic

    cfg = load_config()
    threshold = cfg.matching.similarity_threshold

    async def _run() -> tuple[float, bool]:
        async with _open_db(cfg) as db:

            async def score(a: str, b: str) -> float:
                return await calculate_taste_similarity(db, a, b)

            value = await score(user_a, user_b)
            return value, await is_taste_similar_logic(user_a, user_b, score, threshold)

    value, is_similar = asyncio.run(_run())
    verdict = "[green]similar[/green]" if is_similar else "[yellow]not similar[/yellow]"
    console.print(f"{user_a} ↔ {user_b}: {value:.3f} (threshold {threshold}) → {verdict}")


@app.command()
def history(
    room_id: str = typer.Argument(help="Room UUID"),
    limit: int = typer.Option(0, "--limit", "-n", help="Number of messages (default: chat.history_page_size)"),
) -> None:
    """Print the latest messages of a room, oldest first."""
    from tunechat.chat.actions import ChatActions

    cfg = load_config()

    async def _run():
        async with _open_db(cfg) as db:
            actions = ChatActions(db, max_message_length=cfg.chat.max_message_length)
            return await actions.list_messages(room_id, limit=limit or cfg.chat.history_page_size)

    result = asyncio.run(_run())
    if not result.success:
        console.print(f"[red]Error:[/red] {result.error}")
        raise typer.Exit(1)
    if not result.data:
        console.print("[dim]No messages.[/dim]")
        return
    for msg in result.data:
        author = (msg.profile.username if msg.profile else None) or msg.profile_id
        when = _human_time(msg.created_at.isoformat())
        console.print(f"[dim]{when:>14}[/dim]  [bold]{author}[/bold]: {_short(msg.content, 200)}", highlight=False)


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    events: bool = typer.Option(False, "--events", help="Show events.log (JSON) instead of tunechat.log"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output (like tail -f)"),
) -> None:
    """Show recent log output (supports --events for the JSON chat/playback log, --follow for live tail)."""
    filename = "events.log" if events else "tunechat.log"
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    if follow:
        _follow_log(log_file, tail_lines)
        return

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return

    for line in last_lines:
        _print_log_line(line)


def _log_line_style(line: str) -> str | None:
    """Return a Rich style for *line* based on the structlog level it carries."""
    lower = line.lower()
    if "[error" in lower or "[critical" in lower or '"level": "error"' in lower or '"level": "critical"' in lower:
        return "red"
    if "[warning" in lower or '"level": "warning"' in lower:
        return "yellow"
    if "[debug" in lower or '"level": "debug"' in lower:
        return "dim"
    return None


def _print_log_line(line: str) -> None:
    line = line.rstrip("\n")
    if not line:
        return
    console.print(line, style=_log_line_style(line), highlight=False, markup=False)


def _follow_log(log_file: Path, initial_lines: int = 10) -> None:
    import time

    with open(log_file, encoding="utf-8") as fh:
        last = deque(fh, maxlen=initial_lines)
    for line in last:
        _print_log_line(line)

    with open(log_file, encoding="utf-8") as fh:
        fh.seek(0, 2)
        try:
            while True:
                line = fh.readline()
                if line:
                    _print_log_line(line)
                else:
                    time.sleep(0.5)
        except KeyboardInterrupt:
            pass


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")
    for section_name in AppConfig.model_fields:
        section = getattr(cfg, section_name)
        console.print(f"[bold cyan]\\[{section_name}][/bold cyan]")
        values = section.model_dump(mode="python")
        width = max(len(k) for k in values)
        for key, value in values.items():
            if isinstance(value, SecretStr):
                shown = _mask(value)
            elif value == "":
                shown = "[dim](not set)[/dim]"
            else:
                shown = str(value)
            console.print(f"  {key:<{width}} = {shown}")
        console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. matching.similarity_threshold"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. tunechat config set chat.history_page_size 100)."""
    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. server.port).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    sections = list(AppConfig.model_fields)
    if section_name not in sections:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(sections)}[/dim]")
        raise typer.Exit(1)

    section_model = getattr(cfg, section_name)
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        section_data = section_model.model_dump(mode="python")
        section_data[field_name] = coerced
        new_section = type(section_model).model_validate(section_data)
    except (ValueError, TypeError) as exc:
        # pydantic.ValidationError is a ValueError
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    setattr(cfg, section_name, new_section)
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: type | None) -> object:
    """Coerce a string value to the expected field type."""
    import typing

    origin = typing.get_origin(field_type)
    args = typing.get_args(field_type)

    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)

    if field_type is int:
        return int(raw)

    if field_type is float:
        return float(raw)

    if origin is typing.Literal:
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)
        return raw

    return raw


# ---------------------------------------------------------------------------
# Database inspection
# ---------------------------------------------------------------------------


db_app = typer.Typer(name="db", help="Database inspection commands.", add_completion=False)
app.add_typer(db_app)

_TABLES = (
    ("profiles", "User profiles"),
    ("chat_messages", "Chat messages"),
    ("playlists", "Catalogue playlists"),
    ("playlist_tracks", "Tracks in catalogue playlists"),
    ("user_top_artists", "Top artists per user"),
    ("playlist_track_artist_aggregates", "Artist aggregates per playlist"),
    ("user_playlist_matches", "Stored playlist matches"),
    ("provider_sessions", "Linked Spotify sessions"),
)


@db_app.command(name="status")
def db_status() -> None:
    """Show database location and row counts per table."""
    import sqlite3

    db_path = get_base_dir() / "tunechat.db"
    if not db_path.exists():
        console.print("[yellow]Database not found.[/yellow] Run [bold]tunechat init[/bold] or start the API first.")
        raise typer.Exit(1)

    conn = sqlite3.connect(db_path)
    try:
        console.print(f"\n[bold]Database[/bold]  {db_path}")
        size_kb = db_path.stat().st_size / 1024
        console.print(f"[dim]Size: {size_kb:.1f} KB[/dim]\n")
        for table, description in _TABLES:
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]  # noqa: S608
            style = "green" if count > 0 else "dim"
            console.print(f"  [{style}]{table:34s}[/{style}]  {count:>6}  [dim]{description}[/dim]")
    finally:
        conn.close()
    console.print()
