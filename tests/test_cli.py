"""Tests for tunechat.cli module."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tunechat.cli import app
from tunechat.config import load_config
from tunechat.storage import Database, PlaylistTrackRecord

runner = CliRunner()

ROOM = "7f0c1c9e-3a53-4a55-9a4e-0e6f1b7d2a10"


def _seed(base_dir: Path, fn) -> None:
    async def _run() -> None:
        async with Database(base_dir / "tunechat.db") as db:
            await fn(db)

    asyncio.run(_run())


@pytest.fixture()
def no_file_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("tunechat.logging.setup_logging", lambda *a, **kw: None)


# ---------------------------------------------------------------------------
# 1. --help
# ---------------------------------------------------------------------------


def test_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "tunechat" in result.output.lower() or "playlist" in result.output.lower()


# ---------------------------------------------------------------------------
# 2. config show / set
# ---------------------------------------------------------------------------


def test_config_show_masks_secrets(base_dir: Path):
    runner.invoke(app, ["config", "set", "spotify.client_secret", "hunter2"])
    result = runner.invoke(app, ["config", "show"])
    assert result.exit_code == 0
    assert "[matching]" in result.output
    assert "similarity_threshold" in result.output
    assert "hunter2" not in result.output
    assert "***" in result.output


def test_config_set_float(base_dir: Path):
    result = runner.invoke(app, ["config", "set", "matching.similarity_threshold", "0.1"])
    assert result.exit_code == 0
    assert load_config().matching.similarity_threshold == 0.1


def test_config_set_int(base_dir: Path):
    result = runner.invoke(app, ["config", "set", "chat.history_page_size", "25"])
    assert result.exit_code == 0
    assert load_config().chat.history_page_size == 25


def test_config_set_secret_is_not_echoed(base_dir: Path):
    result = runner.invoke(app, ["config", "set", "spotify.client_secret", "hunter2"])
    assert result.exit_code == 0
    assert "hunter2" not in result.output
    assert load_config().spotify.client_secret.get_secret_value() == "hunter2"


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("matching.similarity_threshold", "2", "Invalid value"),
        ("chat.history_page_size", "many", "Invalid value"),
        ("chat.bogus", "1", "Unknown field"),
        ("bogus.field", "1", "Unknown section"),
        ("nodot", "1", "section.field"),
    ],
)
def test_config_set_rejects(base_dir: Path, key: str, value: str, message: str):
    result = runner.invoke(app, ["config", "set", key, value])
    assert result.exit_code == 1
    assert message in result.output


# ---------------------------------------------------------------------------
# 3. logs
# ---------------------------------------------------------------------------


def test_logs_no_log_file(base_dir: Path):
    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_logs_tail(base_dir: Path):
    lines = [f"2026-01-01 [info     ] line_{i}" for i in range(10)]
    (base_dir / "logs" / "tunechat.log").write_text("\n".join(lines) + "\n")

    result = runner.invoke(app, ["logs", "-n", "3"])
    assert result.exit_code == 0
    assert "line_9" in result.output
    assert "line_6" not in result.output


def test_logs_events(base_dir: Path):
    (base_dir / "logs" / "events.log").write_text('{"event": "message_sent", "level": "info"}\n')
    result = runner.invoke(app, ["logs", "--events"])
    assert result.exit_code == 0
    assert "message_sent" in result.output


def test_logs_empty_file(base_dir: Path):
    (base_dir / "logs" / "tunechat.log").write_text("")
    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 0
    assert "empty" in result.output.lower()


# ---------------------------------------------------------------------------
# 4. history
# ---------------------------------------------------------------------------


def test_history_invalid_room(base_dir: Path):
    result = runner.invoke(app, ["history", "not-a-uuid"])
    assert result.exit_code == 1
    assert "Invalid room id" in result.output


def test_history_prints_messages(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.upsert_profile("u1", username="alice")
        await db.insert_message(room_id=ROOM, profile_id="u1", content="hello room")

    _seed(base_dir, seed)
    result = runner.invoke(app, ["history", ROOM])
    assert result.exit_code == 0
    assert "alice" in result.output
    assert "hello room" in result.output


def test_history_empty_room(base_dir: Path):
    result = runner.invoke(app, ["history", ROOM])
    assert result.exit_code == 0
    assert "No messages" in result.output


# ---------------------------------------------------------------------------
# 5. match / similar
# ---------------------------------------------------------------------------


def test_match_empty_database(base_dir: Path):
    result = runner.invoke(app, ["match", "u1"])
    assert result.exit_code == 0
    assert "No matching playlists" in result.output


def test_match_ranks_other_users_playlists(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.replace_top_artists("u1", [("a1", "One"), ("a2", "Two")])
        pl = await db.upsert_playlist(spotify_playlist_id="sp1", name="Shared", submitted_by_user_id="u2")
        await db.replace_playlist_tracks(
            pl.id,
            [
                PlaylistTrackRecord(
                    playlist_id=pl.id,
                    spotify_track_id="t1",
                    name="Track",
                    track_order=0,
                    track_artists=[{"spotify_id": "a1", "name": "One"}],
                )
            ],
        )

    _seed(base_dir, seed)
    result = runner.invoke(app, ["match", "u1"])
    assert result.exit_code == 0
    assert "Shared" in result.output
    assert "0.500" in result.output


def test_similar_users(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.replace_top_artists("a", [("x1", "X"), ("x2", "Y")])
        await db.replace_top_artists("b", [("x1", "X"), ("x3", "Z")])

    _seed(base_dir, seed)
    result = runner.invoke(app, ["similar", "a", "b"])
    assert result.exit_code == 0
    assert "0.333" in result.output
    assert "not similar" not in result.output


# ---------------------------------------------------------------------------
# 6. imports
# ---------------------------------------------------------------------------


def test_import_playlist_bad_reference(base_dir: Path):
    result = runner.invoke(app, ["import-playlist", "u1", "https://example.com/nope"])
    assert result.exit_code == 1
    assert "Not a Spotify playlist reference" in result.output


def test_import_top_artists_without_session(base_dir: Path, no_file_logging: None):
    result = runner.invoke(app, ["import-top-artists", "u1"])
    assert result.exit_code == 1
    assert "No Spotify session" in result.output


def test_delete_playlist_by_submitter(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.upsert_playlist(spotify_playlist_id="sp1", name="Mine", submitted_by_user_id="u1")

    _seed(base_dir, seed)
    result = runner.invoke(app, ["delete-playlist", "u1", "1"])
    assert result.exit_code == 0
    assert "Deleted" in result.output

    result = runner.invoke(app, ["delete-playlist", "u1", "1"])
    assert result.exit_code == 1
    assert "Playlist not found." in result.output


def test_delete_playlist_by_other_user(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.upsert_playlist(spotify_playlist_id="sp1", name="Mine", submitted_by_user_id="u1")

    _seed(base_dir, seed)
    result = runner.invoke(app, ["delete-playlist", "u2", "1"])
    assert result.exit_code == 1
    assert "not authorized" in result.output


# ---------------------------------------------------------------------------
# 7. db status
# ---------------------------------------------------------------------------


def test_db_status_missing(base_dir: Path):
    result = runner.invoke(app, ["db", "status"])
    assert result.exit_code == 1
    assert "not found" in result.output.lower()


def test_db_status_counts(base_dir: Path):
    async def seed(db: Database) -> None:
        await db.upsert_profile("u1", username="alice")

    _seed(base_dir, seed)
    result = runner.invoke(app, ["db", "status"])
    assert result.exit_code == 0
    assert "profiles" in result.output
    assert "chat_messages" in result.output
