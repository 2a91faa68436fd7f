"""Shared fixtures for tunechat tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import pytest_asyncio

from tunechat.storage import Database


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all tunechat runtime files to a temporary directory.

    Patches ``tunechat.config.get_base_dir`` (and the re-imported reference in
    ``tunechat.cli``) so that nothing touches the real ``~/.tunechat/``.
    """
    fake_base = tmp_path / ".tunechat"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("tunechat.config.get_base_dir", lambda: fake_base)
    monkeypatch.setattr("tunechat.cli.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    """A freshly migrated database per test."""
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


# ---------------------------------------------------------------------------
# In-memory realtime transport
# ---------------------------------------------------------------------------


class FakeChannel:
    def __init__(self, name: str, transport: FakeTransport, params: dict | None = None) -> None:
        self.name = name
        self.transport = transport
        self.params = params
        self.handlers: list[tuple[str, str, Callable[..., None]]] = []
        self.status_callback: Callable[..., None] | None = None
        self.sent: list[dict] = []
        self.tracked: list[dict] = []
        self.untracked = 0
        self.presence: dict[str, list[dict]] = {}
        self.fail_send = False

    @property
    def presence_key(self) -> str | None:
        return ((self.params or {}).get("config") or {}).get("presence", {}).get("key")

    def on(self, event_type: str, event: str, callback: Callable[..., None]) -> FakeChannel:
        self.handlers.append((event_type, event, callback))
        return self

    def subscribe(self, status_callback: Callable[..., None]) -> FakeChannel:
        self.status_callback = status_callback
        if self.transport.auto_subscribe:
            status_callback("SUBSCRIBED")
        return self

    async def send(self, message: dict) -> str:
        if self.fail_send:
            raise ConnectionError("socket closed")
        self.sent.append(message)
        return "ok"

    async def track(self, meta: dict) -> str:
        self.tracked.append(meta)
        if self.presence_key:
            self.presence[self.presence_key] = [meta]
        return "ok"

    async def untrack(self) -> str:
        self.untracked += 1
        if self.presence_key:
            self.presence.pop(self.presence_key, None)
        return "ok"

    def presence_state(self) -> dict[str, list[dict]]:
        return {key: list(metas) for key, metas in self.presence.items()}

    # -- test drivers --

    def set_status(self, status: str, err: object | None = None) -> None:
        assert self.status_callback is not None
        self.status_callback(status, err)

    def deliver(self, event_type: str, message: dict) -> None:
        wanted = message.get("event", "message") if isinstance(message, dict) else "message"
        for kind, event, callback in self.handlers:
            if kind == event_type and event in ("*", wanted):
                callback(message)

    def sync_presence(self, state: dict[str, list[dict]]) -> None:
        self.presence = state
        for kind, _event, callback in self.handlers:
            if kind == "presence":
                callback()


class FakeTransport:
    def __init__(self, *, auto_subscribe: bool = True) -> None:
        self.auto_subscribe = auto_subscribe
        self.channels: list[FakeChannel] = []
        self.removed: list[FakeChannel] = []

    def channel(self, name: str, params: dict | None = None) -> FakeChannel:
        ch = FakeChannel(name, self, params)
        self.channels.append(ch)
        return ch

    async def remove_channel(self, channel: FakeChannel) -> None:
        self.removed.append(channel)

    def named(self, name: str) -> list[FakeChannel]:
        return [c for c in self.channels if c.name == name]


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()
