"""Interactive setup wizard for tunechat.

Guides the user through:
  1. Spotify developer app credentials
  2. Spotify OAuth 2.0 Authorization Code flow (via spotipy) to obtain the
     refresh token stored for a tunechat user
"""

from __future__ import annotations

import time
from dataclasses import dataclass

import spotipy
from pydantic import SecretStr
from rich.console import Console
from rich.prompt import Prompt
from spotipy.cache_handler import MemoryCacheHandler
from spotipy.oauth2 import SpotifyOAuth

from tunechat.config import AppConfig, SpotifyConfig

console = Console()

SPOTIFY_SCOPES = (
    "user-read-email user-read-private user-top-read user-library-read user-library-modify "
    "playlist-read-private playlist-modify-public playlist-modify-private "
    "streaming user-read-playback-state user-modify-playback-state"
)


@dataclass
class AuthorizedUser:
    """Tokens obtained for one tunechat user during the wizard."""

    user_id: str
    provider_user_id: str
    display_name: str
    access_token: str
    refresh_token: str
    expires_at: int


# ---------------------------------------------------------------------------
# Spotify
# ---------------------------------------------------------------------------


def _wizard_credentials(current: SpotifyConfig) -> SpotifyConfig:
    console.print("[bold]Step 1: Spotify app[/bold]")
    console.print(
        "Create a Spotify Developer app at "
        "[link]https://developer.spotify.com/dashboard[/link]\n"
        "Set a redirect URI (e.g. [bold]http://127.0.0.1:8888/callback[/bold])\n"
    )

    client_id = Prompt.ask("Spotify Client ID", default=current.client_id or None).strip()
    client_secret = Prompt.ask("Spotify Client Secret", password=True).strip()
    redirect_uri = Prompt.ask("Redirect URI", default=current.redirect_uri).strip()
    console.print()
    return SpotifyConfig(
        client_id=client_id,
        client_secret=SecretStr(client_secret),
        redirect_uri=redirect_uri,
    )


def authorize_user(spotify: SpotifyConfig, user_id: str) -> AuthorizedUser | None:
    """Run the browser OAuth flow and return the tokens for *user_id*."""
    # MemoryCacheHandler keeps spotipy from writing .cache files
    sp_oauth = SpotifyOAuth(
        client_id=spotify.client_id,
        client_secret=spotify.client_secret.get_secret_value(),
        redirect_uri=spotify.redirect_uri,
        scope=SPOTIFY_SCOPES,
        cache_handler=MemoryCacheHandler(),
        open_browser=True,
    )

    console.print("Opening browser for Spotify authorization...")
    auth_url = sp_oauth.get_authorize_url()
    console.print(f"If the browser does not open, visit:\n  [link]{auth_url}[/link]\n")

    token_info = sp_oauth.get_access_token(as_dict=True)
    if not token_info or "refresh_token" not in token_info:
        console.print("[red]Failed to obtain Spotify tokens.[/red]")
        return None

    sp = spotipy.Spotify(auth=token_info["access_token"])
    me = sp.current_user()
    name = me.get("display_name") or me.get("id", "?")
    console.print(f"[green]Spotify authorized[/green] as [bold]{name}[/bold].\n")

    return AuthorizedUser(
        user_id=user_id,
        provider_user_id=me["id"],
        display_name=name,
        access_token=token_info["access_token"],
        refresh_token=token_info["refresh_token"],
        expires_at=int(token_info.get("expires_at") or time.time() + token_info.get("expires_in", 3600)),
    )


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def run_wizard(current: AppConfig | None = None) -> tuple[AppConfig, AuthorizedUser | None]:
    """Run the interactive setup wizard; returns the new config and the authorized user, if any."""
    cfg = current or AppConfig()
    console.print("\n[bold cyan]tunechat Setup Wizard[/bold cyan]\n")

    cfg = cfg.model_copy(update={"spotify": _wizard_credentials(cfg.spotify)})

    console.print("[bold]Step 2: Authorize a user[/bold]")
    user_id = Prompt.ask("tunechat user id to link", default="local").strip()
    authorized = authorize_user(cfg.spotify, user_id)

    console.print("[green bold]Configuration complete![/green bold]\n")
    return cfg, authorized
