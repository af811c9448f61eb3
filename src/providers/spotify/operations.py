"""Spotify operation set.

Wraps a handful of Spotify Web API endpoints. Accounts are connected
through the OAuth flow and kept in the shared credential store; every
operation takes an optional ``account`` naming which one to act on.
"""

from typing import Any, Optional

import httpx

from shared.logging import get_logger
from shared.models import CapabilityLevel, InvocationContext, ToolResult
from providers.base import OperationHandler, RESTOperationSet
from providers.credentials import CredentialStore
from providers.oauth import TokenRefresher
from providers.spotify.api import SpotifyAPI
from providers.spotify.auth import SPOTIFY_API_URL, SpotifyOAuth

logger = get_logger(__name__)

# Operations not listed here are open to every session
SPOTIFY_OPERATION_LEVELS = {
    # Admin-only
    "spotify-auth": CapabilityLevel.ADMIN,
    "spotify-remove-account": CapabilityLevel.ADMIN,
    "spotify-play": CapabilityLevel.ADMIN,
    "spotify-pause": CapabilityLevel.ADMIN,
    # Editor
    "spotify-create-playlist": CapabilityLevel.EDITOR,
    "spotify-add-to-playlist": CapabilityLevel.EDITOR,
}

ACCOUNT_PARAM = {
    "name": "account",
    "type": "string",
    "description": "Connected account name (optional when only one is connected)",
    "required": False,
}


def _summarize_track(track: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": track.get("name"),
        "artists": [a.get("name") for a in track.get("artists", [])],
        "album": (track.get("album") or {}).get("name"),
        "uri": track.get("uri"),
        "durationMs": track.get("duration_ms"),
    }


def _summarize_item(kind: str, item: dict[str, Any]) -> dict[str, Any]:
    if kind == "track":
        return _summarize_track(item)
    summary = {"name": item.get("name"), "uri": item.get("uri"), "id": item.get("id")}
    if kind == "album":
        summary["artists"] = [a.get("name") for a in item.get("artists", [])]
        summary["releaseDate"] = item.get("release_date")
    elif kind == "artist":
        summary["genres"] = item.get("genres", [])
        summary["followers"] = (item.get("followers") or {}).get("total")
    elif kind == "playlist":
        summary["owner"] = (item.get("owner") or {}).get("display_name")
        summary["tracks"] = (item.get("tracks") or {}).get("total")
    return summary


class SpotifyOperations(RESTOperationSet):
    """
    Spotify operations of one session.

    The HTTP client is per session; the credential store and the token
    refresher are shared by every session of the provider.
    """

    provider = "spotify"
    base_url = SPOTIFY_API_URL

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenRefresher,
        oauth: SpotifyOAuth,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.oauth = oauth
        super().__init__(transport=transport)

    def _api(self) -> SpotifyAPI:
        return SpotifyAPI(self._get_client(), self.tokens)

    def _define_operations(self) -> None:
        self._add(
            "spotify-accounts",
            "List the Spotify accounts connected to the hub",
        )
        self._add(
            "spotify-auth",
            "Get the authorization URL that connects a new Spotify account",
            [{"name": "account", "type": "string",
              "description": "Name to store the account under"}],
        )
        self._add(
            "spotify-remove-account",
            "Disconnect a Spotify account and delete its stored tokens",
            [{"name": "account", "type": "string", "description": "Account to remove"}],
        )
        self._add(
            "spotify-search",
            "Search Spotify for tracks, albums, artists, or playlists",
            [
                {"name": "query", "type": "string", "description": "Search query"},
                {"name": "type", "type": "string", "description": "Item type to search",
                 "enum": ["track", "album", "artist", "playlist"], "default": "track"},
                {"name": "limit", "type": "integer", "description": "Maximum results",
                 "minimum": 1, "maximum": 50, "default": 10},
                ACCOUNT_PARAM,
            ],
        )
        self._add(
            "spotify-list-playlists",
            "List the playlists of an account",
            [
                {"name": "limit", "type": "integer", "description": "Maximum playlists",
                 "minimum": 1, "maximum": 50, "default": 20},
                ACCOUNT_PARAM,
            ],
        )
        self._add(
            "spotify-create-playlist",
            "Create a new playlist",
            [
                {"name": "name", "type": "string", "description": "Playlist name"},
                {"name": "description", "type": "string", "description": "Playlist description",
                 "required": False},
                {"name": "public", "type": "boolean", "description": "Whether the playlist is public",
                 "default": False},
                ACCOUNT_PARAM,
            ],
        )
        self._add(
            "spotify-add-to-playlist",
            "Add tracks to a playlist",
            [
                {"name": "playlist_id", "type": "string", "description": "Playlist id"},
                {"name": "uris", "type": "array", "items": {"type": "string"},
                 "description": "Track URIs (spotify:track:...)"},
                ACCOUNT_PARAM,
            ],
        )
        self._add(
            "spotify-now-playing",
            "Show the track currently playing",
            [ACCOUNT_PARAM],
        )
        self._add(
            "spotify-play",
            "Start or resume playback",
            [
                {"name": "uris", "type": "array", "items": {"type": "string"},
                 "description": "Track URIs to play", "required": False},
                {"name": "context_uri", "type": "string",
                 "description": "Album, artist or playlist URI to play", "required": False},
                {"name": "device_id", "type": "string", "description": "Target device",
                 "required": False},
                ACCOUNT_PARAM,
            ],
        )
        self._add(
            "spotify-pause",
            "Pause playback",
            [
                {"name": "device_id", "type": "string", "description": "Target device",
                 "required": False},
                ACCOUNT_PARAM,
            ],
        )

    def _handlers(self) -> dict[str, OperationHandler]:
        return {
            "spotify-accounts": self._accounts,
            "spotify-auth": self._auth,
            "spotify-remove-account": self._remove_account,
            "spotify-search": self._search,
            "spotify-list-playlists": self._list_playlists,
            "spotify-create-playlist": self._create_playlist,
            "spotify-add-to-playlist": self._add_to_playlist,
            "spotify-now-playing": self._now_playing,
            "spotify-play": self._play,
            "spotify-pause": self._pause,
        }

    async def _account(self, arguments: dict[str, Any]) -> str:
        return await self.store.resolve_name(arguments.get("account"), provider_hint="spotify-auth")

    # Accounts

    async def _accounts(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        accounts = await self.store.load()
        if not accounts:
            return "No Spotify accounts connected. Use spotify-auth to connect one."
        return [
            {
                "account": name,
                "displayName": account.display_name,
                "userId": account.user_id,
                "tokenExpired": account.expires_within(0),
            }
            for name, account in accounts.items()
        ]

    async def _auth(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        url = self.oauth.authorization_url(arguments["account"])
        return (
            f'Open this URL to connect the Spotify account "{arguments["account"]}":\n{url}'
        )

    async def _remove_account(self, arguments: dict[str, Any], context: InvocationContext) -> ToolResult:
        name = arguments["account"]
        if not await self.store.remove(name):
            return ToolResult.error(f'Account "{name}" not found', "NOT_FOUND")
        return ToolResult.text(f'Account "{name}" removed')

    # Catalog

    async def _search(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        account = await self._account(arguments)
        kind = arguments.get("type", "track")
        data = await self._api().get(account, "/search", {
            "q": arguments["query"],
            "type": kind,
            "limit": arguments.get("limit", 10),
        })
        items = ((data or {}).get(f"{kind}s") or {}).get("items", [])
        return [_summarize_item(kind, item) for item in items if item]

    # Playlists

    async def _list_playlists(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        account = await self._account(arguments)
        data = await self._api().get(account, "/me/playlists", {"limit": arguments.get("limit", 20)})
        return [_summarize_item("playlist", item) for item in (data or {}).get("items", []) if item]

    async def _create_playlist(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        account = await self._account(arguments)
        api = self._api()

        stored = await self.store.get(account)
        user_id = stored.user_id if stored else ""
        if not user_id:
            profile = await api.get(account, "/me")
            user_id = (profile or {}).get("id", "")

        playlist = await api.post(account, f"/users/{user_id}/playlists", {
            "name": arguments["name"],
            "description": arguments.get("description", ""),
            "public": arguments.get("public", False),
        })
        logger.info(
            "Playlist created",
            account=account,
            playlist=(playlist or {}).get("id"),
            session=context.session_id,
        )
        return _summarize_item("playlist", playlist or {})

    async def _add_to_playlist(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        account = await self._account(arguments)
        uris = arguments["uris"]
        await self._api().post(account, f"/playlists/{arguments['playlist_id']}/tracks", {"uris": uris})
        return f"Added {len(uris)} track(s) to playlist {arguments['playlist_id']}"

    # Playback

    async def _now_playing(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        account = await self._account(arguments)
        data = await self._api().get(account, "/me/player/currently-playing")
        if not data or not data.get("item"):
            return "Nothing is playing right now."
        return {
            "isPlaying": data.get("is_playing", False),
            "progressMs": data.get("progress_ms"),
            "track": _summarize_track(data["item"]),
        }

    async def _play(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        account = await self._account(arguments)
        body: dict[str, Any] = {}
        if arguments.get("uris"):
            body["uris"] = arguments["uris"]
        if arguments.get("context_uri"):
            body["context_uri"] = arguments["context_uri"]
        await self._api().put(
            account,
            "/me/player/play",
            body=body or None,
            params={"device_id": arguments.get("device_id")},
        )
        return "Playback started"

    async def _pause(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        account = await self._account(arguments)
        await self._api().put(account, "/me/player/pause", params={"device_id": arguments.get("device_id")})
        return "Playback paused"
