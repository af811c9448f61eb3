"""Spotify provider.

Registers the Spotify operation set with its access-control map and
identity directory, and the OAuth callback route. Without client
credentials the provider is registered disabled.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Optional

import httpx

from shared.logging import get_logger
from shared.models import AclPolicy, ProviderDescriptor
from providers.credentials import CredentialStore
from providers.oauth import TokenRefresher
from providers.spotify.auth import SpotifyOAuth, create_callback_router
from providers.spotify.operations import SPOTIFY_OPERATION_LEVELS, SpotifyOperations

if TYPE_CHECKING:
    from hub.core import Hub

logger = get_logger(__name__)


def create_spotify_descriptor(
    hub: "Hub",
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ProviderDescriptor:
    settings = hub.settings
    spotify = settings.spotify

    store = CredentialStore(Path(settings.hub.data_dir) / "spotify-accounts.json")
    oauth = SpotifyOAuth(spotify, transport=transport)
    tokens = TokenRefresher(store, oauth.refresh)

    enabled = spotify.enabled and spotify.configured
    if spotify.enabled and not spotify.configured:
        logger.warning("Spotify client credentials missing, provider disabled")

    return ProviderDescriptor(
        name="spotify",
        description="Spotify Web API: search, playlists and playback for connected accounts",
        version="1.0.0",
        enabled=enabled,
        factory=lambda: SpotifyOperations(store, tokens, oauth, transport=transport),
        acl=AclPolicy(
            operation_levels=SPOTIFY_OPERATION_LEVELS,
            directory_path=settings.acl_path("spotify", spotify.acl_path),
        ),
        router=create_callback_router(oauth, store),
    )


def register_spotify_provider(hub: "Hub") -> None:
    hub.register(create_spotify_descriptor(hub))


__all__ = [
    "SpotifyOperations",
    "create_spotify_descriptor",
    "register_spotify_provider",
]
