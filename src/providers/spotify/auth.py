"""Spotify OAuth: authorization URLs, code exchange and token refresh."""

import time
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from shared.config import SpotifySettings
from shared.logging import get_logger
from providers.credentials import CredentialStore, StoredAccount
from providers.http import UpstreamError, request_json
from providers.oauth import TokenResponse

logger = get_logger(__name__)

SPOTIFY_AUTH_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_TOKEN_URL = "https://accounts.spotify.com/api/token"
SPOTIFY_API_URL = "https://api.spotify.com/v1"

SPOTIFY_SCOPES = " ".join([
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "user-read-recently-played",
    "user-library-read",
    "user-read-private",
    "user-read-email",
])


class SpotifyOAuth:
    """Client for the Spotify accounts service."""

    def __init__(
        self,
        settings: SpotifySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.timeout = timeout

    def _credentials(self) -> tuple[str, str]:
        if not self.settings.configured:
            raise RuntimeError("SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set")
        return self.settings.client_id, self.settings.client_secret

    def authorization_url(self, account_name: str) -> str:
        client_id, _ = self._credentials()
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": self.settings.redirect_uri,
            "scope": SPOTIFY_SCOPES,
            "state": account_name,
            "show_dialog": "true",
        }
        return f"{SPOTIFY_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: dict[str, str]) -> TokenResponse:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            payload = await request_json(
                client,
                "POST",
                SPOTIFY_TOKEN_URL,
                data=data,
                auth=self._credentials(),
            )
        if not payload:
            raise UpstreamError(502, "empty token response")
        return TokenResponse.model_validate(payload)

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Obtain a new access token from a refresh token."""
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })

    async def fetch_profile(self, access_token: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            profile = await request_json(
                client,
                "GET",
                f"{SPOTIFY_API_URL}/me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        return profile or {}


def create_callback_router(oauth: SpotifyOAuth, store: CredentialStore) -> APIRouter:
    """Router completing the OAuth flow at ``GET /spotify/callback``."""
    router = APIRouter(tags=["Spotify"])

    @router.get("/spotify/callback")
    async def spotify_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None
    ):
        if error:
            logger.warning("Spotify authorization refused", account=state, error=error)
            return JSONResponse(
                status_code=400,
                content={"status": "error", "error": f"Authorization failed: {error}"},
            )

        if not code or not state:
            return JSONResponse(
                status_code=400,
                content={"status": "error", "error": "Code or state parameter missing"},
            )

        try:
            tokens = await oauth.exchange_code(code)
            profile = await oauth.fetch_profile(tokens.access_token)
        except UpstreamError as e:
            logger.error("Spotify OAuth callback failed", account=state, error=str(e))
            return JSONResponse(status_code=502, content={"status": "error", "error": str(e)})

        account = StoredAccount(
            display_name=profile.get("display_name") or state,
            user_id=profile.get("id", ""),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or "",
            expires_at=int((time.time() + tokens.expires_in) * 1000),
            scopes=tokens.scope,
        )
        await store.set(state, account)

        logger.info("Spotify account connected", account=state, user_id=account.user_id)
        return {
            "status": "connected",
            "account": state,
            "displayName": account.display_name,
        }

    return router
