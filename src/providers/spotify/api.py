"""Thin Spotify Web API client."""

from typing import Any, Optional

import httpx

from providers.http import request_json
from providers.oauth import TokenRefresher


class SpotifyAPI:
    """
    Authenticated requests against the Spotify Web API.

    Every request obtains a valid token for the account first; 429
    responses are retried after the delay Spotify asks for.
    """

    def __init__(self, client: httpx.AsyncClient, tokens: TokenRefresher) -> None:
        self.client = client
        self.tokens = tokens

    async def request(
        self,
        account: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[Any] = None
    ) -> Any:
        token = await self.tokens.ensure_valid_token(account)
        kwargs: dict[str, Any] = {"headers": {"Authorization": f"Bearer {token}"}}
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        if body is not None:
            kwargs["json"] = body
        return await request_json(self.client, method, path, **kwargs)

    async def get(self, account: str, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        return await self.request(account, "GET", path, params=params)

    async def post(self, account: str, path: str, body: Optional[Any] = None) -> Any:
        return await self.request(account, "POST", path, body=body)

    async def put(
        self,
        account: str,
        path: str,
        body: Optional[Any] = None,
        params: Optional[dict[str, Any]] = None
    ) -> Any:
        return await self.request(account, "PUT", path, params=params, body=body)
