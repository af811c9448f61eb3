"""OAuth access token refresh.

Concurrent callers needing a refresh for the same account await one
in-flight refresh instead of each spending the refresh token.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from shared.logging import get_logger
from providers.credentials import AccountError, CredentialStore, StoredAccount

logger = get_logger(__name__)

REFRESH_MARGIN_SECONDS = 60.0


class TokenResponse(BaseModel):
    """OAuth token endpoint response."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600
    token_type: str = "Bearer"
    scope: str = ""


RefreshFunction = Callable[[str], Awaitable[TokenResponse]]


class TokenRefresher:
    """
    Hands out valid access tokens for stored accounts.

    Tokens are refreshed ``margin_seconds`` before they expire. One
    refresh task runs per account at a time.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresh: RefreshFunction,
        margin_seconds: float = REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time
    ) -> None:
        self.store = store
        self._refresh = refresh
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[str]] = {}

    async def ensure_valid_token(self, account_name: str) -> str:
        """
        Return a valid access token for an account.

        Raises:
            AccountError: If the account is not stored
            Exception: Whatever the refresh function raises
        """
        account = await self.store.get(account_name)
        if account is None:
            raise AccountError(f'Account "{account_name}" not found')

        if not account.expires_within(self.margin_seconds, now=self._clock()):
            return account.access_token

        task = self._inflight.get(account_name)
        if task is None:
            task = asyncio.create_task(self._refresh_account(account_name, account))
            self._inflight[account_name] = task

        # One caller going away must not cancel the refresh for the others
        return await asyncio.shield(task)

    async def _refresh_account(self, account_name: str, account: StoredAccount) -> str:
        try:
            logger.info("Refreshing access token", account=account_name)
            tokens = await self._refresh(account.refresh_token)

            updated = account.model_copy(update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or account.refresh_token,
                "expires_at": int((self._clock() + tokens.expires_in) * 1000),
            })
            await self.store.set(account_name, updated)
            return tokens.access_token
        finally:
            self._inflight.pop(account_name, None)
