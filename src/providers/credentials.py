"""Credential store for OAuth-backed providers.

Accounts are kept in one JSON document keyed by account name. Writes go
to a temporary file which is then renamed over the store, so readers
never see a partially written document.
"""

import asyncio
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger
from shared.models import utcnow

logger = get_logger(__name__)


class AccountError(LookupError):
    """An account could not be resolved."""


class StoredAccount(BaseModel):
    """
    Credentials of one connected account.

    ``expires_at`` is an epoch timestamp in milliseconds.
    """
    model_config = ConfigDict(populate_by_name=True)

    display_name: str = Field(default="", alias="displayName")
    user_id: str = Field(default="", alias="userId")
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(default="", alias="refreshToken")
    expires_at: int = Field(..., alias="expiresAt")
    scopes: str = Field(default="")
    added_at: datetime = Field(default_factory=utcnow, alias="addedAt")

    def expires_within(self, margin_seconds: float, now: Optional[float] = None) -> bool:
        """True if the access token expires within ``margin_seconds``."""
        now_ms = (now if now is not None else time.time()) * 1000
        return now_ms >= self.expires_at - margin_seconds * 1000


class CredentialStore:
    """
    JSON document store of accounts.

    Mutations are serialized with a lock and written atomically.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def load(self) -> dict[str, StoredAccount]:
        """Read every account; an absent or unreadable store is empty."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError:
            return {}

        try:
            data = json.loads(raw)
            return {name: StoredAccount.model_validate(doc) for name, doc in data.items()}
        except (ValueError, AttributeError) as e:
            logger.warning("Failed to parse credential store, starting fresh", path=str(self.path), error=str(e))
            return {}

    async def _save(self, accounts: dict[str, StoredAccount]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")

        document = {
            name: account.model_dump(mode="json", by_alias=True)
            for name, account in accounts.items()
        }
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2))
        await aiofiles.os.replace(tmp_path, self.path)

    async def get(self, name: str) -> Optional[StoredAccount]:
        return (await self.load()).get(name)

    async def set(self, name: str, account: StoredAccount) -> None:
        async with self._lock:
            accounts = await self.load()
            accounts[name] = account
            await self._save(accounts)
        logger.debug("Account stored", account=name)

    async def remove(self, name: str) -> bool:
        async with self._lock:
            accounts = await self.load()
            if accounts.pop(name, None) is None:
                return False
            await self._save(accounts)
        logger.info("Account removed", account=name)
        return True

    async def list_names(self) -> list[str]:
        return list(await self.load())

    async def resolve_name(self, requested: Optional[str], provider_hint: str = "auth") -> str:
        """
        Pick the account an operation should act on.

        An explicit name must exist; without one, a single connected
        account is used implicitly.

        Raises:
            AccountError: If no account matches unambiguously
        """
        names = await self.list_names()

        if not names:
            raise AccountError(f"No accounts connected. Use {provider_hint} to connect one.")

        if requested:
            if requested not in names:
                raise AccountError(f'Account "{requested}" not found. Available: {", ".join(names)}')
            return requested

        if len(names) == 1:
            return names[0]

        raise AccountError(f"Multiple accounts connected. Specify which one: {', '.join(names)}")
