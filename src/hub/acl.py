"""Capability Registry (ACL) for the MCP Hub.

Gates individual operations by a capability level bound to the session.

Per provider the registry holds:
- the declared operation -> minimum level map (unmapped operations are open)
- a TTL-cached identity directory (username -> display name + level)

Sessions without a bound identity run at the directory default level,
or the provider default when no directory has loaded. Exchanges with no
session at all come from a trusted local channel and run at the highest
level.
"""

import asyncio
import json
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import yaml
from pydantic import AliasChoices, BaseModel, Field

from shared.logging import get_logger, short_id
from shared.models import AclPolicy, CapabilityLevel, Identity
from hub.errors import DirectoryUnavailable, PermissionDenied, UnknownIdentity
from hub.sessions import SessionTable

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 60.0
OPEN_POLICY = AclPolicy()


def identify_operation(provider_name: str) -> str:
    return f"{provider_name}-identify"


def whoami_operation(provider_name: str) -> str:
    return f"{provider_name}-whoami"


class AclUser(BaseModel):
    """Identity directory entry."""
    display_name: str = Field(validation_alias=AliasChoices("displayName", "display_name"))
    capability_level: CapabilityLevel = Field(
        validation_alias=AliasChoices("capabilityLevel", "role", "capability_level"),
    )


class AclDirectory(BaseModel):
    """Identity directory document of one provider."""
    users: dict[str, AclUser] = Field(default_factory=dict)
    default_capability_level: CapabilityLevel = Field(
        default=CapabilityLevel.VIEWER,
        validation_alias=AliasChoices(
            "defaultCapabilityLevel", "defaultRole", "default_capability_level"
        ),
    )


class DirectoryState(str, Enum):
    """Load state of an identity directory."""
    UNLOADED = "unloaded"
    LOADED = "loaded"
    STALE = "stale"
    LOAD_FAILED = "load_failed"


class DirectoryCache:
    """
    Time-bounded cache over one identity directory file.

    A failed reload keeps serving the last good document; until one has
    loaded, ``get`` returns None. JSON is the default format; files with
    a ``.yaml``/``.yml`` suffix are read as YAML.
    """

    def __init__(
        self,
        provider_name: str,
        path: str | Path,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.provider_name = provider_name
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._directory: Optional[AclDirectory] = None
        self._loaded_at: Optional[float] = None
        self._last_failed = False
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        if self._directory is None or self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self.ttl_seconds

    @property
    def state(self) -> DirectoryState:
        if self._last_failed:
            return DirectoryState.LOAD_FAILED
        if self._directory is None:
            return DirectoryState.UNLOADED
        if self._is_fresh():
            return DirectoryState.LOADED
        return DirectoryState.STALE

    async def get(self) -> Optional[AclDirectory]:
        """Return the directory, reloading it when the cache is stale."""
        if self._is_fresh():
            return self._directory

        async with self._lock:
            # Another caller may have reloaded while we waited
            if not self._is_fresh():
                await self._reload()
        return self._directory

    async def _reload(self) -> None:
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
            if self.path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(raw)
            else:
                data = json.loads(raw)
            directory = AclDirectory.model_validate(data or {})
        except FileNotFoundError:
            self._last_failed = True
            if self._directory is None:
                logger.warning(
                    "Identity directory not found, everyone gets the default level",
                    provider=self.provider_name,
                    path=str(self.path),
                )
            return
        except (OSError, ValueError, yaml.YAMLError) as e:
            self._last_failed = True
            logger.error(
                "Identity directory load failed",
                provider=self.provider_name,
                path=str(self.path),
                error=str(e),
                retained=self._directory is not None,
            )
            return

        self._directory = directory
        self._loaded_at = self._clock()
        self._last_failed = False
        logger.debug(
            "Identity directory loaded",
            provider=self.provider_name,
            users=len(directory.users),
        )


class PermissionCheck(BaseModel):
    """Outcome of a capability check."""
    allowed: bool
    level: CapabilityLevel
    required_level: CapabilityLevel
    reason: Optional[str] = None


class CapabilityRegistry:
    """
    Per-provider access control.

    Responsibilities:
    - Resolve the required level of an operation
    - Bind and look up session identities
    - List the identities of a provider's directory
    - Decide permission checks
    """

    def __init__(
        self,
        sessions: SessionTable,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.sessions = sessions
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._policies: dict[str, AclPolicy] = {}
        self._directories: dict[str, DirectoryCache] = {}

    def register_policy(self, provider_name: str, policy: Optional[AclPolicy]) -> None:
        """Install a provider's policy; None means every operation is open."""
        policy = policy or OPEN_POLICY
        self._policies[provider_name] = policy
        if policy.directory_path:
            self._directories[provider_name] = DirectoryCache(
                provider_name,
                policy.directory_path,
                ttl_seconds=self.ttl_seconds,
                clock=self._clock,
            )

    def policy(self, provider_name: str) -> AclPolicy:
        return self._policies.get(provider_name, OPEN_POLICY)

    def has_directory(self, provider_name: str) -> bool:
        return provider_name in self._directories

    def directory_state(self, provider_name: str) -> Optional[DirectoryState]:
        cache = self._directories.get(provider_name)
        return cache.state if cache else None

    def required_level(self, provider_name: str, operation_name: str) -> CapabilityLevel:
        """Declared minimum level, or the provider's open level if unmapped."""
        return self.policy(provider_name).required_level(operation_name)

    async def directory(self, provider_name: str) -> Optional[AclDirectory]:
        cache = self._directories.get(provider_name)
        if cache is None:
            return None
        return await cache.get()

    async def list_identities(self, provider_name: str) -> list[str]:
        """Known usernames; empty if no directory has loaded."""
        directory = await self.directory(provider_name)
        if directory is None:
            return []
        return list(directory.users)

    async def default_level(self, provider_name: str) -> CapabilityLevel:
        directory = await self.directory(provider_name)
        if directory is not None:
            return directory.default_capability_level
        return self.policy(provider_name).default_level

    async def bind_identity(self, session_id: str, username: str) -> Identity:
        """
        Bind a directory identity to a session.

        Re-binding overwrites the previous identity.

        Raises:
            SessionNotFound: If the session is not live
            DirectoryUnavailable: If no directory has ever loaded
            UnknownIdentity: If the username is not in the directory
        """
        session = self.sessions.require(session_id)
        provider_name = session.provider_name

        directory = await self.directory(provider_name)
        if directory is None:
            cache = self._directories.get(provider_name)
            raise DirectoryUnavailable(provider_name, str(cache.path) if cache else None)

        user = directory.users.get(username)
        if user is None:
            logger.warning(
                "Identify failed: unknown user",
                provider=provider_name,
                username=username,
                session=short_id(session_id),
            )
            raise UnknownIdentity(username, list(directory.users))

        identity = Identity(
            username=username,
            display_name=user.display_name,
            capability_level=user.capability_level,
        )
        self.sessions.bind_identity(session_id, identity)

        logger.info(
            "Session identified",
            provider=provider_name,
            session=short_id(session_id),
            username=username,
            level=identity.capability_level.value,
        )
        return identity

    def session_identity(self, session_id: Optional[str]) -> Optional[Identity]:
        session = self.sessions.get(session_id)
        return session.identity if session else None

    async def current_level(self, session_id: Optional[str], provider_name: str) -> CapabilityLevel:
        """Level a session runs at; the highest level without a session."""
        if session_id is None:
            return CapabilityLevel.highest()
        identity = self.session_identity(session_id)
        if identity is not None:
            return identity.capability_level
        return await self.default_level(provider_name)

    async def check_permission(
        self,
        session_id: Optional[str],
        provider_name: str,
        operation_name: str
    ) -> PermissionCheck:
        """
        Decide whether a session may invoke an operation.

        Open operations are always allowed. Without a session the caller
        is a trusted local channel and is allowed at the highest level.
        Otherwise the session level must rank at least the required one.
        """
        policy = self.policy(provider_name)
        required = policy.required_level(operation_name)
        level = await self.current_level(session_id, provider_name)

        if required.rank <= policy.open_level.rank or session_id is None:
            return PermissionCheck(allowed=True, level=level, required_level=required)

        if level.satisfies(required):
            return PermissionCheck(allowed=True, level=level, required_level=required)

        logger.warning(
            "Permission denied",
            provider=provider_name,
            operation=operation_name,
            session=short_id(session_id),
            level=level.value,
            required=required.value,
        )
        reason = f'Requires "{required.value}" capability.'
        if self.has_directory(provider_name):
            reason += f" Use {identify_operation(provider_name)} to authenticate."
        return PermissionCheck(
            allowed=False,
            level=level,
            required_level=required,
            reason=reason,
        )

    async def require_permission(
        self,
        session_id: Optional[str],
        provider_name: str,
        operation_name: str
    ) -> PermissionCheck:
        """
        Like ``check_permission`` but raises on denial.

        Raises:
            PermissionDenied: Carrying the required and current levels
        """
        check = await self.check_permission(session_id, provider_name, operation_name)
        if not check.allowed:
            raise PermissionDenied(
                check.reason or "Permission denied",
                operation=operation_name,
                required_level=check.required_level.value,
                current_level=check.level.value,
            )
        return check
