"""Session Table for the MCP Hub.

The authoritative map from an opaque session identifier to live
per-session state: the bound provider, the owned OperationSet, the
optional identity and the notification stream. Entries are inserted
only once fully constructed and removed atomically with respect to
concurrent lookups.
"""

import asyncio
import inspect
import time
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from shared.logging import get_logger, short_id
from shared.models import Identity, utcnow
from hub.errors import SessionNotFound
from providers.base import OperationSet

if TYPE_CHECKING:
    from hub.protocol import McpEndpoint

logger = get_logger(__name__)

OperationSetFactory = Callable[[], Any]


class SessionState(str, Enum):
    """Session lifecycle states."""
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """
    Live state of one client's interaction with one provider instance.

    ``lock`` serializes the session's own exchanges so that they are
    processed in arrival order. ``notifications`` feeds the server to
    client stream; ``None`` on the queue marks the end of the stream.
    """

    def __init__(
        self,
        session_id: str,
        provider_name: str,
        operation_set: OperationSet,
        shared: bool = False
    ) -> None:
        self.session_id = session_id
        self.provider_name = provider_name
        self.operation_set = operation_set
        self.shared = shared
        self.identity: Optional[Identity] = None
        self.endpoint: Optional["McpEndpoint"] = None
        self.state = SessionState.INITIALIZING
        self.close_reason: Optional[str] = None
        self.created_at = utcnow()
        self.last_activity = time.monotonic()
        self.lock = asyncio.Lock()
        self.notifications: asyncio.Queue[Optional[dict[str, Any]]] = asyncio.Queue()
        self.stream_open = False

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_activity

    async def push_notification(self, method: str, params: dict[str, Any]) -> None:
        """Queue a JSON-RPC notification for the client stream."""
        if self.closed:
            return
        self.notifications.put_nowait({"jsonrpc": "2.0", "method": method, "params": params})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "mcpName": self.provider_name,
            "state": self.state.value,
            "connectedAt": self.created_at.isoformat(),
            "idleSeconds": round(self.idle_seconds(), 1),
            "identity": self.identity.username if self.identity else None,
            "capabilityLevel": self.identity.capability_level.value if self.identity else None,
            "streamOpen": self.stream_open,
            "shared": self.shared,
        }


class SessionTable:
    """
    Concurrency-safe registry of live sessions.

    Responsibilities:
    - Allocate unique session ids
    - Construct a fresh OperationSet per session (or attach a shared one)
    - Look up sessions for every continuation exchange
    - Destroy sessions and release what they own
    """

    def __init__(self, id_factory: Optional[Callable[[], str]] = None) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    async def create(
        self,
        provider_name: str,
        factory: OperationSetFactory,
        shared_instance: Optional[OperationSet] = None
    ) -> Session:
        """
        Create and insert a new session.

        The OperationSet is constructed before the table lock is taken,
        so a slow provider does not hold up other initiations.

        Args:
            provider_name: Provider the session is bound to
            factory: Callable producing a fresh OperationSet (may be async)
            shared_instance: Shared-singleton OperationSet to attach instead

        Returns:
            The inserted session

        Raises:
            Exception: Whatever the factory raises; nothing is inserted
        """
        if shared_instance is not None:
            operation_set = shared_instance
        else:
            operation_set = factory()
            if inspect.isawaitable(operation_set):
                operation_set = await operation_set

        async with self._lock:
            session_id = self._id_factory()
            while session_id in self._sessions:
                session_id = self._id_factory()

            session = Session(
                session_id=session_id,
                provider_name=provider_name,
                operation_set=operation_set,
                shared=shared_instance is not None,
            )
            self._sessions[session_id] = session

        if not session.shared:
            operation_set.set_notifier(session.push_notification)

        logger.info(
            "Session created",
            session=short_id(session_id),
            provider=provider_name,
            shared=session.shared,
        )
        return session

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Get a live session, or None if absent or closed."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or session.closed:
            return None
        return session

    def require(self, session_id: Optional[str]) -> Session:
        """
        Get a live session.

        Raises:
            SessionNotFound: If absent or closed
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def destroy(self, session_id: str, reason: str = "terminated") -> bool:
        """
        Remove a session and release its OperationSet.

        Safe to call concurrently and repeatedly; only the first call
        for an id has an effect.

        Returns:
            True if a session was removed, False if none was present
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.state = SessionState.CLOSED
            session.close_reason = reason

        # Ends an open notification stream
        session.notifications.put_nowait(None)

        if not session.shared:
            await session.operation_set.close()

        logger.info(
            "Session closed",
            session=short_id(session_id),
            provider=session.provider_name,
            reason=reason,
        )
        return True

    def bind_identity(self, session_id: str, identity: Identity) -> Session:
        """
        Bind an identity to a session, replacing any previous binding.

        Raises:
            SessionNotFound: If the session is absent or closed
        """
        session = self.require(session_id)
        session.identity = identity
        return session

    async def sweep_idle(self, max_idle_seconds: float) -> list[str]:
        """Destroy sessions idle for longer than ``max_idle_seconds``."""
        now = time.monotonic()
        expired = [
            s.session_id for s in list(self._sessions.values())
            if s.idle_seconds(now) > max_idle_seconds and not s.stream_open
        ]
        for session_id in expired:
            await self.destroy(session_id, reason="idle_timeout")
        return expired

    async def close_all(self, reason: str = "shutdown") -> None:
        for session_id in list(self._sessions):
            await self.destroy(session_id, reason=reason)

    def sessions(self) -> list[Session]:
        return [s for s in self._sessions.values() if not s.closed]

    def snapshot(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.sessions()]

    def count_for(self, provider_name: str) -> int:
        return sum(1 for s in self.sessions() if s.provider_name == provider_name)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
