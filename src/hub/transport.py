"""Transport Multiplexer for the MCP Hub.

Decides for every inbound exchange whether it initiates a session or
continues one, creates or locates the Session Table entry and forwards
the payload to the session's protocol endpoint. Implements the session
lifecycle:

    NoSession -> Initializing -> Active -> Closed

Every failure is converted to a structured reply here; nothing raised
by a provider reaches the listener.
"""

import asyncio
import inspect
import json
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, Field

from shared.logging import get_logger, short_id
from shared.models import ProviderDescriptor
from hub.errors import (
    INTERNAL_ERROR,
    PARSE_ERROR,
    HubError,
    SessionNotFound,
    StreamConflict,
    TransportFailure,
)
from hub.invoker import OperationInvoker
from hub.protocol import McpEndpoint, is_initialize_request, request_id_of, rpc_error
from hub.registry import ProviderRegistry
from hub.sessions import Session, SessionState, SessionTable
from providers.base import OperationSet

logger = get_logger(__name__)

SESSION_HEADER = "mcp-session-id"


class TransportReply(BaseModel):
    """Transport-neutral reply to one exchange."""
    status_code: int = 200
    body: Optional[Any] = None
    headers: dict[str, str] = Field(default_factory=dict)


def parse_payload(body: bytes) -> Any:
    """
    Decode an exchange body.

    Raises:
        TransportFailure: With a parse error code if the body is not JSON
    """
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise TransportFailure(f"Parse error: {e}", rpc_code=PARSE_ERROR) from e


def error_reply(error: HubError, request_id: Any = None) -> TransportReply:
    return TransportReply(status_code=error.status_code, body=error.to_rpc_error(request_id))


class TransportMultiplexer:
    """
    Routes exchanges to per-session protocol endpoints.

    Responsibilities:
    - Initiate sessions on initialize requests
    - Forward continuation exchanges in arrival order per session
    - Serve the server-to-client notification stream
    - Terminate sessions on request, disconnect or provider close
    - Own shared-singleton provider instances
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        sessions: SessionTable,
        invoker: OperationInvoker,
        keepalive_seconds: float = 15.0
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.invoker = invoker
        self.keepalive_seconds = keepalive_seconds
        self._shared: dict[str, OperationSet] = {}
        self._shared_lock = asyncio.Lock()

    # Client -> server

    async def handle_post(
        self,
        provider_name: str,
        session_id: Optional[str],
        body: bytes
    ) -> TransportReply:
        """
        Handle one client-to-server exchange.

        The provider and session are resolved before the body is parsed.
        """
        try:
            descriptor = self.registry.resolve(provider_name)
            if session_id:
                session = self._require_session(descriptor, session_id)
                payload = parse_payload(body)
                return await self._forward(session, payload)

            payload = parse_payload(body)
            return await self._initiate(descriptor, payload)
        except HubError as e:
            return error_reply(e)

    async def _initiate(self, descriptor: ProviderDescriptor, payload: Any) -> TransportReply:
        request_id = request_id_of(payload)

        if not is_initialize_request(payload):
            raise TransportFailure(
                "Bad Request: no valid session id provided. "
                "Send an initialize request to start a session."
            )

        try:
            shared = await self.shared_instance(descriptor) if descriptor.shared else None
            session = await self.sessions.create(
                descriptor.name,
                descriptor.factory,
                shared_instance=shared,
            )
        except Exception as e:
            logger.error(
                "Provider instantiation failed",
                provider=descriptor.name,
                error=str(e),
                exc_info=True,
            )
            return TransportReply(
                status_code=500,
                body=rpc_error(
                    request_id,
                    INTERNAL_ERROR,
                    f'Failed to start MCP server "{descriptor.name}": {e}',
                ),
            )

        session_id = session.session_id
        session.endpoint = McpEndpoint(
            descriptor,
            session.operation_set,
            self.invoker,
            session_id=session_id,
        )
        if not session.shared:
            session.operation_set.add_close_callback(
                lambda: self.sessions.destroy(session_id, reason="provider_closed")
            )

        async with session.lock:
            response = await session.endpoint.handle_message(payload)

        if response is None or "error" in response:
            await self.sessions.destroy(session_id, reason="initialize_failed")
            return TransportReply(status_code=400, body=response)

        session.state = SessionState.ACTIVE
        session.touch()
        logger.info(
            "Session active",
            session=short_id(session_id),
            provider=descriptor.name,
            protocol_version=session.endpoint.protocol_version,
        )
        return TransportReply(body=response, headers={SESSION_HEADER: session_id})

    async def _forward(self, session: Session, payload: Any) -> TransportReply:
        request_id = request_id_of(payload)

        async with session.lock:
            # Destroyed while this exchange waited for the lock
            if session.closed or session.endpoint is None:
                raise SessionNotFound(session.session_id)

            session.touch()
            try:
                response = await session.endpoint.handle_payload(payload)
            except Exception as e:
                logger.error(
                    "Exchange failed",
                    session=short_id(session.session_id),
                    provider=session.provider_name,
                    error=str(e),
                    exc_info=True,
                )
                return TransportReply(
                    status_code=500,
                    body=rpc_error(request_id, INTERNAL_ERROR, str(e)),
                    headers={SESSION_HEADER: session.session_id},
                )
            session.touch()

        if response is None:
            return TransportReply(status_code=202, headers={SESSION_HEADER: session.session_id})
        return TransportReply(body=response, headers={SESSION_HEADER: session.session_id})

    def _require_session(self, descriptor: ProviderDescriptor, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None or session.provider_name != descriptor.name:
            logger.warning(
                "Unknown session",
                session=short_id(session_id),
                provider=descriptor.name,
            )
            raise SessionNotFound(session_id)
        return session

    # Server -> client

    async def open_stream(self, provider_name: str, session_id: Optional[str]) -> Session:
        """
        Claim the notification stream of a session.

        Raises:
            UnknownProvider: If the provider is not registered
            ProviderDisabled: If the provider is disabled
            TransportFailure: If no session id was supplied
            SessionNotFound: If the session is not live
            StreamConflict: If the session already has an open stream
        """
        descriptor = self.registry.resolve(provider_name)
        if not session_id:
            raise TransportFailure(f"Bad Request: {SESSION_HEADER} header is required")

        session = self._require_session(descriptor, session_id)
        if session.stream_open:
            raise StreamConflict(session_id)

        session.touch()
        logger.info("Notification stream opened", session=short_id(session_id))
        return session

    async def stream_events(self, session: Session) -> AsyncIterator[str]:
        """
        Server-sent events for a session.

        The stream ends when the session closes. When the client goes
        away the whole session is torn down.
        """
        session.stream_open = True
        try:
            yield ": connected\n\n"
            while True:
                try:
                    message = await asyncio.wait_for(
                        session.notifications.get(),
                        timeout=self.keepalive_seconds,
                    )
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                if message is None:
                    break
                session.touch()
                yield f"event: message\ndata: {json.dumps(message)}\n\n"
        finally:
            session.stream_open = False
            logger.info("Notification stream closed", session=short_id(session.session_id))
            await self.sessions.destroy(session.session_id, reason="stream_closed")

    # Termination

    async def handle_delete(self, provider_name: str, session_id: Optional[str]) -> TransportReply:
        """Explicitly terminate a session."""
        try:
            descriptor = self.registry.resolve(provider_name)
            if not session_id:
                raise TransportFailure(f"Bad Request: {SESSION_HEADER} header is required")
            session = self._require_session(descriptor, session_id)
        except HubError as e:
            return error_reply(e)

        await self.sessions.destroy(session.session_id, reason="client_terminated")
        return TransportReply(status_code=200)

    async def sweep_idle(self, max_idle_seconds: float) -> list[str]:
        expired = await self.sessions.sweep_idle(max_idle_seconds)
        if expired:
            logger.info("Idle sessions swept", count=len(expired))
        return expired

    async def shutdown(self) -> None:
        """Close every session and shared instance."""
        await self.sessions.close_all(reason="shutdown")

        async with self._shared_lock:
            shared, self._shared = self._shared, {}
        for name, instance in shared.items():
            await instance.close()
            logger.info("Shared provider instance stopped", provider=name)

    # Shared singletons

    async def shared_instance(self, descriptor: ProviderDescriptor) -> OperationSet:
        instance = self._shared.get(descriptor.name)
        if instance is not None and not instance.closed:
            return instance

        async with self._shared_lock:
            instance = self._shared.get(descriptor.name)
            if instance is None or instance.closed:
                instance = descriptor.factory()
                if inspect.isawaitable(instance):
                    instance = await instance
                self._shared[descriptor.name] = instance
                logger.info("Shared provider instance started", provider=descriptor.name)
        return instance
