"""Base classes for provider operation sets.

An OperationSet is the live, callable set of operations of one provider
instance. The hub is polymorphic over this interface only:

- ``list_operations()`` describes what can be called
- ``invoke(name, arguments, context)`` runs one operation
- ``close()`` releases the instance and signals end-of-session

Unless a provider registers in shared-singleton mode, every session
gets its own instance, so providers may keep per-session state here.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import httpx

from shared.logging import get_logger
from shared.models import InvocationContext, OperationDefinition, ToolResult
from shared.schema import build_input_schema

logger = get_logger(__name__)

OperationHandler = Callable[[dict[str, Any], InvocationContext], Awaitable[Any]]
CloseCallback = Callable[[], Awaitable[Any]]
Notifier = Callable[[str, dict[str, Any]], Awaitable[None]]


class OperationNotFound(LookupError):
    """The operation set has no operation with this name."""

    def __init__(self, provider: str, name: str) -> None:
        super().__init__(f"Operation '{name}' not found in provider '{provider}'")
        self.provider = provider
        self.name = name


class OperationSet(ABC):
    """
    Base class for provider operation sets.

    Subclasses declare their operations in ``_define_operations`` and
    map names to coroutine handlers in ``_handlers``. Handlers receive
    ``(arguments, context)`` and may return a ToolResult, a string, or
    any JSON-serializable value. Exceptions propagate to the caller.
    """

    provider: str = "unknown"

    def __init__(self) -> None:
        self._operations: dict[str, OperationDefinition] = {}
        self._close_callbacks: list[CloseCallback] = []
        self._notifier: Optional[Notifier] = None
        self._closed = False
        self._define_operations()

    @abstractmethod
    def _define_operations(self) -> None:
        """Populate ``self._operations`` via ``_add``."""

    @abstractmethod
    def _handlers(self) -> dict[str, OperationHandler]:
        """Map operation names to handlers."""

    def _add(
        self,
        name: str,
        description: str,
        parameters: Optional[list[dict[str, Any]]] = None,
        input_schema: Optional[dict[str, Any]] = None,
        tags: Optional[list[str]] = None,
    ) -> None:
        if input_schema is None:
            input_schema = build_input_schema(parameters or [])
        self._operations[name] = OperationDefinition(
            name=name,
            description=description,
            input_schema=input_schema,
            tags=tags or [],
        )

    async def discover(self) -> None:
        """
        Load operations only known at runtime.

        Called before every listing and invocation; implementations
        cache what they find. Static operation sets do nothing here.
        """

    def list_operations(self) -> list[OperationDefinition]:
        return list(self._operations.values())

    def get_operation(self, name: str) -> Optional[OperationDefinition]:
        return self._operations.get(name)

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        context: InvocationContext
    ) -> ToolResult:
        """
        Run one operation.

        Args:
            name: Operation name
            arguments: Validated operation arguments
            context: Invocation context with session and identity

        Returns:
            Normalized operation result

        Raises:
            OperationNotFound: If the name is not an operation of this set
        """
        handler = self._handlers().get(name)
        if name not in self._operations or handler is None:
            raise OperationNotFound(self.provider, name)

        logger.debug(
            "Provider operation",
            provider=self.provider,
            operation=name,
            session=context.session_id,
        )
        return self._normalize(await handler(arguments, context))

    @staticmethod
    def _normalize(result: Any) -> ToolResult:
        if isinstance(result, ToolResult):
            return result
        if isinstance(result, str):
            return ToolResult.text(result)
        if result is None:
            return ToolResult.text("OK")
        return ToolResult.text(json.dumps(result, indent=2, default=str))

    # Lifecycle

    @property
    def closed(self) -> bool:
        return self._closed

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Register a coroutine function to run when this set closes."""
        self._close_callbacks.append(callback)

    def set_notifier(self, notifier: Optional[Notifier]) -> None:
        """Attach the channel used for server-to-client notifications."""
        self._notifier = notifier

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Push a notification to the client, if a channel is attached."""
        if self._notifier is not None and not self._closed:
            await self._notifier(method, params or {})

    async def close(self) -> None:
        """
        Release the instance and signal end-of-session.

        Idempotent. Close callbacks run after the provider's own
        resources have been released.
        """
        if self._closed:
            return
        self._closed = True
        self._notifier = None

        try:
            await self._release()
        except Exception as e:
            logger.error("Provider release failed", provider=self.provider, error=str(e))

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                await callback()
            except Exception as e:
                logger.error("Close callback failed", provider=self.provider, error=str(e))

    async def _release(self) -> None:
        """Provider-level teardown hook."""


class RESTOperationSet(OperationSet):
    """
    Base operation set for REST API backends.

    Provides a lazily created ``httpx.AsyncClient`` that is closed with
    the operation set.
    """

    base_url: str = ""
    timeout: float = 30.0

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        super().__init__()

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _release(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
