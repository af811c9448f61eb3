"""MCP JSON-RPC endpoint bound to one provider instance.

Each session owns one McpEndpoint. It answers the protocol methods the
hub supports and routes ``tools/call`` through the Operation Invoker.
Exchanges are JSON-RPC 2.0 messages or batches of them.
"""

from typing import Any, Awaitable, Callable, Optional

from shared.logging import get_logger, short_id
from shared.models import ProviderDescriptor
from hub.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    HubError,
    TransportFailure,
)
from hub.invoker import OperationInvoker
from providers.base import OperationSet

logger = get_logger(__name__)

JSONRPC_VERSION = "2.0"

# Newest first
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

MethodHandler = Callable[[dict[str, Any], Any], Awaitable[Optional[dict[str, Any]]]]


def rpc_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "result": result, "id": request_id}


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "error": {"code": code, "message": message},
        "id": request_id,
    }


def negotiate_protocol_version(requested: Any) -> str:
    """Echo a supported client version, otherwise offer the latest."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def is_initialize_request(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get("method") == "initialize" and "id" in payload


def request_id_of(payload: Any) -> Any:
    return payload.get("id") if isinstance(payload, dict) else None


class McpEndpoint:
    """
    Protocol endpoint of one provider instance.

    Attributes:
        descriptor: Provider the endpoint serves
        operation_set: OperationSet calls are routed to
        session_id: Owning session, None on the local stdio channel
        initialized: Whether ``initialize`` has been answered
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        operation_set: OperationSet,
        invoker: OperationInvoker,
        session_id: Optional[str] = None,
        source: str = "http"
    ) -> None:
        self.descriptor = descriptor
        self.operation_set = operation_set
        self.invoker = invoker
        self.session_id = session_id
        self.source = source
        self.initialized = False
        self.client_ready = False
        self.protocol_version: Optional[str] = None
        self.client_info: dict[str, Any] = {}

        self._methods: dict[str, MethodHandler] = {
            "initialize": self._initialize,
            "notifications/initialized": self._client_initialized,
            "notifications/cancelled": self._ignore,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "resources/list": self._list_resources,
            "prompts/list": self._list_prompts,
        }

    async def handle_payload(self, payload: Any) -> Optional[Any]:
        """
        Handle a message or a batch.

        Returns:
            The response, a list of responses for a batch, or None when
            nothing needs answering
        """
        if isinstance(payload, list):
            if not payload:
                return rpc_error(None, INVALID_REQUEST, "Invalid Request: empty batch")
            responses = []
            for message in payload:
                response = await self.handle_message(message)
                if response is not None:
                    responses.append(response)
            return responses or None
        return await self.handle_message(payload)

    async def handle_message(self, message: Any) -> Optional[dict[str, Any]]:
        """Handle one JSON-RPC message; never raises."""
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            return rpc_error(request_id_of(message), INVALID_REQUEST, "Invalid Request")

        method = message.get("method")
        request_id = message.get("id")
        is_notification = "id" not in message

        if method is None:
            # A client response to a server request
            return None
        if not isinstance(method, str):
            return rpc_error(request_id, INVALID_REQUEST, "Invalid Request")

        params = message.get("params") or {}
        if not isinstance(params, dict):
            if is_notification:
                return None
            return rpc_error(request_id, INVALID_PARAMS, "params must be an object")

        handler = self._methods.get(method)
        if handler is None:
            if is_notification:
                return None
            return rpc_error(request_id, METHOD_NOT_FOUND, f"Method '{method}' not found")

        try:
            result = await handler(params, request_id)
        except HubError as e:
            logger.warning(
                "Protocol error",
                provider=self.descriptor.name,
                session=short_id(self.session_id),
                method=method,
                error=e.message,
            )
            return None if is_notification else e.to_rpc_error(request_id)
        except Exception as e:
            logger.error(
                "Protocol handler failed",
                provider=self.descriptor.name,
                session=short_id(self.session_id),
                method=method,
                error=str(e),
                exc_info=True,
            )
            return None if is_notification else rpc_error(request_id, INTERNAL_ERROR, str(e))

        if is_notification:
            return None
        return rpc_result(request_id, result or {})

    # Methods

    async def _initialize(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        if self.initialized:
            raise TransportFailure("Invalid Request: server already initialized")

        self.protocol_version = negotiate_protocol_version(params.get("protocolVersion"))
        self.client_info = params.get("clientInfo") or {}
        self.initialized = True

        logger.debug(
            "Initialize",
            provider=self.descriptor.name,
            session=short_id(self.session_id),
            protocol_version=self.protocol_version,
            client=self.client_info.get("name"),
        )

        result: dict[str, Any] = {
            "protocolVersion": self.protocol_version,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"listChanged": False},
                "prompts": {"listChanged": False},
            },
            "serverInfo": {
                "name": self.descriptor.name,
                "version": self.descriptor.version,
            },
        }
        if self.descriptor.description:
            result["instructions"] = self.descriptor.description
        return result

    async def _client_initialized(self, params: dict[str, Any], request_id: Any) -> None:
        self.client_ready = True

    async def _ignore(self, params: dict[str, Any], request_id: Any) -> None:
        return None

    async def _ping(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        return {}

    async def _list_tools(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        operations = await self.invoker.list_operations(self.descriptor.name, self.operation_set)
        return {"tools": [op.to_wire() for op in operations]}

    async def _call_tool(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise TransportFailure("Invalid params: tool name is required", rpc_code=INVALID_PARAMS)

        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise TransportFailure("Invalid params: arguments must be an object", rpc_code=INVALID_PARAMS)

        result = await self.invoker.invoke(
            self.session_id,
            self.descriptor.name,
            self.operation_set,
            name,
            arguments,
            source=self.source,
            request_id=str(request_id) if request_id is not None else None,
        )
        return result.to_wire()

    async def _list_resources(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        return {"resources": []}

    async def _list_prompts(self, params: dict[str, Any], request_id: Any) -> dict[str, Any]:
        return {"prompts": []}
