"""n8n workflow automation provider.

A shared-singleton proxy: every session of the provider talks to the
same operation set, which holds one upstream MCP client and forwards
``tools/list`` and ``tools/call`` to the configured n8n MCP endpoint.
"""

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

import httpx

from shared.config import N8nSettings
from shared.logging import get_logger
from shared.models import ContentItem, InvocationContext, ProviderDescriptor, ToolResult
from providers.base import OperationHandler, OperationNotFound, OperationSet
from providers.http import UpstreamError
from mcp_client import MCPClient, MCPClientError

if TYPE_CHECKING:
    from hub.core import Hub

logger = get_logger(__name__)

TOOL_CACHE_TTL_SECONDS = 300


def _content_item(item: Any) -> ContentItem:
    if isinstance(item, dict):
        kind = item.get("type")
        if kind == "text":
            return ContentItem(type="text", text=item.get("text", ""))
        if kind == "image":
            return ContentItem(type="image", data=item.get("data"), mime_type=item.get("mimeType"))
    return ContentItem(type="text", text=json.dumps(item, default=str))


def to_tool_result(result: dict[str, Any]) -> ToolResult:
    """Convert a raw upstream MCP tool result."""
    content = [_content_item(item) for item in result.get("content") or []]
    if not content and "structuredContent" in result:
        content = [ContentItem(type="text", text=json.dumps(result["structuredContent"], default=str))]
    if not content:
        content = [ContentItem(type="text", text="OK")]

    is_error = bool(result.get("isError"))
    return ToolResult(
        content=content,
        is_error=is_error,
        error_code="UPSTREAM_ERROR" if is_error else None,
    )


class N8nProxyOperations(OperationSet):
    """
    Operations of the upstream n8n MCP server.

    The operation list is fetched from upstream on first use and cached
    for a few minutes. When a refresh fails the previous list is kept.
    """

    provider = "n8n"

    def __init__(
        self,
        client: MCPClient,
        cache_ttl_seconds: float = TOOL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.client = client
        self.cache_ttl = cache_ttl_seconds
        self._clock = clock
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()
        super().__init__()

    def _define_operations(self) -> None:
        # Populated by discover()
        pass

    def _handlers(self) -> dict[str, OperationHandler]:
        return {}

    def _is_cache_valid(self) -> bool:
        if self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self.cache_ttl

    async def discover(self) -> None:
        if self._is_cache_valid():
            return

        async with self._lock:
            # Double-check after acquiring lock
            if self._is_cache_valid():
                return

            try:
                tools = await self.client.list_tools()
            except (MCPClientError, UpstreamError, httpx.HTTPError) as e:
                logger.error("Failed to refresh upstream tools", provider=self.provider, error=str(e))
                if self._loaded_at is None:
                    raise
                return

            self._operations = {}
            for tool in tools:
                name = tool.get("name")
                if not name:
                    continue
                self._add(
                    name,
                    tool.get("description", ""),
                    input_schema=tool.get("inputSchema") or {"type": "object", "properties": {}},
                )
            self._loaded_at = self._clock()
            logger.info("Upstream tools refreshed", provider=self.provider, tool_count=len(self._operations))

    async def invoke(
        self,
        name: str,
        arguments: dict[str, Any],
        context: InvocationContext
    ) -> ToolResult:
        if name not in self._operations:
            raise OperationNotFound(self.provider, name)

        logger.debug("Forwarding operation upstream", operation=name, session=context.session_id)
        return to_tool_result(await self.client.call_tool(name, arguments))

    async def _release(self) -> None:
        await self.client.close()


def create_n8n_descriptor(
    settings: N8nSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ProviderDescriptor:
    def factory() -> N8nProxyOperations:
        client = MCPClient(
            settings.mcp_url or "",
            timeout=settings.timeout_seconds,
            auth_token=settings.api_key,
            transport=transport,
        )
        return N8nProxyOperations(client)

    return ProviderDescriptor(
        name="n8n",
        description="n8n workflow automation, proxied from its MCP server",
        version="1.0.0",
        enabled=settings.enabled and bool(settings.mcp_url),
        factory=factory,
        shared=True,
    )


def register_n8n_provider(hub: "Hub") -> None:
    settings = hub.settings.n8n
    if settings.enabled and not settings.mcp_url:
        logger.warning("N8N_MCP_URL not configured, provider disabled")
    hub.register(create_n8n_descriptor(settings))
