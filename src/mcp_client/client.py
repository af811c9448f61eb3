"""MCP Client for upstream Streamable HTTP servers.

Speaks MCP JSON-RPC 2.0 to a single upstream endpoint: initiates one
upstream session lazily, then forwards ``tools/list`` and ``tools/call``.
Handles authentication, session headers, rate limits and both JSON and
SSE-framed responses.
"""

import asyncio
import json
import uuid
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger, short_id
from providers.http import RateLimited, parse_retry_after, retry_on_rate_limit

logger = get_logger(__name__)

SESSION_HEADER = "mcp-session-id"
PROTOCOL_VERSION = "2025-03-26"


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Connection to the upstream server failed."""
    pass


class MCPAuthError(MCPClientError):
    """Authentication failed."""
    pass


class MCPProtocolError(MCPClientError):
    """The upstream server answered with a JSON-RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message


class _SessionExpired(MCPClientError):
    pass


class MCPClient:
    """
    Client for one upstream MCP server.

    Provides methods for:
    - Initiating the upstream session (once, shared by all callers)
    - Listing upstream tools
    - Calling upstream tools

    The client is safe to share between concurrent callers.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        auth_token: Optional[str] = None,
        client_name: str = "mcp-hub",
        client_version: str = "1.0.0",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            server_url: Upstream MCP endpoint URL
            timeout: Request timeout in seconds
            auth_token: Optional bearer token
            client_name: Name reported in ``clientInfo``
            client_version: Version reported in ``clientInfo``
            transport: Optional httpx transport (tests)
        """
        self.server_url = server_url
        self.timeout = timeout
        self.client_name = client_name
        self.client_version = client_version
        self._auth_token = auth_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self._session_id: Optional[str] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self.server_info: dict[str, Any] = {}

    @property
    def auth_token(self) -> Optional[str]:
        """Get current authentication token."""
        return self._auth_token

    @auth_token.setter
    def auth_token(self, token: Optional[str]) -> None:
        """Set authentication token."""
        self._auth_token = token

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _get_headers(self) -> dict[str, str]:
        """Get request headers including authentication and session."""
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Terminate the upstream session and close the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._reset_session()
            return

        if self._session_id:
            try:
                await self._client.delete(self.server_url, headers=self._get_headers())
            except httpx.HTTPError as e:
                logger.debug("Upstream session termination failed", error=str(e))

        await self._client.aclose()
        self._client = None
        self._reset_session()

    async def __aenter__(self) -> "MCPClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def _reset_session(self) -> None:
        self._session_id = None
        self._initialized = False

    # Session

    @retry(
        retry=retry_if_exception_type(MCPConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def initialize(self) -> dict[str, Any]:
        """
        Initiate the upstream session if not done yet.

        Concurrent callers wait for one initiation.

        Returns:
            The upstream ``serverInfo``

        Raises:
            MCPConnectionError: If the server is unreachable
            MCPAuthError: If authentication fails
            MCPProtocolError: If the server rejects the initiation
        """
        if self._initialized:
            return self.server_info

        async with self._init_lock:
            # Double-check after acquiring lock
            if self._initialized:
                return self.server_info

            self._session_id = None
            result = await self._send("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self.client_name, "version": self.client_version},
            })
            await self._send("notifications/initialized", notification=True)

            self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
            self._initialized = True

            logger.info(
                "Upstream MCP session initiated",
                server=self.server_url,
                upstream=self.server_info.get("name"),
                session=short_id(self._session_id),
            )
            return self.server_info

    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Send a request on the upstream session, re-initiating it once if it expired."""
        await self.initialize()
        try:
            return await self._send(method, params)
        except _SessionExpired:
            logger.info("Upstream MCP session expired, re-initiating", server=self.server_url)
            self._reset_session()
            await self.initialize()
            return await self._send(method, params)

    # Operations

    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List the upstream server's tools.

        Follows ``nextCursor`` pagination to the end.
        """
        tools: list[dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = await self._request("tools/list", {"cursor": cursor} if cursor else {})
            result = result or {}
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Call an upstream tool.

        Returns:
            The raw MCP tool result (``content`` and ``isError``)
        """
        logger.debug("Calling upstream tool", tool=name, server=self.server_url)
        result = await self._request("tools/call", {"name": name, "arguments": arguments or {}})
        return result or {}

    async def ping(self) -> None:
        await self._request("ping")

    # Wire

    async def _send(
        self,
        method: str,
        params: Optional[dict[str, Any]] = None,
        notification: bool = False
    ) -> Any:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        request_id = None
        if not notification:
            request_id = str(uuid.uuid4())
            message["id"] = request_id

        try:
            response = await self._post(message)
        except httpx.ConnectError as e:
            raise MCPConnectionError(f"Cannot connect to MCP server: {e}")
        except httpx.TimeoutException as e:
            raise MCPConnectionError(f"MCP server timed out: {e}")

        if response.status_code == 404 and self._session_id and method != "initialize":
            raise _SessionExpired()
        if response.status_code == 401:
            raise MCPAuthError("Authentication required")
        if response.status_code == 403:
            raise MCPAuthError("Access denied")

        if method == "initialize" and SESSION_HEADER in response.headers:
            self._session_id = response.headers[SESSION_HEADER]

        if notification:
            return None

        reply = self._find_reply(response, request_id)
        if reply is None:
            if response.is_error:
                raise MCPClientError(f"MCP server answered {response.status_code}")
            raise MCPClientError(f"No response to {method} from MCP server")

        error = reply.get("error")
        if error:
            raise MCPProtocolError(error.get("code", -32603), error.get("message", "Unknown error"))
        return reply.get("result")

    @retry_on_rate_limit
    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        client = self._get_client()
        response = await client.post(self.server_url, json=message, headers=self._get_headers())
        if response.status_code == 429:
            raise RateLimited(parse_retry_after(response.headers.get("Retry-After")))
        return response

    @staticmethod
    def _find_reply(response: httpx.Response, request_id: Optional[str]) -> Optional[dict[str, Any]]:
        """Pick the JSON-RPC response for ``request_id`` out of a JSON or SSE body."""
        content_type = response.headers.get("Content-Type", "")
        if "text/event-stream" in content_type:
            candidates = []
            for event in response.text.split("\n\n"):
                data = "\n".join(
                    line[5:].lstrip() for line in event.splitlines() if line.startswith("data:")
                )
                if not data:
                    continue
                try:
                    candidates.append(json.loads(data))
                except ValueError:
                    continue
        else:
            try:
                body = response.json()
            except ValueError:
                return None
            candidates = body if isinstance(body, list) else [body]

        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("id") == request_id:
                return candidate
        return None
