"""MCP Client - upstream MCP server access.

Initiates a session with an upstream Streamable HTTP MCP server and
forwards tool listing and tool calls to it. Used by proxy providers.
"""

from mcp_client.client import (
    MCPAuthError,
    MCPClient,
    MCPClientError,
    MCPConnectionError,
    MCPProtocolError,
)

__all__ = [
    "MCPAuthError",
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "MCPProtocolError",
]
