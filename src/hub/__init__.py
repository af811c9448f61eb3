"""MCP Hub - session multiplexing and access control.

The hub exposes independent tool providers through one listener. It
negotiates a session per client and provider, keeps that session's
provider instance alive across exchanges, gates operations by
capability level and tears sessions down on close.
"""

from hub.acl import CapabilityRegistry
from hub.audit import AuditLogger
from hub.core import Hub
from hub.invoker import OperationInvoker
from hub.registry import ProviderRegistry
from hub.sessions import Session, SessionTable
from hub.transport import TransportMultiplexer

__all__ = [
    "CapabilityRegistry",
    "AuditLogger",
    "Hub",
    "OperationInvoker",
    "ProviderRegistry",
    "Session",
    "SessionTable",
    "TransportMultiplexer",
]
