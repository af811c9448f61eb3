"""Ping provider.

A dependency-free provider for health checks and for exercising the hub
itself: session isolation shows through the per-instance counter.
"""

from typing import TYPE_CHECKING, Any, Callable, Optional

from shared.models import InvocationContext, ProviderDescriptor
from providers.base import OperationHandler, OperationSet

if TYPE_CHECKING:
    from hub.core import Hub

StatsFunction = Callable[[], dict[str, Any]]


class PingOperations(OperationSet):
    """Operations of one ping instance."""

    provider = "ping"

    def __init__(self, stats: Optional[StatsFunction] = None) -> None:
        self._stats = stats
        self.counter = 0
        super().__init__()

    def _define_operations(self) -> None:
        self._add("ping", "Check that the server responds. Returns pong.")
        self._add(
            "echo",
            "Echo a message back",
            [{"name": "message", "type": "string", "description": "Message to echo",
              "default": "pong"}],
        )
        self._add("server-info", "Hub uptime, registered provider count and live session count")
        self._add(
            "counter",
            "Increment and return a counter private to this session",
            [{"name": "step", "type": "integer", "description": "Amount to add",
              "default": 1}],
        )

    def _handlers(self) -> dict[str, OperationHandler]:
        return {
            "ping": self._ping,
            "echo": self._echo,
            "server-info": self._server_info,
            "counter": self._counter,
        }

    async def _ping(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        return "pong"

    async def _echo(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        return arguments.get("message", "pong")

    async def _server_info(self, arguments: dict[str, Any], context: InvocationContext) -> dict[str, Any]:
        info = self._stats() if self._stats else {}
        info["session"] = context.session_id
        return info

    async def _counter(self, arguments: dict[str, Any], context: InvocationContext) -> dict[str, int]:
        self.counter += arguments.get("step", 1)
        return {"counter": self.counter}


def create_ping_descriptor(hub: "Hub") -> ProviderDescriptor:
    def stats() -> dict[str, Any]:
        return {
            "uptimeSeconds": round(hub.uptime_seconds, 1),
            "registeredProviderCount": len(hub.registry),
            "liveSessionCount": len(hub.sessions),
        }

    return ProviderDescriptor(
        name="ping",
        description="Health check provider",
        version="1.0.0",
        factory=lambda: PingOperations(stats),
    )


def register_ping_provider(hub: "Hub") -> None:
    hub.register(create_ping_descriptor(hub))
