"""Local stdio channel.

Serves one provider over newline-delimited JSON-RPC on stdin/stdout.
There is no session on this channel: the local operator is trusted and
runs at the highest capability level. Logs go to stderr.

Usage:
    mcp-hub-stdio ping
"""

import argparse
import asyncio
import inspect
import json
import sys
from typing import Any, Optional, TextIO

from shared.config import get_settings
from shared.logging import get_logger
from hub.core import Hub
from hub.errors import HubError
from hub.protocol import McpEndpoint, rpc_error
from hub.transport import parse_payload
from providers.base import OperationSet

logger = get_logger(__name__)


class StdioServer:
    """
    One provider instance served over a pair of text streams.

    The instance is created on start and closed when input ends.
    """

    def __init__(
        self,
        hub: Hub,
        provider_name: str,
        input_stream: Optional[TextIO] = None,
        output_stream: Optional[TextIO] = None
    ) -> None:
        self.hub = hub
        self.provider_name = provider_name
        self.input_stream = input_stream or sys.stdin
        self.output_stream = output_stream or sys.stdout
        self.endpoint: Optional[McpEndpoint] = None

    async def _open(self) -> OperationSet:
        descriptor = self.hub.registry.resolve(self.provider_name)
        if descriptor.shared:
            operation_set = await self.hub.transport.shared_instance(descriptor)
        else:
            operation_set = descriptor.factory()
            if inspect.isawaitable(operation_set):
                operation_set = await operation_set

        self.endpoint = McpEndpoint(
            descriptor,
            operation_set,
            self.hub.invoker,
            session_id=None,
            source="stdio",
        )
        return operation_set

    async def _read_line(self) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.input_stream.readline)

    def _write(self, message: Any) -> None:
        self.output_stream.write(json.dumps(message, separators=(",", ":")) + "\n")
        self.output_stream.flush()

    async def handle_line(self, line: str) -> Optional[Any]:
        """Handle one input line; returns the response to write, if any."""
        try:
            payload = parse_payload(line.encode("utf-8"))
        except HubError as e:
            return e.to_rpc_error()
        return await self.endpoint.handle_payload(payload)

    async def run(self) -> None:
        """
        Serve until end of input.

        Raises:
            UnknownProvider: If the provider is not registered
            ProviderDisabled: If the provider is disabled
        """
        operation_set = await self._open()
        shared = self.endpoint.descriptor.shared
        logger.info("Stdio channel started", provider=self.provider_name)

        try:
            while True:
                line = await self._read_line()
                if not line:
                    break
                if not line.strip():
                    continue
                response = await self.handle_line(line)
                if response is not None:
                    self._write(response)
        finally:
            if not shared:
                await operation_set.close()
            await self.hub.shutdown()
            logger.info("Stdio channel stopped", provider=self.provider_name)


def main(argv: Optional[list[str]] = None) -> int:
    """Run one provider on stdin/stdout."""
    from hub.main import build_hub

    parser = argparse.ArgumentParser(description="Serve one MCP Hub provider over stdio")
    parser.add_argument("provider", help="Provider name, e.g. ping")
    args = parser.parse_args(argv)

    hub = build_hub(get_settings(), log_stream=sys.stderr)
    server = StdioServer(hub, args.provider)

    try:
        asyncio.run(server.run())
    except HubError as e:
        logger.error("Cannot serve provider", provider=args.provider, error=e.message)
        sys.stderr.write(json.dumps(rpc_error(None, e.rpc_code, e.message)) + "\n")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
