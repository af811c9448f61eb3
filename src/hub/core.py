"""Process-wide hub state.

Wires the Provider Registry, Session Table, Capability Registry,
Operation Invoker and Transport Multiplexer together and owns the idle
session sweeper.
"""

import asyncio
import time
from typing import Optional

from shared.config import Settings
from shared.logging import get_logger
from shared.models import ProviderDescriptor
from hub.acl import CapabilityRegistry
from hub.audit import AuditLogger
from hub.invoker import OperationInvoker
from hub.registry import ProviderRegistry
from hub.sessions import SessionTable
from hub.transport import TransportMultiplexer

logger = get_logger(__name__)


class Hub:
    """
    Container for the hub's shared structures.

    Providers must be registered through ``register`` so that their
    access-control policy reaches the Capability Registry.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        self.settings = settings or Settings()
        hub_settings = self.settings.hub

        self.registry = ProviderRegistry()
        self.sessions = SessionTable()
        self.acl = CapabilityRegistry(
            self.sessions,
            ttl_seconds=hub_settings.acl_cache_ttl_seconds,
        )
        self.audit_logger = audit_logger
        self.invoker = OperationInvoker(self.acl, audit_logger=audit_logger)
        self.transport = TransportMultiplexer(
            self.registry,
            self.sessions,
            self.invoker,
            keepalive_seconds=hub_settings.stream_keepalive_seconds,
        )

        self.started_at = time.monotonic()
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def register(self, descriptor: ProviderDescriptor) -> None:
        """
        Register a provider and its access-control policy.

        Raises:
            DuplicateProvider: If the name is already registered
        """
        self.registry.register(descriptor)
        self.acl.register_policy(descriptor.name, descriptor.acl)

    # Idle sweeping

    def start_sweeper(self) -> None:
        hub_settings = self.settings.hub
        if hub_settings.session_idle_timeout_seconds <= 0 or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(
            self._sweep_loop(
                hub_settings.sweep_interval_seconds,
                hub_settings.session_idle_timeout_seconds,
            )
        )

    async def _sweep_loop(self, interval: float, max_idle: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.transport.sweep_idle(max_idle)
            except Exception as e:
                logger.error("Idle sweep failed", error=str(e), exc_info=True)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def shutdown(self) -> None:
        """Stop sweeping, close every session and flush the audit log."""
        await self.stop_sweeper()
        await self.transport.shutdown()
        if self.audit_logger is not None:
            await self.audit_logger.flush()
        logger.info("Hub stopped")
