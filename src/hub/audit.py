"""Audit logging for the MCP Hub.

Records every tools/call with its session, identity, capability level,
provider, operation, redacted arguments and outcome.
"""

import asyncio
import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles

from shared.logging import get_logger, short_id
from shared.models import (
    AuditEntry,
    InvocationContext,
    InvocationOutcome,
    ToolResult,
)

logger = get_logger(__name__)


class AuditLogger:
    """
    Audit logger for operation invocations.

    Entries go to the structured log immediately and are buffered for
    batched appends to a JSON-lines file.
    """

    # Parameters that should be redacted in audit logs
    SENSITIVE_PARAMS = {
        "password", "token", "secret", "api_key", "apikey", "credential",
        "access_token", "refresh_token", "client_secret", "code",
    }

    def __init__(
        self,
        log_path: str | Path = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _redact_sensitive(self, params: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive parameters from audit logs."""
        redacted = {}
        for key, value in params.items():
            if key.lower() in self.SENSITIVE_PARAMS:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted[key] = self._redact_sensitive(value)
            else:
                redacted[key] = value
        return redacted

    def create_entry(
        self,
        operation: str,
        arguments: dict[str, Any],
        context: InvocationContext,
        outcome: InvocationOutcome,
        result: Optional[ToolResult] = None
    ) -> AuditEntry:
        error = None
        if result is not None and result.is_error:
            error = result.first_text

        return AuditEntry(
            id=str(uuid.uuid4()),
            session_id=context.session_id,
            username=context.identity.username if context.identity else None,
            capability_level=context.capability_level,
            provider=context.provider,
            operation=operation,
            parameters=self._redact_sensitive(arguments),
            outcome=outcome,
            error=error,
            execution_time_ms=result.execution_time_ms if result else 0,
            request_id=context.request_id,
        )

    async def log(
        self,
        operation: str,
        arguments: dict[str, Any],
        context: InvocationContext,
        outcome: InvocationOutcome,
        result: Optional[ToolResult] = None
    ) -> Optional[AuditEntry]:
        """
        Log an operation invocation.

        Returns:
            The recorded entry, or None when auditing is disabled
        """
        if not self.enabled:
            return None

        entry = self.create_entry(operation, arguments, context, outcome, result)

        logger.info(
            "Operation invoked",
            audit_id=entry.id,
            session=short_id(entry.session_id),
            user=entry.username,
            level=entry.capability_level.value,
            provider=entry.provider,
            operation=entry.operation,
            outcome=entry.outcome.value,
            execution_time_ms=round(entry.execution_time_ms, 2),
        )

        async with self._lock:
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

        return entry

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e))
            # Keep entries for the next flush
            self._buffer.extend(entries_to_write)

    async def flush(self) -> None:
        """Public method to flush audit buffer."""
        async with self._lock:
            await self._flush()

    async def query(
        self,
        session_id: Optional[str] = None,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        outcome: Optional[InvocationOutcome] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """
        Query flushed audit entries with filters.

        Args:
            session_id: Filter by session
            provider: Filter by provider name
            operation: Filter by operation name
            outcome: Filter by outcome
            start_time: Filter by start time
            end_time: Filter by end time
            limit: Maximum entries to return
        """
        results: list[AuditEntry] = []

        if not self.log_path.exists():
            return results

        try:
            async with aiofiles.open(self.log_path, "r") as f:
                async for line in f:
                    if len(results) >= limit:
                        break

                    try:
                        entry = AuditEntry(**json.loads(line.strip()))
                    except ValueError:
                        continue

                    if session_id and entry.session_id != session_id:
                        continue
                    if provider and entry.provider != provider:
                        continue
                    if operation and entry.operation != operation:
                        continue
                    if outcome and entry.outcome != outcome:
                        continue
                    if start_time and entry.timestamp < start_time:
                        continue
                    if end_time and entry.timestamp > end_time:
                        continue

                    results.append(entry)

        except OSError as e:
            logger.error("Failed to query audit log", error=str(e))

        return results
