"""Shared utilities and models for the MCP Hub."""

from shared.models import (
    AclPolicy,
    CapabilityLevel,
    Identity,
    InvocationContext,
    OperationDefinition,
    ProviderDescriptor,
    ToolResult,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AclPolicy",
    "CapabilityLevel",
    "Identity",
    "InvocationContext",
    "OperationDefinition",
    "ProviderDescriptor",
    "ToolResult",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
