"""Core data models for the MCP Hub.

This module defines the shared data structures used by the hub core
and by provider collaborators: capability levels, provider descriptors,
identities, invocation contexts and the uniform operation result shape.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class CapabilityLevel(str, Enum):
    """
    Ordered permission tiers gating which operations a session may invoke.

    The order is total: viewer < editor < admin. Compare levels with
    ``rank`` or ``satisfies``; the inherited ``str`` comparisons are
    alphabetical and must not be used for authorization.
    """
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _CAPABILITY_RANKS[self]

    def satisfies(self, required: "CapabilityLevel") -> bool:
        """True if this level is at least ``required``."""
        return self.rank >= required.rank

    @classmethod
    def lowest(cls) -> "CapabilityLevel":
        return min(cls, key=lambda level: level.rank)

    @classmethod
    def highest(cls) -> "CapabilityLevel":
        return max(cls, key=lambda level: level.rank)


_CAPABILITY_RANKS = {
    CapabilityLevel.VIEWER: 0,
    CapabilityLevel.EDITOR: 1,
    CapabilityLevel.ADMIN: 2,
}


class AclPolicy(BaseModel):
    """
    Access-control declaration of a provider.

    ``operation_levels`` maps operation names to their minimum level;
    unmapped operations run at ``open_level``. When ``directory_path`` is
    set the hub adds identify/whoami operations for the provider.
    """
    model_config = ConfigDict(frozen=True)

    operation_levels: dict[str, CapabilityLevel] = Field(default_factory=dict)
    open_level: CapabilityLevel = CapabilityLevel.VIEWER
    default_level: CapabilityLevel = CapabilityLevel.VIEWER
    directory_path: Optional[str] = None

    def required_level(self, operation_name: str) -> CapabilityLevel:
        return self.operation_levels.get(operation_name, self.open_level)


class ProviderDescriptor(BaseModel):
    """
    Registration record of a tool provider.

    Immutable after registration. ``factory`` produces a fresh, isolated
    OperationSet per session unless ``shared`` is set, in which case the
    hub builds one instance lazily and every session uses it.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(..., description="Unique provider name, used in the URL path")
    description: str = Field(default="")
    version: str = Field(default="1.0.0")
    enabled: bool = True
    factory: Callable[[], Any]
    shared: bool = Field(
        default=False,
        description="Shared-singleton mode: one OperationSet for all sessions",
    )
    acl: Optional[AclPolicy] = None
    router: Optional[Any] = Field(
        default=None,
        description="Optional FastAPI APIRouter mounted next to the MCP endpoint",
    )

    @property
    def status(self) -> str:
        return "running" if self.enabled else "stopped"


class ProviderInfo(BaseModel):
    """Listing entry for a registered provider."""
    name: str
    description: str
    version: str
    enabled: bool
    status: str


class Identity(BaseModel):
    """A principal bound to a session for its lifetime."""
    username: str
    display_name: str
    capability_level: CapabilityLevel
    bound_at: datetime = Field(default_factory=utcnow)


class OperationDefinition(BaseModel):
    """
    Declarative description of one provider operation.

    Serialized for ``tools/list`` with MCP field names.
    """
    name: str = Field(..., description="Operation name, unique within a provider")
    description: str = Field(..., description="Clear description for LLM usage")
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for argument validation",
    )
    tags: list[str] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class InvocationContext(BaseModel):
    """
    Per-call context handed to provider operations.

    ``session_id`` is None on channels without a session concept.
    """
    request_id: str = Field(..., description="Unique request identifier")
    provider: str
    session_id: Optional[str] = None
    identity: Optional[Identity] = None
    capability_level: CapabilityLevel = CapabilityLevel.VIEWER
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = Field(default="http", description="Channel the call arrived on")


class ContentItem(BaseModel):
    """One element of a result's content list."""
    model_config = ConfigDict(populate_by_name=True)

    type: str = "text"
    text: Optional[str] = None
    data: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ToolResult(BaseModel):
    """
    Uniform result of an operation call.

    ``error_code`` and ``execution_time_ms`` stay server-side; the wire
    shape is ``{content, isError}``.
    """
    model_config = ConfigDict(populate_by_name=True)

    content: list[ContentItem] = Field(default_factory=list)
    is_error: bool = Field(default=False, alias="isError")
    error_code: Optional[str] = None
    execution_time_ms: float = 0

    @classmethod
    def text(cls, text: str) -> "ToolResult":
        return cls(content=[ContentItem(type="text", text=text)])

    @classmethod
    def from_data(cls, data: Any) -> "ToolResult":
        return cls.text(json.dumps(data, indent=2, default=str))

    @classmethod
    def error(cls, message: str, code: str = "ERROR") -> "ToolResult":
        return cls(
            content=[ContentItem(type="text", text=message)],
            is_error=True,
            error_code=code,
        )

    @classmethod
    def image(cls, data: str, mime_type: str, caption: Optional[str] = None) -> "ToolResult":
        content = [ContentItem(type="image", data=data, mime_type=mime_type)]
        if caption:
            content.append(ContentItem(type="text", text=caption))
        return cls(content=content)

    @property
    def first_text(self) -> Optional[str]:
        for item in self.content:
            if item.type == "text":
                return item.text
        return None

    def to_wire(self) -> dict[str, Any]:
        return {
            "content": [
                item.model_dump(by_alias=True, exclude_none=True)
                for item in self.content
            ],
            "isError": self.is_error,
        }


class InvocationOutcome(str, Enum):
    """Outcome recorded for an operation call."""
    SUCCESS = "success"
    ERROR = "error"
    DENIED = "denied"


class AuditEntry(BaseModel):
    """
    Audit log entry for operation invocations.

    Captures session, identity, provider, operation, arguments and outcome.
    """
    id: str
    timestamp: datetime = Field(default_factory=utcnow)

    session_id: Optional[str] = None
    username: Optional[str] = None
    capability_level: CapabilityLevel

    provider: str
    operation: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    outcome: InvocationOutcome
    error: Optional[str] = None
    execution_time_ms: float = 0

    request_id: str
