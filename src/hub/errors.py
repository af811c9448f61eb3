"""Error taxonomy for the MCP Hub.

Every hub error carries an HTTP status, a stable machine code, a
JSON-RPC error code and a human-readable message. The transport and
invoker boundaries convert them into structured responses; none of them
is allowed to escape to the listener.
"""

from typing import Any, Optional

from fastapi import status

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SESSION_NOT_FOUND = -32001
PROVIDER_UNAVAILABLE = -32002


class HubError(Exception):
    """Base exception for hub errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "HUB_ERROR"
    rpc_code: int = INTERNAL_ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_rpc_error(self, request_id: Optional[Any] = None) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "error": {"code": self.rpc_code, "message": self.message},
            "id": request_id,
        }


class DuplicateProvider(HubError, ValueError):
    """A provider with this name is already registered."""
    code = "DUPLICATE_PROVIDER"

    def __init__(self, name: str) -> None:
        super().__init__(f"Provider '{name}' is already registered", provider=name)


class UnknownProvider(HubError):
    """Requested provider name is not registered."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "UNKNOWN_PROVIDER"
    rpc_code = PROVIDER_UNAVAILABLE

    def __init__(self, name: str) -> None:
        super().__init__(f'MCP server "{name}" not found', provider=name)


class ProviderDisabled(HubError):
    """Provider is registered but disabled."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "PROVIDER_DISABLED"
    rpc_code = PROVIDER_UNAVAILABLE

    def __init__(self, name: str) -> None:
        super().__init__(f'MCP server "{name}" is disabled', provider=name)


class SessionNotFound(HubError):
    """Session id supplied but absent from the session table."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "SESSION_NOT_FOUND"
    rpc_code = SESSION_NOT_FOUND

    def __init__(self, session_id: Optional[str] = None) -> None:
        super().__init__(
            "Session not found. Re-initialize to obtain a new session id.",
            session_id=session_id,
        )


class PermissionDenied(HubError):
    """Capability check failed for an operation."""
    status_code = status.HTTP_403_FORBIDDEN
    code = "PERMISSION_DENIED"


class UnknownIdentity(HubError):
    """Username is not present in the identity directory."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "UNKNOWN_IDENTITY"

    def __init__(self, username: str, valid_identities: list[str]) -> None:
        super().__init__(f'Unknown username "{username}".', username=username)
        self.username = username
        self.valid_identities = valid_identities


class DirectoryUnavailable(HubError):
    """No identity directory has ever loaded for the provider."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "DIRECTORY_UNAVAILABLE"

    def __init__(self, provider: str, path: Optional[str] = None) -> None:
        super().__init__(
            f"Identity directory for '{provider}' is not available"
            + (f" ({path})." if path else "."),
            provider=provider,
        )
        self.valid_identities: list[str] = []


class ProviderOperationFailure(HubError):
    """The underlying provider call raised."""
    code = "PROVIDER_OPERATION_FAILURE"


class TransportFailure(HubError):
    """Malformed exchange or transport-level fault."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "TRANSPORT_FAILURE"

    def __init__(self, message: str, rpc_code: int = INVALID_REQUEST, **details: Any) -> None:
        super().__init__(message, **details)
        self.rpc_code = rpc_code


class StreamConflict(TransportFailure):
    """A notification stream is already open for the session."""
    status_code = status.HTTP_409_CONFLICT
    code = "STREAM_CONFLICT"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "A notification stream is already open for this session",
            session_id=session_id,
        )
