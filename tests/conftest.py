"""Shared fixtures for hub tests."""

import json
from typing import Any

import httpx
import pytest
import pytest_asyncio

from shared.config import HubSettings, ImageGenSettings, N8nSettings, Settings, SpotifySettings
from shared.models import AclPolicy, CapabilityLevel, InvocationContext, ProviderDescriptor
from providers.base import OperationHandler, OperationSet

NOTES_LEVELS = {
    "add-note": CapabilityLevel.EDITOR,
    "clear-notes": CapabilityLevel.ADMIN,
}

NOTES_DIRECTORY = {
    "defaultCapabilityLevel": "viewer",
    "users": {
        "alice": {"displayName": "Alice", "capabilityLevel": "editor"},
        "root": {"displayName": "Root", "capabilityLevel": "admin"},
    },
}


class NotesOperations(OperationSet):
    """Small stateful operation set with levelled and failing operations."""

    provider = "notes"

    def __init__(self) -> None:
        self.notes: list[str] = []
        self.calls: dict[str, int] = {}
        super().__init__()

    def _define_operations(self) -> None:
        self._add("list-notes", "List notes")
        self._add(
            "add-note",
            "Add a note",
            [{"name": "text", "type": "string", "description": "Note text"}],
        )
        self._add("clear-notes", "Delete every note")
        self._add("explode", "Always fails")

    def _handlers(self) -> dict[str, OperationHandler]:
        return {
            "list-notes": self._list,
            "add-note": self._add_note,
            "clear-notes": self._clear,
            "explode": self._explode,
        }

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    async def _list(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        self._count("list-notes")
        return self.notes

    async def _add_note(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        self._count("add-note")
        self.notes.append(arguments["text"])
        return f"{len(self.notes)} note(s)"

    async def _clear(self, arguments: dict[str, Any], context: InvocationContext) -> str:
        self._count("clear-notes")
        self.notes.clear()
        return "cleared"

    async def _explode(self, arguments: dict[str, Any], context: InvocationContext) -> Any:
        self._count("explode")
        raise RuntimeError("boom")


def make_settings(tmp_path) -> Settings:
    return Settings(
        hub=HubSettings(enable_audit=False, data_dir=str(tmp_path), stream_keepalive_seconds=0.05),
        spotify=SpotifySettings(enabled=False),
        image_gen=ImageGenSettings(enabled=False),
        n8n=N8nSettings(enabled=False),
    )


def make_notes_descriptor(directory_path: str, instances: list) -> ProviderDescriptor:
    def factory() -> NotesOperations:
        instance = NotesOperations()
        instances.append(instance)
        return instance

    return ProviderDescriptor(
        name="notes",
        description="Notes for tests",
        factory=factory,
        acl=AclPolicy(operation_levels=NOTES_LEVELS, directory_path=directory_path),
    )


@pytest.fixture
def directory_path(tmp_path):
    path = tmp_path / "notes-acl.json"
    path.write_text(json.dumps(NOTES_DIRECTORY))
    return path


@pytest.fixture
def notes_instances():
    return []


@pytest_asyncio.fixture
async def hub(tmp_path, directory_path, notes_instances):
    from hub.core import Hub
    from providers.ping import register_ping_provider

    hub = Hub(settings=make_settings(tmp_path))
    register_ping_provider(hub)
    hub.register(make_notes_descriptor(str(directory_path), notes_instances))
    hub.register(ProviderDescriptor(
        name="offline",
        description="Disabled provider",
        enabled=False,
        factory=NotesOperations,
    ))

    yield hub

    await hub.shutdown()


@pytest_asyncio.fixture
async def client(hub):
    from hub.main import create_app

    app = create_app(hub=hub)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


def rpc(method: str, params: dict | None = None, request_id: Any = 1) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    if request_id is not None:
        message["id"] = request_id
    return message


def initialize_message(request_id: Any = 0) -> dict[str, Any]:
    return rpc(
        "initialize",
        {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "1.0"},
        },
        request_id,
    )


async def open_session(client: httpx.AsyncClient, provider: str = "ping") -> str:
    response = await client.post(f"/{provider}/mcp", json=initialize_message())
    assert response.status_code == 200, response.text
    return response.headers["mcp-session-id"]


async def call_tool(
    client: httpx.AsyncClient,
    provider: str,
    session_id: str,
    name: str,
    arguments: dict | None = None,
    request_id: Any = 1
) -> httpx.Response:
    return await client.post(
        f"/{provider}/mcp",
        json=rpc("tools/call", {"name": name, "arguments": arguments or {}}, request_id),
        headers={"mcp-session-id": session_id},
    )
