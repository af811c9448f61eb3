"""Tests for hub core components."""

import asyncio
import itertools
import json

import pytest

from shared.models import (
    AclPolicy,
    CapabilityLevel,
    InvocationOutcome,
    ProviderDescriptor,
)
from conftest import NOTES_LEVELS, NotesOperations, initialize_message, rpc


class TestProviderRegistry:
    """Tests for the ProviderRegistry."""

    def test_register_and_list_in_order(self):
        """Test that listing preserves registration order."""
        from hub.registry import ProviderRegistry

        registry = ProviderRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register(ProviderDescriptor(name=name, factory=NotesOperations))

        assert [p.name for p in registry.list_providers()] == ["zeta", "alpha", "mid"]
        assert len(registry) == 3
        assert "alpha" in registry

    def test_register_duplicate_raises(self):
        """Test that duplicate names are rejected."""
        from hub.errors import DuplicateProvider
        from hub.registry import ProviderRegistry

        registry = ProviderRegistry()
        registry.register(ProviderDescriptor(name="ping", factory=NotesOperations))

        with pytest.raises(DuplicateProvider):
            registry.register(ProviderDescriptor(name="ping", factory=NotesOperations))
        with pytest.raises(ValueError):
            registry.register(ProviderDescriptor(name="ping", factory=NotesOperations))

    def test_resolve_unknown_and_disabled(self):
        """Test resolve errors for unknown and disabled providers."""
        from hub.errors import ProviderDisabled, UnknownProvider
        from hub.registry import ProviderRegistry

        registry = ProviderRegistry()
        registry.register(ProviderDescriptor(name="off", enabled=False, factory=NotesOperations))

        assert registry.lookup("missing") is None
        with pytest.raises(UnknownProvider):
            registry.resolve("missing")
        with pytest.raises(ProviderDisabled) as exc_info:
            registry.resolve("off")
        assert exc_info.value.status_code == 503
        assert registry.list_providers()[0].status == "stopped"


class TestSessionTable:
    """Tests for the SessionTable."""

    @pytest.mark.asyncio
    async def test_sessions_get_isolated_instances(self):
        """Test that each session owns a distinct OperationSet."""
        from hub.sessions import SessionTable

        table = SessionTable()
        first = await table.create("notes", NotesOperations)
        second = await table.create("notes", NotesOperations)

        assert first.session_id != second.session_id
        assert first.operation_set is not second.operation_set

        first.operation_set.notes.append("only in first")
        assert second.operation_set.notes == []

    @pytest.mark.asyncio
    async def test_concurrent_create(self):
        """Test that concurrent creates never collide or lose entries."""
        from hub.sessions import SessionTable

        table = SessionTable()
        sessions = await asyncio.gather(*[table.create("notes", NotesOperations) for _ in range(50)])

        assert len({s.session_id for s in sessions}) == 50
        assert len(table) == 50

    @pytest.mark.asyncio
    async def test_colliding_id_factory_retries(self):
        """Test that an id already in the table is never reused."""
        from hub.sessions import SessionTable

        ids = iter(["same", "same", "other"])
        table = SessionTable(id_factory=lambda: next(ids))

        first = await table.create("notes", NotesOperations)
        second = await table.create("notes", NotesOperations)

        assert first.session_id == "same"
        assert second.session_id == "other"

    @pytest.mark.asyncio
    async def test_failing_factory_inserts_nothing(self):
        """Test that a factory error leaves the table untouched."""
        from hub.sessions import SessionTable

        def broken():
            raise RuntimeError("cannot start")

        table = SessionTable()
        with pytest.raises(RuntimeError):
            await table.create("notes", broken)
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_destroy_then_lookup(self):
        """Test that destroyed sessions are gone and their set is closed."""
        from hub.errors import SessionNotFound
        from hub.sessions import SessionState, SessionTable

        table = SessionTable()
        session = await table.create("notes", NotesOperations)

        assert await table.destroy(session.session_id, reason="test") is True
        assert await table.destroy(session.session_id) is False

        assert table.get(session.session_id) is None
        with pytest.raises(SessionNotFound):
            table.require(session.session_id)
        assert session.state == SessionState.CLOSED
        assert session.close_reason == "test"
        assert session.operation_set.closed

    @pytest.mark.asyncio
    async def test_shared_instance_survives_destroy(self):
        """Test that destroying a session leaves a shared instance open."""
        from hub.sessions import SessionTable

        table = SessionTable()
        shared = NotesOperations()
        first = await table.create("notes", NotesOperations, shared_instance=shared)
        second = await table.create("notes", NotesOperations, shared_instance=shared)

        assert first.operation_set is second.operation_set
        await table.destroy(first.session_id)
        assert not shared.closed

    @pytest.mark.asyncio
    async def test_provider_close_destroys_session(self):
        """Test that an OperationSet closing itself ends its session."""
        from hub.sessions import SessionTable

        table = SessionTable()
        session = await table.create("notes", NotesOperations)
        session.operation_set.add_close_callback(
            lambda: table.destroy(session.session_id, reason="provider_closed")
        )

        await session.operation_set.close()

        assert session.session_id not in table
        assert session.close_reason == "provider_closed"

    @pytest.mark.asyncio
    async def test_sweep_idle_skips_open_streams(self):
        """Test idle sweeping."""
        from hub.sessions import SessionTable

        table = SessionTable()
        idle = await table.create("notes", NotesOperations)
        streaming = await table.create("notes", NotesOperations)
        fresh = await table.create("notes", NotesOperations)

        idle.last_activity -= 120
        streaming.last_activity -= 120
        streaming.stream_open = True

        expired = await table.sweep_idle(60)

        assert expired == [idle.session_id]
        assert streaming.session_id in table
        assert fresh.session_id in table

    @pytest.mark.asyncio
    async def test_bind_identity_replaces(self):
        """Test that binding twice leaves only the second identity."""
        from shared.models import Identity
        from hub.sessions import SessionTable

        table = SessionTable()
        session = await table.create("notes", NotesOperations)

        table.bind_identity(session.session_id, Identity(
            username="bob", display_name="Bob", capability_level=CapabilityLevel.VIEWER,
        ))
        table.bind_identity(session.session_id, Identity(
            username="alice", display_name="Alice", capability_level=CapabilityLevel.EDITOR,
        ))

        assert session.identity.username == "alice"
        assert session.to_dict()["capabilityLevel"] == "editor"


class TestCapabilityLevel:
    """Tests for capability ordering."""

    def test_order_is_by_rank_not_alphabet(self):
        """Test that admin outranks editor and viewer."""
        assert CapabilityLevel.ADMIN.satisfies(CapabilityLevel.EDITOR)
        assert CapabilityLevel.EDITOR.satisfies(CapabilityLevel.VIEWER)
        assert not CapabilityLevel.VIEWER.satisfies(CapabilityLevel.EDITOR)
        assert CapabilityLevel.lowest() == CapabilityLevel.VIEWER
        assert CapabilityLevel.highest() == CapabilityLevel.ADMIN


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestCapabilityRegistry:
    """Tests for the CapabilityRegistry."""

    async def _registry(self, directory_path, clock=None):
        from hub.acl import CapabilityRegistry
        from hub.sessions import SessionTable

        sessions = SessionTable()
        kwargs = {"clock": clock} if clock else {}
        acl = CapabilityRegistry(sessions, ttl_seconds=60, **kwargs)
        acl.register_policy(
            "notes",
            AclPolicy(operation_levels=NOTES_LEVELS, directory_path=str(directory_path)),
        )
        session = await sessions.create("notes", NotesOperations)
        return acl, sessions, session

    @pytest.mark.asyncio
    async def test_monotonic_over_all_level_pairs(self, tmp_path):
        """Test that any level ranked at or above a sufficient level is sufficient."""
        from hub.acl import CapabilityRegistry
        from hub.sessions import SessionTable
        from shared.models import Identity

        levels = list(CapabilityLevel)
        sessions = SessionTable()
        acl = CapabilityRegistry(sessions)

        for required, granted in itertools.product(levels, levels):
            acl.register_policy("p", AclPolicy(operation_levels={"op": required}))
            session = await sessions.create("p", NotesOperations)
            sessions.bind_identity(session.session_id, Identity(
                username="u", display_name="U", capability_level=granted,
            ))

            check = await acl.check_permission(session.session_id, "p", "op")
            assert check.allowed == (granted.rank >= required.rank)

            if check.allowed:
                for higher in levels:
                    if higher.rank >= granted.rank:
                        sessions.bind_identity(session.session_id, Identity(
                            username="u", display_name="U", capability_level=higher,
                        ))
                        assert (await acl.check_permission(session.session_id, "p", "op")).allowed

    @pytest.mark.asyncio
    async def test_default_level_and_denial(self, directory_path):
        """Test that unidentified sessions run at the directory default."""
        from hub.errors import PermissionDenied

        acl, _, session = await self._registry(directory_path)

        assert await acl.current_level(session.session_id, "notes") == CapabilityLevel.VIEWER
        assert (await acl.check_permission(session.session_id, "notes", "list-notes")).allowed

        check = await acl.check_permission(session.session_id, "notes", "add-note")
        assert not check.allowed
        assert check.required_level == CapabilityLevel.EDITOR
        assert "notes-identify" in check.reason

        with pytest.raises(PermissionDenied) as exc_info:
            await acl.require_permission(session.session_id, "notes", "add-note")
        assert exc_info.value.details["required_level"] == "editor"
        assert exc_info.value.details["current_level"] == "viewer"

    @pytest.mark.asyncio
    async def test_no_session_runs_at_highest_level(self, directory_path):
        """Test that a sessionless caller passes every check."""
        acl, _, _ = await self._registry(directory_path)

        assert await acl.current_level(None, "notes") == CapabilityLevel.ADMIN
        assert (await acl.check_permission(None, "notes", "clear-notes")).allowed

    @pytest.mark.asyncio
    async def test_bind_identity(self, directory_path):
        """Test binding, re-binding and unknown usernames."""
        from hub.errors import SessionNotFound, UnknownIdentity

        acl, sessions, session = await self._registry(directory_path)

        identity = await acl.bind_identity(session.session_id, "alice")
        assert identity.capability_level == CapabilityLevel.EDITOR
        assert (await acl.check_permission(session.session_id, "notes", "add-note")).allowed

        await acl.bind_identity(session.session_id, "root")
        assert acl.session_identity(session.session_id).username == "root"

        with pytest.raises(UnknownIdentity) as exc_info:
            await acl.bind_identity(session.session_id, "mallory")
        assert exc_info.value.valid_identities == ["alice", "root"]
        assert acl.session_identity(session.session_id).username == "root"

        await sessions.destroy(session.session_id)
        with pytest.raises(SessionNotFound):
            await acl.bind_identity(session.session_id, "alice")

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        """Test that a missing directory leaves the default level and refuses identify."""
        from hub.acl import DirectoryState
        from hub.errors import DirectoryUnavailable

        acl, _, session = await self._registry(tmp_path / "absent.json")

        assert await acl.list_identities("notes") == []
        assert await acl.current_level(session.session_id, "notes") == CapabilityLevel.VIEWER
        assert acl.directory_state("notes") == DirectoryState.LOAD_FAILED
        with pytest.raises(DirectoryUnavailable):
            await acl.bind_identity(session.session_id, "alice")

    @pytest.mark.asyncio
    async def test_directory_cached_for_ttl(self, directory_path):
        """Test that edits show up only after the TTL elapses."""
        clock = FakeClock()
        acl, _, _ = await self._registry(directory_path, clock)

        assert await acl.list_identities("notes") == ["alice", "root"]

        directory_path.write_text(json.dumps({"users": {
            "dave": {"displayName": "Dave", "capabilityLevel": "admin"},
        }}))
        clock.now += 30
        assert await acl.list_identities("notes") == ["alice", "root"]

        clock.now += 31
        assert await acl.list_identities("notes") == ["dave"]

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_previous_directory(self, directory_path):
        """Test that an unreadable directory keeps the last good copy."""
        from hub.acl import DirectoryState

        clock = FakeClock()
        acl, _, session = await self._registry(directory_path, clock)
        assert await acl.list_identities("notes") == ["alice", "root"]

        directory_path.write_text("{not json")
        clock.now += 61

        assert await acl.list_identities("notes") == ["alice", "root"]
        assert acl.directory_state("notes") == DirectoryState.LOAD_FAILED
        assert (await acl.bind_identity(session.session_id, "alice")).username == "alice"

    @pytest.mark.asyncio
    async def test_yaml_directory_with_legacy_keys(self, tmp_path):
        """Test YAML directories using role/defaultRole keys."""
        path = tmp_path / "notes-acl.yaml"
        path.write_text(
            "defaultRole: editor\n"
            "users:\n"
            "  erin:\n"
            "    displayName: Erin\n"
            "    role: admin\n"
        )
        acl, _, session = await self._registry(path)

        assert await acl.current_level(session.session_id, "notes") == CapabilityLevel.EDITOR
        identity = await acl.bind_identity(session.session_id, "erin")
        assert identity.capability_level == CapabilityLevel.ADMIN


class TestOperationInvoker:
    """Tests for the OperationInvoker."""

    async def _setup(self, directory_path, audit_logger=None):
        from hub.acl import CapabilityRegistry
        from hub.invoker import OperationInvoker
        from hub.sessions import SessionTable

        sessions = SessionTable()
        acl = CapabilityRegistry(sessions)
        acl.register_policy(
            "notes",
            AclPolicy(operation_levels=NOTES_LEVELS, directory_path=str(directory_path)),
        )
        invoker = OperationInvoker(acl, audit_logger=audit_logger)
        session = await sessions.create("notes", NotesOperations)
        return invoker, session

    @pytest.mark.asyncio
    async def test_listing_includes_identity_operations(self, directory_path):
        """Test that providers with a directory get identify and whoami."""
        invoker, session = await self._setup(directory_path)

        operations = await invoker.list_operations("notes", session.operation_set)
        names = [op.name for op in operations]

        assert names[-2:] == ["notes-identify", "notes-whoami"]
        identify = operations[-2]
        assert "alice, root" in identify.description
        assert identify.input_schema["required"] == ["username"]

    @pytest.mark.asyncio
    async def test_successful_call(self, directory_path):
        """Test a call at the open level."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(session.session_id, "notes", session.operation_set, "list-notes")

        assert not result.is_error
        assert json.loads(result.first_text) == []
        assert result.execution_time_ms >= 0

    @pytest.mark.asyncio
    async def test_denied_call_never_reaches_provider(self, directory_path):
        """Test that a denial short-circuits before the provider runs."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(
            session.session_id, "notes", session.operation_set, "add-note", {"text": "x"},
        )

        assert result.is_error
        assert result.error_code == "PERMISSION_DENIED"
        assert '"editor"' in result.first_text
        assert '"viewer"' in result.first_text
        assert "notes-identify" in result.first_text
        assert session.operation_set.calls == {}

    @pytest.mark.asyncio
    async def test_identify_then_call(self, directory_path):
        """Test that identify unlocks the operation and it runs once."""
        invoker, session = await self._setup(directory_path)

        identified = await invoker.invoke(
            session.session_id, "notes", session.operation_set, "notes-identify", {"username": "alice"},
        )
        assert not identified.is_error
        assert "Alice" in identified.first_text

        result = await invoker.invoke(
            session.session_id, "notes", session.operation_set, "add-note", {"text": "x"},
        )
        assert not result.is_error
        assert session.operation_set.calls == {"add-note": 1}

        whoami = await invoker.invoke(session.session_id, "notes", session.operation_set, "notes-whoami")
        assert json.loads(whoami.first_text)["username"] == "alice"

    @pytest.mark.asyncio
    async def test_identify_unknown_lists_usernames(self, directory_path):
        """Test identify guidance for unknown usernames."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(
            session.session_id, "notes", session.operation_set, "notes-identify", {"username": "unknown"},
        )

        assert result.is_error
        assert "Valid usernames: alice, root" in result.first_text

    @pytest.mark.asyncio
    async def test_identify_on_sessionless_channel(self, directory_path):
        """Test that identify on the local channel reports the highest level."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(
            None, "notes", session.operation_set, "notes-identify", {"username": "alice"}, source="stdio",
        )

        assert not result.is_error
        assert '"admin"' in result.first_text

    @pytest.mark.asyncio
    async def test_unknown_operation(self, directory_path):
        """Test calling an operation the provider does not have."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(session.session_id, "notes", session.operation_set, "fly")

        assert result.is_error
        assert result.error_code == "OPERATION_NOT_FOUND"
        assert 'Unknown tool "fly"' in result.first_text

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, directory_path):
        """Test schema validation after the permission check."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(None, "notes", session.operation_set, "add-note", {"text": 42})

        assert result.is_error
        assert result.error_code == "VALIDATION_ERROR"
        assert session.operation_set.calls == {}

    @pytest.mark.asyncio
    async def test_provider_exception_becomes_error_result(self, directory_path):
        """Test that provider exceptions never escape."""
        invoker, session = await self._setup(directory_path)

        result = await invoker.invoke(session.session_id, "notes", session.operation_set, "explode")

        assert result.is_error
        assert result.first_text == "Error: boom"
        assert result.error_code == "PROVIDER_OPERATION_FAILURE"

    @pytest.mark.asyncio
    async def test_calls_are_audited(self, directory_path, tmp_path):
        """Test audit outcomes for success, error and denial."""
        from hub.audit import AuditLogger

        audit = AuditLogger(log_path=tmp_path / "audit.log", enabled=True)
        invoker, session = await self._setup(directory_path, audit_logger=audit)
        operation_set = session.operation_set

        await invoker.invoke(session.session_id, "notes", operation_set, "list-notes")
        await invoker.invoke(session.session_id, "notes", operation_set, "explode")
        await invoker.invoke(session.session_id, "notes", operation_set, "add-note", {"text": "x"})
        await audit.flush()

        entries = await audit.query(session_id=session.session_id)
        assert [e.outcome for e in entries] == [
            InvocationOutcome.SUCCESS,
            InvocationOutcome.ERROR,
            InvocationOutcome.DENIED,
        ]
        assert entries[0].provider == "notes"

    @pytest.mark.asyncio
    async def test_sensitive_arguments_redacted(self, tmp_path):
        """Test that secrets are redacted in audit entries."""
        from shared.models import InvocationContext
        from hub.audit import AuditLogger

        audit = AuditLogger(log_path=tmp_path / "audit.log", enabled=True)
        context = InvocationContext(request_id="r1", provider="spotify", session_id="s1")

        entry = await audit.log(
            "spotify-auth",
            {"account": "home", "access_token": "abc"},
            context,
            InvocationOutcome.SUCCESS,
        )

        assert entry.parameters == {"account": "home", "access_token": "[REDACTED]"}


class TestMcpEndpoint:
    """Tests for the per-session JSON-RPC endpoint."""

    def _endpoint(self):
        from hub.acl import CapabilityRegistry
        from hub.invoker import OperationInvoker
        from hub.protocol import McpEndpoint
        from hub.sessions import SessionTable

        descriptor = ProviderDescriptor(
            name="notes", version="2.1.0", description="Notes", factory=NotesOperations,
        )
        invoker = OperationInvoker(CapabilityRegistry(SessionTable()))
        return McpEndpoint(descriptor, NotesOperations(), invoker, session_id="s1")

    @pytest.mark.asyncio
    async def test_initialize(self):
        """Test protocol negotiation and server info."""
        endpoint = self._endpoint()

        response = await endpoint.handle_message(initialize_message(7))

        assert response["id"] == 7
        result = response["result"]
        assert result["protocolVersion"] == "2025-03-26"
        assert result["serverInfo"] == {"name": "notes", "version": "2.1.0"}
        assert "tools" in result["capabilities"]

    @pytest.mark.asyncio
    async def test_unsupported_version_gets_latest(self):
        """Test that unknown client versions are answered with the latest."""
        from hub.protocol import LATEST_PROTOCOL_VERSION

        endpoint = self._endpoint()
        response = await endpoint.handle_message(rpc("initialize", {"protocolVersion": "1999-01-01"}))

        assert response["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    @pytest.mark.asyncio
    async def test_second_initialize_rejected(self):
        """Test that a session initializes once."""
        from hub.errors import INVALID_REQUEST

        endpoint = self._endpoint()
        await endpoint.handle_message(initialize_message())
        response = await endpoint.handle_message(initialize_message(2))

        assert response["error"]["code"] == INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_methods(self):
        """Test method dispatch, notifications and unknown methods."""
        from hub.errors import INVALID_REQUEST, METHOD_NOT_FOUND

        endpoint = self._endpoint()

        assert (await endpoint.handle_message(rpc("ping")))["result"] == {}
        assert await endpoint.handle_message(rpc("notifications/initialized", request_id=None)) is None
        assert endpoint.client_ready
        assert await endpoint.handle_message(rpc("notifications/unknown", request_id=None)) is None

        missing = await endpoint.handle_message(rpc("sampling/createMessage"))
        assert missing["error"]["code"] == METHOD_NOT_FOUND

        invalid = await endpoint.handle_message({"method": "ping", "id": 3})
        assert invalid["error"]["code"] == INVALID_REQUEST

        tools = await endpoint.handle_message(rpc("tools/list"))
        assert [t["name"] for t in tools["result"]["tools"]] == [
            "list-notes", "add-note", "clear-notes", "explode",
        ]

    @pytest.mark.asyncio
    async def test_tools_call_params(self):
        """Test tools/call parameter checks."""
        from hub.errors import INVALID_PARAMS

        endpoint = self._endpoint()

        missing_name = await endpoint.handle_message(rpc("tools/call", {"arguments": {}}))
        assert missing_name["error"]["code"] == INVALID_PARAMS

        bad_arguments = await endpoint.handle_message(
            rpc("tools/call", {"name": "list-notes", "arguments": [1]})
        )
        assert bad_arguments["error"]["code"] == INVALID_PARAMS

        ok = await endpoint.handle_message(rpc("tools/call", {"name": "list-notes"}))
        assert ok["result"]["isError"] is False

    @pytest.mark.asyncio
    async def test_batch(self):
        """Test batches answer requests and skip notifications."""
        from hub.errors import INVALID_REQUEST

        endpoint = self._endpoint()

        responses = await endpoint.handle_payload([
            rpc("ping", request_id=1),
            rpc("notifications/initialized", request_id=None),
            rpc("tools/list", request_id=2),
        ])
        assert [r["id"] for r in responses] == [1, 2]

        assert await endpoint.handle_payload([rpc("notifications/initialized", request_id=None)]) is None
        assert (await endpoint.handle_payload([]))["error"]["code"] == INVALID_REQUEST
