"""Tests for the MCP tool registry and the audit logger."""

import json

import pytest

from shared.models import ApiKeyPrincipal, AuditEventType, ClientRegistrationMechanism

PRINCIPAL = ApiKeyPrincipal(email="jane@webfx.com", first_name="Jane")


async def echo(arguments, principal):
    return {"name": arguments["name"], "email": principal.email}


class TestToolRegistry:
    """Tests for the ToolRegistry."""

    def test_register_duplicate_tool_raises(self):
        """Test that registering a duplicate tool raises an error."""
        from mcp_gateway.registry import ToolDefinition, ToolRegistry

        registry = ToolRegistry()
        tool = ToolDefinition(name="echo", description="Echo", handler=echo)

        registry.register(tool)

        with pytest.raises(ValueError, match="already registered"):
            registry.register(tool)

    def test_list_tools_mcp_format(self):
        """Test that tools are listed with camelCase inputSchema."""
        from mcp_gateway.registry import ToolRegistry, register_builtin_tools

        tools = register_builtin_tools(ToolRegistry()).list_tools()

        assert tools == [{
            "name": "whoami",
            "description": "Return the identity this request is authenticated as",
            "inputSchema": {"type": "object", "properties": {}},
        }]

    @pytest.mark.asyncio
    async def test_call_validates_arguments(self):
        """Test input validation against the tool schema."""
        from mcp_gateway.registry import ToolDefinition, ToolRegistry, ToolValidationError

        registry = ToolRegistry()
        registry.register(ToolDefinition(
            name="echo",
            description="Echo",
            input_schema={
                "type": "object",
                "properties": {"name": {"type": "string"}},
                "required": ["name"],
            },
            handler=echo,
        ))

        assert await registry.call("echo", {"name": "x"}, PRINCIPAL) == {
            "name": "x",
            "email": "jane@webfx.com",
        }

        with pytest.raises(ToolValidationError) as exc_info:
            await registry.call("echo", {}, PRINCIPAL)
        assert len(exc_info.value.errors) > 0

    @pytest.mark.asyncio
    async def test_call_unknown_tool(self):
        """Test that unknown tools raise KeyError."""
        from mcp_gateway.registry import ToolRegistry

        with pytest.raises(KeyError):
            await ToolRegistry().call("missing", {}, PRINCIPAL)


class TestAuthAuditLogger:
    """Tests for the AuthAuditLogger."""

    @pytest.mark.asyncio
    async def test_entries_are_buffered_until_flush(self, tmp_path):
        """Test that entries reach the file only once flushed."""
        from mcp_gateway.audit import AuthAuditLogger

        audit = AuthAuditLogger(log_path=str(tmp_path / "audit.log"), buffer_size=10)

        await audit.log(AuditEventType.CLIENT_REGISTERED, "dcr-client")
        assert await audit.query() == []

        await audit.flush()
        entries = await audit.query()

        assert len(entries) == 1
        assert entries[0].event == AuditEventType.CLIENT_REGISTERED

    @pytest.mark.asyncio
    async def test_sensitive_details_are_redacted(self, tmp_path):
        """Test that secrets never reach the audit file."""
        from mcp_gateway.audit import AuthAuditLogger

        log_path = tmp_path / "audit.log"
        audit = AuthAuditLogger(log_path=str(log_path), buffer_size=1)

        await audit.log(
            AuditEventType.USER_FIRST_SEEN,
            "dcr-client",
            email="jane@webfx.com",
            mechanism=ClientRegistrationMechanism.DCR,
            details={"client_secret": "s3cret", "nested": {"refresh_token": "1//x"}},
        )

        record = json.loads(log_path.read_text().splitlines()[0])
        assert record["details"]["client_secret"] == "[REDACTED]"
        assert record["details"]["nested"]["refresh_token"] == "[REDACTED]"
        assert "s3cret" not in log_path.read_text()

    @pytest.mark.asyncio
    async def test_disabled_logger_writes_nothing(self, tmp_path):
        """Test that a disabled logger is a no-op."""
        from mcp_gateway.audit import AuthAuditLogger

        log_path = tmp_path / "audit.log"
        audit = AuthAuditLogger(log_path=str(log_path), enabled=False, buffer_size=1)

        await audit.log(AuditEventType.CLIENT_REGISTERED, "dcr-client")

        assert not log_path.exists()

    @pytest.mark.asyncio
    async def test_query_filters_by_client(self, tmp_path):
        """Test filtering flushed entries by client id."""
        from mcp_gateway.audit import AuthAuditLogger

        audit = AuthAuditLogger(log_path=str(tmp_path / "audit.log"), buffer_size=1)
        await audit.log(AuditEventType.CLIENT_REGISTERED, "a")
        await audit.log(AuditEventType.CLIENT_REGISTERED, "b")

        entries = await audit.query(client_id="b")

        assert [entry.client_id for entry in entries] == ["b"]
