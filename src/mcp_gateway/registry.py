"""Tool registry for the MCP endpoint.

Holds the tools exposed through ``tools/list`` and ``tools/call``.
Arguments are validated against each tool's input schema before the
handler runs; handlers receive the authenticated principal.
"""

from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from shared.logging import get_logger
from shared.models import ApiKeyPrincipal, OAuthPrincipal
from shared.schema import validate_schema

logger = get_logger(__name__)

AnyPrincipal = Union[OAuthPrincipal, ApiKeyPrincipal]
ToolHandler = Callable[[dict[str, Any], AnyPrincipal], Awaitable[Any]]


class ToolDefinition(BaseModel):
    """An MCP tool and its handler."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: ToolHandler

    def to_mcp(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class ToolRegistry:
    """Registry of MCP tools, keyed by name."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with the same name is already registered
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.info("Tool registered", tool=tool.name)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def list_tools(self) -> list[dict[str, Any]]:
        return [tool.to_mcp() for tool in self._tools.values()]

    async def call(
        self,
        name: str,
        arguments: dict[str, Any],
        principal: AnyPrincipal
    ) -> Any:
        """
        Validate arguments and run a tool.

        Raises:
            KeyError: If the tool is not registered
            ToolValidationError: If the arguments fail the input schema
        """
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(name)

        is_valid, errors = validate_schema(arguments, tool.input_schema)
        if not is_valid:
            raise ToolValidationError(errors)

        logger.info("Tool called", tool=name, strategy=principal.strategy)
        return await tool.handler(arguments, principal)


async def whoami(arguments: dict[str, Any], principal: AnyPrincipal) -> dict[str, Any]:
    """Echo the authenticated principal."""
    return principal.model_dump()


def register_builtin_tools(registry: ToolRegistry) -> ToolRegistry:
    registry.register(ToolDefinition(
        name="whoami",
        description="Return the identity this request is authenticated as",
        handler=whoami,
    ))
    return registry
