"""
MCP-backed tool executor.

Connects to one or more MCP servers over stdio, collects their tools as OpenAI
function schemas, and routes approved ToolCalls to the server that owns the tool.
Used as the core's ToolExecutor collaborator; the core has already gated every call.
"""

import logging
import os
import sys
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from src.core.state import ToolCall
from src.shared.dataclasses import ToolExecutionResult

logger = logging.getLogger("vigilant.mcp")


def parse_server_config(raw: str) -> Dict[str, str]:
    """'control=path/a.py,vision=path/b.py' -> {"control": "path/a.py", ...}"""
    servers: Dict[str, str] = {}
    for item in raw.split(","):
        name, sep, path = item.strip().partition("=")
        if sep and name.strip() and path.strip():
            servers[name.strip()] = path.strip()
    return servers


def coerce_arguments(arguments: Dict[str, str], schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Tool inputs arrive as strings; convert back to the JSON types the server declared."""
    props = (schema or {}).get("properties") or {}
    out: Dict[str, Any] = {}
    for key, value in arguments.items():
        kind = (props.get(key) or {}).get("type")
        try:
            if kind == "integer":
                out[key] = int(value)
            elif kind == "number":
                out[key] = float(value)
            elif kind == "boolean":
                out[key] = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                out[key] = value
        except ValueError:
            out[key] = value
    return out


class McpToolExecutor:
    def __init__(self, servers: Dict[str, str]):
        self.servers = servers
        self.sessions: Dict[str, ClientSession] = {}
        self.exit_stack = AsyncExitStack()
        self.tool_routing: Dict[str, str] = {}
        self.input_schemas: Dict[str, Dict[str, Any]] = {}
        self.available_tools: List[Dict[str, Any]] = []

    async def __aenter__(self) -> "McpToolExecutor":
        await self.exit_stack.__aenter__()
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.exit_stack.__aexit__(*exc)

    async def connect_to_server(self, name: str, script_path: str) -> None:
        """Connect to an MCP server script over stdio."""
        server_params = StdioServerParameters(
            command=sys.executable,
            args=[script_path],
            env=os.environ.copy(),
        )
        try:
            read_stream, write_stream = await self.exit_stack.enter_async_context(stdio_client(server_params))
            session = await self.exit_stack.enter_async_context(ClientSession(read_stream, write_stream))
            await session.initialize()
        except Exception as e:
            logger.error("Could not connect to MCP server %s (%s): %s", name, script_path, e)
            return
        self.sessions[name] = session
        logger.info("MCP server connected: %s", name)

    async def initialize(self) -> None:
        """Connect every configured server and load its tools."""
        for name, path in self.servers.items():
            if os.path.exists(path):
                await self.connect_to_server(name, path)
            else:
                logger.warning("MCP server script not found: %s", path)

        for server_name, session in self.sessions.items():
            result = await session.list_tools()
            for tool in result.tools:
                self.tool_routing[tool.name] = server_name
                self.input_schemas[tool.name] = tool.inputSchema
                self.available_tools.append({
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.inputSchema,
                    },
                })
                logger.info("Tool loaded: %s (%s)", tool.name, server_name)

    def has(self, tool_name: str) -> bool:
        return tool_name in self.tool_routing

    async def call_text(self, tool_name: str, arguments: Optional[Dict[str, Any]] = None) -> str:
        """Call a tool directly and return its first text block; raises on failure."""
        session = self.sessions[self.tool_routing[tool_name]]
        result = await session.call_tool(tool_name, arguments or {})
        if result.content:
            return getattr(result.content[0], "text", "")
        return ""

    async def execute(self, call: ToolCall) -> ToolExecutionResult:
        server_name = self.tool_routing.get(call.name)
        if server_name is None:
            return ToolExecutionResult(summary=f"Error: Tool '{call.name}' not found.", is_error=True)

        session = self.sessions[server_name]
        arguments = coerce_arguments(call.input, self.input_schemas.get(call.name))
        try:
            result = await session.call_tool(call.name, arguments)
        except Exception as e:
            logger.error("Tool %s failed on %s: %s", call.name, server_name, e)
            return ToolExecutionResult(summary=f"Tool Execution Error: {e}", is_error=True)

        text = getattr(result.content[0], "text", "") if result.content else ""
        return ToolExecutionResult(
            summary=text or "Success (No output)",
            is_error=bool(getattr(result, "isError", False)),
        )
