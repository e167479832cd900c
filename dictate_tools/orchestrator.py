"""Tool orchestration across built-in tools and stdio tool servers.

The orchestrator owns the tool registry (tool name -> descriptor) and the status of
every configured server. Servers connect concurrently; one failing server never stops
the others or the built-in tools. Tool calls are routed to whoever owns the name.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from dictate_tools.config import (
    TOOL_ORCHESTRATOR_CLEANUP_PRIORITY,
    ServerConfig,
    ServerConfigError,
    coerce_server_config,
    validate_server_config,
)
from dictate_tools.local_tools import LOCAL_TOOLS, get_local_tool
from dictate_tools.mcp_client import McpToolClient
from dictate_tools.models import ToolCallRequest, ToolCallResult, ToolDescriptor
from dictate_tools.shutdown import CleanupTask, ShutdownCoordinator
from dictate_tools.transport import ServerExitedError, ToolServerError

logger = logging.getLogger(__name__)

CLEANUP_TASK_NAME = "tool-orchestrator"


class UnknownToolError(LookupError):
    """Raised when a tool call names a tool that nothing provides."""


class ServerStatus(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISABLED = "disabled"


class ToolClient(Protocol):
    """What the orchestrator needs from a per-server client."""

    process: Any

    async def spawn(self) -> Any: ...

    async def connect(self) -> None: ...

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[str, ServerConfig], ToolClient]


@dataclass
class ServerConnection:
    """Runtime state of one configured server. ``client`` is only set while usable."""

    config: ServerConfig
    status: ServerStatus = ServerStatus.CONNECTING
    client: ToolClient | None = None
    last_error: str | None = None
    tool_names: list[str] = field(default_factory=list)


def _process_name(server_id: str) -> str:
    return f"tool-server:{server_id}"


def _test_process_name(server_id: str) -> str:
    return f"tool-server-test:{server_id}"


def _describe_error(e: BaseException) -> str:
    return str(e) or type(e).__name__


class ToolOrchestrator:
    """Merges built-in and server-provided tools into one namespace and routes calls."""

    def __init__(
        self,
        coordinator: ShutdownCoordinator | None = None,
        client_factory: ClientFactory = McpToolClient,
    ):
        """
        Args:
            coordinator: Shutdown coordinator that tracks spawned servers and runs
                ``cleanup`` during graceful shutdown
            client_factory: Builds the client for a server id and config
        """
        self._coordinator = coordinator
        self._client_factory = client_factory
        self._tools: dict[str, ToolDescriptor] = {}
        self._servers: dict[str, ServerConnection] = {}
        self._disabled: dict[str, ServerConfig] = {}
        self._lock = asyncio.Lock()
        self._install_local_tools()

        if coordinator is not None:
            coordinator.register_cleanup_task(
                CleanupTask(
                    name=CLEANUP_TASK_NAME,
                    priority=TOOL_ORCHESTRATOR_CLEANUP_PRIORITY,
                    cleanup=self.cleanup,
                )
            )

    def _install_local_tools(self) -> None:
        self._tools = {tool.descriptor.name: tool.descriptor for tool in LOCAL_TOOLS}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self, servers: Mapping[str, ServerConfig | Mapping[str, Any]] | None) -> None:
        """
        Connect every enabled server and rebuild the tool registry.

        Never raises for server problems: each failure is recorded in the server
        status. A previous pool is closed first, so calling this again is safe.
        """
        async with self._lock:
            if self._servers or self._disabled:
                logger.info("Re-initializing tool orchestrator, closing previous servers")
                await self._close_all()
            self._install_local_tools()

            pending: list[str] = []
            for server_id, raw in (servers or {}).items():
                try:
                    config = coerce_server_config(server_id, raw)
                except ServerConfigError as e:
                    logger.warning("Skipping tool server %s: %s", server_id, e)
                    continue
                if config.disabled:
                    self._disabled[server_id] = config
                    continue

                connection = ServerConnection(config=config)
                self._servers[server_id] = connection
                error = validate_server_config(config)
                if error:
                    logger.warning("Invalid config for tool server %s: %s", server_id, error)
                    connection.status = ServerStatus.FAILED
                    connection.last_error = error
                    continue
                pending.append(server_id)

            if pending:
                logger.info("Connecting to %d tool servers", len(pending))
            discovered = await asyncio.gather(
                *(self._connect_server(server_id, self._servers[server_id]) for server_id in pending)
            )

            # Merge in configuration order so name conflicts resolve deterministically.
            for server_id, tools in zip(pending, discovered):
                self._merge_tools(server_id, self._servers[server_id], tools)

            connected = sum(1 for c in self._servers.values() if c.status is ServerStatus.CONNECTED)
            logger.info(
                "Tool orchestrator ready: %d tools, %d/%d servers connected",
                len(self._tools),
                connected,
                len(self._servers),
            )

    async def _connect_server(self, server_id: str, connection: ServerConnection) -> list[ToolDescriptor]:
        config = connection.config
        client = self._client_factory(server_id, config)
        connection.client = client
        try:
            tools = await asyncio.wait_for(self._discover(server_id, client), config.connect_timeout)
        except asyncio.TimeoutError:
            error = f"Timed out after {config.connect_timeout:.1f}s"
        except Exception as e:
            error = _describe_error(e)
        else:
            connection.status = ServerStatus.CONNECTED
            logger.info("Tool server %s connected with %d tools", server_id, len(tools))
            return tools

        logger.error("Failed to connect to tool server %s: %s", server_id, error)
        connection.status = ServerStatus.FAILED
        connection.last_error = error
        connection.client = None
        await self._close_client(_process_name(server_id), client)
        return []

    async def _discover(self, server_id: str, client: ToolClient) -> list[ToolDescriptor]:
        process = await client.spawn()
        if self._coordinator is not None and process is not None:
            self._coordinator.track_process(_process_name(server_id), process)
        await client.connect()
        tools = await client.list_tools()
        for tool in tools:
            if not isinstance(tool, ToolDescriptor) or not isinstance(tool.name, str) or not tool.name:
                raise ToolServerError(f"Malformed tool list from {server_id}: {tool!r}")
        return tools

    def _merge_tools(self, server_id: str, connection: ServerConnection, tools: list[ToolDescriptor]) -> None:
        for tool in tools:
            existing = self._tools.get(tool.name)
            if existing is not None:
                logger.warning(
                    "Skipping tool %s from %s: name already provided by %s",
                    tool.name,
                    server_id,
                    existing.owner,
                )
                continue
            self._tools[tool.name] = tool
            connection.tool_names.append(tool.name)

    async def cleanup(self) -> None:
        """Close every server and empty the registry and status map."""
        async with self._lock:
            await self._close_all()
            self._tools.clear()
        logger.info("Tool orchestrator cleaned up")

    async def _close_all(self) -> None:
        connections = list(self._servers.items())
        self._servers.clear()
        self._disabled.clear()
        self._tools = {name: tool for name, tool in self._tools.items() if tool.is_local}

        await asyncio.gather(
            *(
                self._close_client(_process_name(server_id), connection.client)
                for server_id, connection in connections
                if connection.client is not None
            )
        )

    async def _close_client(self, process_name: str, client: ToolClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Error closing %s: %s", process_name, e)
        finally:
            if self._coordinator is not None:
                self._coordinator.untrack_process(process_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_available_tools(self) -> list[ToolDescriptor]:
        return list(self._tools.values())

    def get_server_status(self, include_disabled: bool = False) -> dict[str, dict[str, Any]]:
        """Status per server id. Disabled servers are only listed on request."""
        status = {
            server_id: {
                "status": connection.status.value,
                "tool_count": len(connection.tool_names),
                "error": connection.last_error,
            }
            for server_id, connection in self._servers.items()
        }
        if include_disabled:
            for server_id in self._disabled:
                status[server_id] = {"status": ServerStatus.DISABLED.value, "tool_count": 0, "error": None}
        return status

    async def test_server_connection(
        self, server_id: str, config: ServerConfig | Mapping[str, Any]
    ) -> dict[str, Any]:
        """
        Check that a server config can connect, without touching the live pool.

        A command that starts and exits with code 0 before the handshake also counts
        as a success.

        Returns:
            ``{"success": True}`` or ``{"success": False, "error": message}``
        """
        try:
            config = coerce_server_config(server_id, config)
        except ServerConfigError as e:
            return {"success": False, "error": str(e)}

        error = validate_server_config(config)
        if error:
            return {"success": False, "error": error}

        process_name = _test_process_name(server_id)
        client = self._client_factory(server_id, config)
        try:
            await asyncio.wait_for(self._try_connect(process_name, client), config.connect_timeout)
        except asyncio.TimeoutError:
            return {"success": False, "error": f"Timed out after {config.connect_timeout:.1f}s"}
        except Exception as e:
            logger.info("Connection test for %s failed: %s", server_id, e)
            return {"success": False, "error": _describe_error(e)}
        finally:
            await self._close_client(process_name, client)
        return {"success": True}

    async def _try_connect(self, process_name: str, client: ToolClient) -> None:
        process = await client.spawn()
        if self._coordinator is not None and process is not None:
            self._coordinator.track_process(process_name, process)
        try:
            await client.connect()
        except ServerExitedError as e:
            # Commands such as `echo` exit 0 without speaking MCP.
            if e.returncode != 0:
                raise
            logger.info("%s exited cleanly before the handshake", process_name)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------
    async def execute_tool_call(self, request: ToolCallRequest | Mapping[str, Any]) -> ToolCallResult:
        """
        Run a tool by name.

        Failures inside a known tool come back as ``is_error`` results.

        Raises:
            UnknownToolError: If no registered tool has that name
        """
        request = ToolCallRequest.coerce(request)
        descriptor = self._tools.get(request.name)
        if descriptor is None:
            raise UnknownToolError(f"Unknown tool: {request.name}")

        if descriptor.is_local:
            return await self._call_local(request)

        connection = self._servers.get(descriptor.owner)
        if connection is None or connection.client is None or connection.status is not ServerStatus.CONNECTED:
            return ToolCallResult.error(f"Tool server {descriptor.owner} is not connected")

        try:
            return await connection.client.call_tool(request.name, request.arguments)
        except Exception as e:
            logger.error("Tool %s on %s failed: %s", request.name, descriptor.owner, e)
            return ToolCallResult.error(
                f"Error calling {request.name} on {descriptor.owner}: {_describe_error(e)}"
            )

    async def _call_local(self, request: ToolCallRequest) -> ToolCallResult:
        tool = get_local_tool(request.name)
        try:
            return await asyncio.to_thread(tool.handler, request.arguments)
        except (OSError, ValueError, UnicodeError) as e:
            logger.warning("Local tool %s failed: %s", request.name, e)
            return ToolCallResult.error(f"Error in {request.name}: {e}")
