"""MCP client for a single stdio tool server."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from mcp import ClientSession

from dictate_tools import credentials
from dictate_tools.config import DEFAULT_TOOL_CALL_TIMEOUT, KILL_EXIT_GRACE, ServerConfig
from dictate_tools.models import ToolCallResult, ToolDescriptor
from dictate_tools.transport import ServerExitedError, StdioTransport, ToolServerError

logger = logging.getLogger(__name__)


class McpToolClient:
    """Spawns one tool server and keeps an MCP session open to it.

    The session lives inside a dedicated task so its task group is entered and left by
    the same task; other tasks only send requests through it.
    """

    def __init__(
        self,
        server_id: str,
        config: ServerConfig,
        call_timeout: float = DEFAULT_TOOL_CALL_TIMEOUT,
    ):
        self.server_id = server_id
        self.config = config
        self.call_timeout = call_timeout
        self.transport: StdioTransport | None = None
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._ready: asyncio.Future | None = None
        self._closing: asyncio.Event | None = None

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self.transport.process if self.transport else None

    @property
    def connected(self) -> bool:
        return self._session is not None

    async def spawn(self) -> asyncio.subprocess.Process:
        """
        Start the server process without talking to it yet.

        Raises:
            ToolServerError: If env references cannot be resolved or the spawn fails
        """
        try:
            env = credentials.resolve_env_references(self.config.env)
        except (credentials.CredentialStorageError, ValueError) as e:
            raise ToolServerError(f"Could not resolve environment for {self.server_id}: {e}") from e

        self.transport = StdioTransport(
            f"tool-server:{self.server_id}",
            self.config.command,
            self.config.args,
            env=env,
        )
        return await self.transport.start()

    async def connect(self) -> None:
        """
        Perform the MCP handshake, spawning first if needed.

        Raises:
            ServerExitedError: If the process exits before the handshake completes
            ToolServerError: If the handshake fails
        """
        if self.transport is None:
            await self.spawn()
        process = self.transport.process

        self._ready = asyncio.get_running_loop().create_future()
        self._closing = asyncio.Event()
        self._runner = asyncio.create_task(self._run_session(), name=f"mcp-session-{self.server_id}")

        exited = asyncio.ensure_future(process.wait())
        try:
            await asyncio.wait({self._ready, exited}, return_when=asyncio.FIRST_COMPLETED)
            if self._ready.done() and (self._ready.cancelled() or self._ready.exception() is not None):
                # A closed stdout usually fails the session just before the exit is reaped.
                await asyncio.wait({exited}, timeout=KILL_EXIT_GRACE)
        finally:
            if not exited.done():
                exited.cancel()

        if exited.done() and not exited.cancelled():
            if not self._ready.done() or self._ready.cancelled() or self._ready.exception() is not None:
                raise ServerExitedError(
                    f"Server process exited with code {process.returncode} before completing the handshake",
                    process.returncode,
                )
        if self._ready.cancelled():
            raise ToolServerError(f"Session with {self.server_id} closed before the handshake completed")
        try:
            self._ready.result()
        except Exception as e:
            raise ToolServerError(f"Handshake with {self.server_id} failed: {e}") from e
        logger.info("Connected to tool server %s (PID: %s)", self.server_id, process.pid)

    async def _run_session(self) -> None:
        try:
            async with self.transport.open_streams() as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
            else:
                logger.warning("Session with %s ended unexpectedly: %s", self.server_id, e)
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.cancel()

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolServerError(f"Tool server {self.server_id} is not connected")
        return self._session

    async def list_tools(self) -> list[ToolDescriptor]:
        """Discover the server's tools."""
        result = await self._require_session().list_tools()
        tools = []
        for tool in result.tools:
            tools.append(
                ToolDescriptor(
                    name=tool.name,
                    description=tool.description or "",
                    input_schema=dict(tool.inputSchema or {}),
                    owner=self.server_id,
                )
            )
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolCallResult:
        result = await self._require_session().call_tool(
            name,
            arguments,
            read_timeout_seconds=timedelta(seconds=self.call_timeout),
        )
        return ToolCallResult(
            content=[item.model_dump(by_alias=True, exclude_none=True) for item in result.content],
            is_error=bool(result.isError),
        )

    async def close(self) -> None:
        """End the session and make sure the server process is gone."""
        if self._closing is not None:
            self._closing.set()
        runner = self._runner
        if runner is not None and not runner.done():
            done, _ = await asyncio.wait({runner}, timeout=KILL_EXIT_GRACE)
            if not done:
                # Still stuck in the handshake; the closing event is never reached.
                runner.cancel()
                await asyncio.wait({runner}, timeout=KILL_EXIT_GRACE)
        if self.transport is not None:
            await self.transport.close()
        logger.debug("Closed tool server %s", self.server_id)
