"""Stdio transport for tool servers.

Spawns the server as a child process and exposes its stdin/stdout as the pair of
message streams an ``mcp.ClientSession`` expects. Messages are newline-delimited
JSON-RPC, as in the MCP stdio transport. The process handle stays available so the
shutdown coordinator can track it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import anyio
from mcp import types
from mcp.client.stdio import get_default_environment
from mcp.shared.message import SessionMessage
from pydantic import TypeAdapter

from dictate_tools.config import KILL_EXIT_GRACE, PROCESS_EXIT_GRACE, STDIO_READ_LIMIT
from dictate_tools.shutdown import wait_for_exit

logger = logging.getLogger(__name__)

# Works whether JSONRPCMessage is a root model or a plain union of message models.
MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(types.JSONRPCMessage)


class ToolServerError(Exception):
    """Raised when a tool server cannot be spawned, reached or talked to."""


class ServerExitedError(ToolServerError):
    """Raised when the server process exits before the MCP handshake completes."""

    def __init__(self, message: str, returncode: int | None):
        super().__init__(message)
        self.returncode = returncode


class StdioTransport:
    """One child process speaking JSON-RPC over stdio."""

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: Mapping[str, str] | None = None,
        encoding: str = "utf-8",
    ):
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.encoding = encoding
        self._process: asyncio.subprocess.Process | None = None

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    async def start(self) -> asyncio.subprocess.Process:
        """
        Spawn the server process.

        Raises:
            ToolServerError: If the process cannot be started
        """
        if self._process is not None:
            raise ToolServerError(f"Transport {self.name} already started")

        env = get_default_environment()
        env.update(self.env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STDIO_READ_LIMIT,
            )
        except OSError as e:
            # FileNotFoundError / PermissionError for a bad command
            raise ToolServerError(f"Failed to start '{self.command}': {e}") from e

        logger.debug("Started %s: %s (PID: %s)", self.name, self.command, self._process.pid)
        return self._process

    @asynccontextmanager
    async def open_streams(self) -> AsyncIterator[tuple]:
        """Yield ``(read_stream, write_stream)`` bridged to the process stdio."""
        process = self._process
        if process is None:
            raise ToolServerError(f"Transport {self.name} is not started")

        read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump_stdout, process, read_stream_writer)
                tg.start_soon(self._pump_stdin, process, write_stream_reader)
                tg.start_soon(self._drain_stderr, process)
                try:
                    yield read_stream, write_stream
                finally:
                    tg.cancel_scope.cancel()
        finally:
            await read_stream.aclose()
            await write_stream.aclose()

    async def _pump_stdout(self, process: asyncio.subprocess.Process, writer) -> None:
        async with writer:
            while True:
                line = await process.stdout.readline()
                if not line:
                    logger.debug("%s closed stdout", self.name)
                    return
                text = line.decode(self.encoding, errors="replace").strip()
                if not text:
                    continue
                try:
                    message = MESSAGE_ADAPTER.validate_json(text)
                except ValueError as e:
                    # pydantic ValidationError; the session logs and drops it
                    logger.debug("%s sent a non-JSON-RPC line: %r", self.name, text[:200])
                    await writer.send(e)
                    continue
                await writer.send(SessionMessage(message))

    async def _pump_stdin(self, process: asyncio.subprocess.Process, reader) -> None:
        async with reader:
            async for session_message in reader:
                payload = MESSAGE_ADAPTER.dump_json(session_message.message, by_alias=True, exclude_none=True)
                try:
                    process.stdin.write(payload + b"\n")
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    logger.warning("%s stdin closed: %s", self.name, e)
                    return

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug("[%s stderr] %s", self.name, line.decode(self.encoding, errors="replace").rstrip())

    async def close(self) -> None:
        """Close stdin, then escalate to SIGTERM and SIGKILL until the process exits."""
        process = self._process
        if process is None or process.returncode is not None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if await wait_for_exit(process, KILL_EXIT_GRACE):
            return

        try:
            process.terminate()
            if await wait_for_exit(process, PROCESS_EXIT_GRACE):
                return
            logger.warning("%s ignored SIGTERM, killing", self.name)
            process.kill()
        except ProcessLookupError:
            return
        await wait_for_exit(process, KILL_EXIT_GRACE)
