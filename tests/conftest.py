"""Shared fakes for the dictate_tools tests."""

import asyncio
import itertools

import pytest

from dictate_tools.models import ToolCallResult, ToolDescriptor

_pids = itertools.count(40000)


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``.

    Must be created inside a running event loop test body.
    """

    def __init__(self, pid=None, exits_on_terminate=True, exits_on_kill=True):
        self.pid = next(_pids) if pid is None else pid
        self.returncode = None
        self.signals = []
        self.exits_on_terminate = exits_on_terminate
        self.exits_on_kill = exits_on_kill
        self._exited = asyncio.Event()

    def terminate(self):
        self.signals.append("SIGTERM")
        if self.exits_on_terminate:
            self.exit(-15)

    def kill(self):
        self.signals.append("SIGKILL")
        if self.exits_on_kill:
            self.exit(-9)

    def exit(self, code=0):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeClient:
    """In-memory tool client configured per server id."""

    def __init__(
        self,
        server_id,
        config,
        log,
        tools=(),
        connect_error=None,
        connect_delay=0.0,
        call_error=None,
        call_result=None,
        close_error=None,
    ):
        self.server_id = server_id
        self.config = config
        self.log = log
        self.tool_names = list(tools)
        self.connect_error = connect_error
        self.connect_delay = connect_delay
        self.call_error = call_error
        self.call_result = call_result
        self.close_error = close_error
        self.process = None
        self.calls = []
        self.closed = False

    async def spawn(self):
        self.log.append(("spawn", self.server_id))
        self.process = FakeProcess()
        return self.process

    async def connect(self):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.log.append(("connect", self.server_id))

    async def list_tools(self):
        return [
            ToolDescriptor(
                name=name,
                description=f"{name} from {self.server_id}",
                input_schema={"type": "object", "properties": {}},
                owner=self.server_id,
            )
            for name in self.tool_names
        ]

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.call_error is not None:
            raise self.call_error
        if self.call_result is not None:
            return self.call_result
        return ToolCallResult.text(f"{name} ran on {self.server_id}")

    async def close(self):
        self.closed = True
        self.log.append(("close", self.server_id))
        if self.process is not None:
            self.process.exit(0)
        if self.close_error is not None:
            raise self.close_error


class FakeClientFactory:
    """Builds ``FakeClient`` objects from ``specs[server_id]`` keyword arguments."""

    def __init__(self, specs=None):
        self.specs = specs or {}
        self.log = []
        self.clients = []

    def __call__(self, server_id, config):
        client = FakeClient(server_id, config, self.log, **self.specs.get(server_id, {}))
        self.clients.append(client)
        return client

    def client_for(self, server_id):
        matches = [c for c in self.clients if c.server_id == server_id]
        return matches[-1] if matches else None


@pytest.fixture
def fake_factory():
    return FakeClientFactory()
