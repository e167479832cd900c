"""Host integration: wires settings, the shutdown coordinator and the tool orchestrator."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dictate_tools import settings_store
from dictate_tools.config import DEFAULT_SHUTDOWN_TIMEOUT, SIGNAL_SHUTDOWN_TIMEOUT
from dictate_tools.llm_tools import ToolProcessingResult, process_with_tools
from dictate_tools.mcp_client import McpToolClient
from dictate_tools.orchestrator import ClientFactory, ToolOrchestrator
from dictate_tools.shutdown import (
    ShutdownCoordinator,
    ShutdownError,
    install_exception_handler,
    install_signal_handlers,
)

logger = logging.getLogger(__name__)


class DictateToolsApp:
    """Owns one coordinator and one orchestrator for the lifetime of the host process."""

    def __init__(
        self,
        settings: dict[str, Any] | None = None,
        coordinator: ShutdownCoordinator | None = None,
        client_factory: ClientFactory = McpToolClient,
    ):
        if settings is None:
            settings = settings_store.load_settings()
        self.settings = {**settings_store.default_settings(), **settings}
        self.coordinator = coordinator or ShutdownCoordinator()
        self.orchestrator = ToolOrchestrator(self.coordinator, client_factory=client_factory)
        self._stopped: asyncio.Event | None = None

    @property
    def tools_enabled(self) -> bool:
        return bool(self.settings.get("mcp_tools_enabled", False))

    @property
    def shutdown_timeout(self) -> float:
        try:
            return float(self.settings.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT))
        except (TypeError, ValueError):
            return DEFAULT_SHUTDOWN_TIMEOUT

    async def start(self, install_handlers: bool = True) -> None:
        """Hook signals and loop exceptions, then connect the configured tool servers."""
        self._stopped = asyncio.Event()
        if install_handlers:
            loop = asyncio.get_running_loop()
            install_signal_handlers(
                self.coordinator, loop, timeout=SIGNAL_SHUTDOWN_TIMEOUT, on_complete=self._stopped.set
            )
            install_exception_handler(self.coordinator, loop)
        await self.initialize_tools()

    async def initialize_tools(self) -> None:
        if not self.tools_enabled:
            logger.info("Tool servers disabled in settings, only built-in tools are available")
            await self.orchestrator.initialize({})
            return
        await self.orchestrator.initialize(settings_store.load_server_configs(self.settings))

    async def reload_tools(self, settings: dict[str, Any]) -> None:
        """Apply new settings and rebuild the server pool."""
        self.settings = {**settings_store.default_settings(), **settings}
        await self.initialize_tools()

    async def process_transcript(self, text: str) -> ToolProcessingResult:
        api_key = self.settings.get("llm_key") or settings_store.get_secure_setting("llm_key")
        return await process_with_tools(
            text,
            self.orchestrator,
            endpoint=self.settings["llm_endpoint"],
            model=self.settings["llm_model"],
            api_key=api_key,
            prompt=self.settings["llm_tool_prompt"],
            temperature=float(self.settings["llm_temperature"]),
            max_rounds=int(self.settings["max_tool_rounds"]),
        )

    async def wait_until_stopped(self) -> None:
        """Block until a signal-triggered shutdown has finished."""
        if self._stopped is None:
            raise RuntimeError("start() has not been called")
        await self._stopped.wait()

    async def quit(self) -> None:
        """
        Shut down the way the host's quit path does.

        A quit while a shutdown is already running joins it. Otherwise a graceful
        shutdown runs; the coordinator itself escalates to a forced shutdown on timeout
        or failure, so a ``ShutdownError`` here means that forced pass failed too.
        """
        coordinator = self.coordinator
        if coordinator.is_shutdown_in_progress():
            logger.info("Quit requested while shutdown is in progress, joining it")
            await self._join_shutdown()
            return

        try:
            await coordinator.graceful_shutdown(self.shutdown_timeout)
        except ShutdownError as e:
            logger.error(f"Shutdown finished with errors after forced escalation: {e}")
        finally:
            if self._stopped is not None:
                self._stopped.set()

    async def _join_shutdown(self) -> None:
        try:
            await self.coordinator.graceful_shutdown(self.shutdown_timeout)
        except ShutdownError as e:
            logger.error(f"Shutdown failed: {e}")
