"""Configuration defaults and tool-server settings for dictate-tools."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Shutdown defaults (seconds)
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
SIGNAL_SHUTDOWN_TIMEOUT = 5.0  # used when the OS asks us to stop
FORCE_SHUTDOWN_TIMEOUT = 5.0
PROCESS_EXIT_GRACE = 5.0
KILL_EXIT_GRACE = 1.0

# Tool server defaults
DEFAULT_SERVER_TIMEOUT = 10.0
DEFAULT_TOOL_CALL_TIMEOUT = 60.0
STDIO_READ_LIMIT = 4 * 1024 * 1024  # tool lists can be large single-line JSON
TOOL_ORCHESTRATOR_CLEANUP_PRIORITY = 10
LOCAL_OWNER = "local"

# LLM defaults
DEFAULT_LLM_ENDPOINT = "http://localhost:1234/v1"  # LM Studio default
DEFAULT_LLM_MODEL = "openai/gpt-oss-20b"
DEFAULT_LLM_KEY = ""  # LM Studio usually does not require a key
DEFAULT_LLM_TEMP = 0.1
DEFAULT_MAX_TOOL_ROUNDS = 5

DEFAULT_TOOL_PROMPT = """
You are a dictation assistant that can act on what the user says.

The user's message is a raw speech transcript. If it asks for something one of the
available tools can do (create or read a file, list a folder, send a notification, or any
other tool offered to you), call the tool with precise arguments taken from the transcript.

Rules:
- Only call tools the user clearly asked for.
- Never invent file paths or content that the user did not dictate.
- After the tools have run, reply with one short sentence describing what was done.
- If no tool is needed, reply with the cleaned-up transcript and nothing else.
"""

SECONDS_PER_MS = 0.001


class ServerConfigError(ValueError):
    """Raised when a tool-server entry cannot be parsed."""


@dataclass
class ServerConfig:
    """User-authored definition of one stdio tool server."""

    id: str
    command: str
    args: list[str] = field(default_factory=list)
    disabled: bool = False
    timeout_ms: float | None = None
    env: dict[str, str] | None = None

    @property
    def connect_timeout(self) -> float:
        """Connect/discovery bound in seconds."""
        if self.timeout_ms is None:
            return DEFAULT_SERVER_TIMEOUT
        return float(self.timeout_ms) * SECONDS_PER_MS

    @classmethod
    def from_dict(cls, server_id: str, data: Mapping[str, Any]) -> ServerConfig:
        """Build a config from a settings-file entry.

        No type checking happens here; call ``validate_server_config`` on the result.
        """
        if not isinstance(data, Mapping):
            raise ServerConfigError(f"Server '{server_id}' must be a mapping")

        timeout = None
        for key in ("timeout", "timeoutMs", "timeout_ms"):
            if data.get(key) is not None:
                timeout = data[key]
                break

        return cls(
            id=server_id,
            command=data.get("command", ""),
            args=data.get("args", []),
            disabled=bool(data.get("disabled", False)),
            timeout_ms=timeout,
            env=data.get("env"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the settings-file shape."""
        data: dict[str, Any] = {"command": self.command, "args": list(self.args)}
        if self.disabled:
            data["disabled"] = True
        if self.timeout_ms is not None:
            data["timeout"] = self.timeout_ms
        if self.env:
            data["env"] = dict(self.env)
        return data


def validate_server_config(config: ServerConfig) -> str | None:
    """Return the first problem with ``config``, or None when it is usable."""
    command = config.command
    if not isinstance(command, str) or not command.strip():
        return "Command is required"
    if not isinstance(config.args, (list, tuple)):
        return "Args must be an array"
    if config.env is not None and not isinstance(config.env, Mapping):
        return "Env must be a mapping"
    if config.timeout_ms is not None:
        if isinstance(config.timeout_ms, bool) or not isinstance(config.timeout_ms, (int, float)):
            return "Timeout must be a positive number"
        if config.timeout_ms <= 0:
            return "Timeout must be a positive number"
    return None


def coerce_server_config(server_id: str, config: ServerConfig | Mapping[str, Any]) -> ServerConfig:
    """Accept either a ready ``ServerConfig`` or a raw mapping."""
    if isinstance(config, ServerConfig):
        return config
    return ServerConfig.from_dict(server_id, config)
