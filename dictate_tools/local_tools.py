"""Built-in tools that work without any tool server."""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dictate_tools.config import LOCAL_OWNER
from dictate_tools.models import ToolCallResult, ToolDescriptor

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 2.0


@dataclass(frozen=True)
class LocalTool:
    descriptor: ToolDescriptor
    handler: Callable[[dict[str, Any]], ToolCallResult]


def _require(arguments: dict[str, Any], *names: str) -> list[str]:
    missing = [name for name in names if not isinstance(arguments.get(name), str)]
    if missing:
        raise ValueError(f"Missing required argument(s): {', '.join(missing)}")
    return [arguments[name] for name in names]


def create_file(arguments: dict[str, Any]) -> ToolCallResult:
    path_str, content = _require(arguments, "path", "content")
    path = Path(path_str).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return ToolCallResult.text(f"File created: {path}")


def read_file(arguments: dict[str, Any]) -> ToolCallResult:
    (path_str,) = _require(arguments, "path")
    path = Path(path_str).expanduser()
    return ToolCallResult.text(path.read_text(encoding="utf-8"))


def list_files(arguments: dict[str, Any]) -> ToolCallResult:
    (path_str,) = _require(arguments, "path")
    path = Path(path_str).expanduser()
    entries = sorted(entry.name + ("/" if entry.is_dir() else "") for entry in path.iterdir())
    if not entries:
        return ToolCallResult.text(f"No files in {path}")
    return ToolCallResult.text("\n".join(entries))


def send_notification(arguments: dict[str, Any]) -> ToolCallResult:
    title, message = _require(arguments, "title", "message")
    show_notification(title, message)
    return ToolCallResult.text(f"Notification sent: {title}")


def show_notification(title: str, message: str) -> bool:
    """Show a desktop notification. Returns False when no notifier is available."""
    system = platform.system()
    if system == "Darwin":
        script = f"display notification {_applescript_quote(message)} with title {_applescript_quote(title)}"
        command = ["osascript", "-e", script]
    elif shutil.which("notify-send"):
        command = ["notify-send", "-a", "dictate-tools", title, message]
    else:
        logger.info("Notification (no desktop notifier available): %s - %s", title, message)
        return False

    try:
        subprocess.run(command, check=False, timeout=NOTIFY_TIMEOUT, stderr=subprocess.DEVNULL)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Desktop notification failed: %s", e)
        return False
    return True


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _schema(**properties: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: {"type": "string", "description": desc} for name, desc in properties.items()},
        "required": list(properties),
    }


LOCAL_TOOLS: tuple[LocalTool, ...] = (
    LocalTool(
        ToolDescriptor(
            name="create_file",
            description="Create a text file with the given content",
            input_schema=_schema(path="File path to create", content="Text to write"),
            owner=LOCAL_OWNER,
        ),
        create_file,
    ),
    LocalTool(
        ToolDescriptor(
            name="read_file",
            description="Read the contents of a text file",
            input_schema=_schema(path="File path to read"),
            owner=LOCAL_OWNER,
        ),
        read_file,
    ),
    LocalTool(
        ToolDescriptor(
            name="list_files",
            description="List the files in a directory",
            input_schema=_schema(path="Directory path to list"),
            owner=LOCAL_OWNER,
        ),
        list_files,
    ),
    LocalTool(
        ToolDescriptor(
            name="send_notification",
            description="Show a desktop notification",
            input_schema=_schema(title="Notification title", message="Notification body"),
            owner=LOCAL_OWNER,
        ),
        send_notification,
    ),
)


def get_local_tool(name: str) -> LocalTool | None:
    for tool in LOCAL_TOOLS:
        if tool.descriptor.name == name:
            return tool
    return None
