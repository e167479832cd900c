"""Data types shared by the orchestrator, its clients and the LLM tool loop."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from dictate_tools.config import LOCAL_OWNER


@dataclass(frozen=True)
class ToolDescriptor:
    """A callable tool and the server that owns it."""

    name: str
    description: str
    input_schema: dict[str, Any]
    owner: str = LOCAL_OWNER

    @property
    def is_local(self) -> bool:
        return self.owner == LOCAL_OWNER

    def to_openai_tool(self) -> dict[str, Any]:
        """Render in the OpenAI chat-completions ``tools`` format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolCallRequest:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, request: ToolCallRequest | Mapping[str, Any]) -> ToolCallRequest:
        if isinstance(request, ToolCallRequest):
            return request
        return cls(name=request.get("name", ""), arguments=dict(request.get("arguments") or {}))


@dataclass
class ToolCallResult:
    """Outcome of one tool invocation.

    ``content`` items are dicts with a ``type`` key plus ``text`` or ``data``.
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, message: str) -> ToolCallResult:
        return cls(content=[{"type": "text", "text": message}])

    @classmethod
    def error(cls, message: str) -> ToolCallResult:
        return cls(content=[{"type": "text", "text": message}], is_error=True)

    def as_text(self) -> str:
        """Flatten text content for display or for feeding back to an LLM."""
        parts = []
        for item in self.content:
            if item.get("text"):
                parts.append(str(item["text"]))
            elif item.get("type") != "text":
                parts.append(f"[{item.get('type', 'unknown')} content]")
        return "\n".join(parts)
