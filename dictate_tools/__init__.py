"""Dictate Tools - tool orchestration and shutdown coordination for dictation post-processing."""

__version__ = "0.1.0"

__all__ = [
    "app",
    "config",
    "llm_tools",
    "local_tools",
    "mcp_client",
    "orchestrator",
    "shutdown",
]
