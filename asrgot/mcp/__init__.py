"""ASR-GoT MCP server: exposes research sessions as tools for AI agents."""

from asrgot.mcp.server import mcp, run_server

__all__ = ["mcp", "run_server"]
