"""MCP server package initialization"""

from blog_archiver.server.app import create_mcp_server, server

__all__ = ["server", "create_mcp_server"]
