"""MCP tool functions for blog_archiver."""
