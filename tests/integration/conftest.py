"""Fixtures for MCP integration tests.

Tools are exercised through a real MCP client session connected to the
server over in-memory streams, with the application state pointed at the
test database.
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

import pytest
from mcp import ClientSession, types
from mcp.shared.memory import create_connected_server_and_client_session

from blog_archiver.app_state import create_app_state, set_app_state
from blog_archiver.server.app import create_mcp_server


def extract_text_content(result: types.CallToolResult) -> Dict[str, Any]:
    """Decode the JSON payload of a tool result."""
    for item in result.content:
        if isinstance(item, types.TextContent):
            return json.loads(item.text)
    raise AssertionError(f"No text content in tool result: {result}")


def extract_error_text(result: types.CallToolResult) -> str:
    texts = [item.text for item in result.content if isinstance(item, types.TextContent)]
    return "\n".join(texts)


@pytest.fixture
async def app_state(db, config):
    state = await create_app_state(config, db)
    set_app_state(state)
    yield state
    await state.orchestrator.close()
    set_app_state(None)


@pytest.fixture
def connect(app_state, config):
    """Open an MCP client session against a freshly built server."""

    @asynccontextmanager
    async def _connect() -> AsyncIterator[ClientSession]:
        server = create_mcp_server(config)
        async with create_connected_server_and_client_session(server._mcp_server) as session:
            yield session

    return _connect


async def call(session: ClientSession, name: str, **arguments) -> Dict[str, Any]:
    """Call a tool and return its decoded result."""
    result = await session.call_tool(name, arguments)
    assert not result.isError, extract_error_text(result)
    return extract_text_content(result)
