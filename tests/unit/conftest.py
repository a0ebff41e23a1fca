"""Shared fixtures for unit tests."""

import pytest
from fakes import FakeToolServer, text_payload, tool

from agentbench.exceptions import ToolServerError
from agentbench.tools.registry import AgentServer, ToolRegistry


@pytest.fixture
def fs_server() -> FakeToolServer:
    """Filesystem-like server with a listing tool and a failing tool."""
    return FakeToolServer(
        "fs",
        [
            tool("list_directory", "List a directory", properties={"path": {"type": "string"}}),
            tool("read_file", "Read a file", properties={"path": {"type": "string"}}, required=["path"]),
        ],
        {
            "list_directory": text_payload('["a.txt"]'),
            "read_file": ToolServerError("permission denied"),
        },
    )


@pytest.fixture
def fs_registry(fs_server: FakeToolServer) -> ToolRegistry:
    """Registry exposing every tool of the filesystem server."""
    return ToolRegistry(
        {"fs": fs_server},
        {"fs": fs_server.tools},
        [AgentServer(name="fs")],
    )
