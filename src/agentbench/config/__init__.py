"""Configuration file support for agentbench."""

from agentbench.config.loader import (
    AgentConfig,
    AgentServerConfig,
    ConfigLoader,
    FileConfig,
    ServerConfig,
    load_config,
)

__all__ = [
    "AgentConfig",
    "AgentServerConfig",
    "ConfigLoader",
    "FileConfig",
    "ServerConfig",
    "load_config",
]
