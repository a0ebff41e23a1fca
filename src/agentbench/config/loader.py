"""Configuration file loader.

Handles discovery, parsing, and validation of YAML configuration files
describing LLM providers, tool servers, and the agents that combine them.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from agentbench.exceptions import ConfigurationError
from agentbench.models.config import AgentRunConfig, LLMConfig

# Pattern matches ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:-]+)(?::-([^}]*))?\}")

# Default config file names in priority order
CONFIG_FILE_NAMES = ["agentbench.yaml", ".agentbench.yaml", "agentbench.yml", ".agentbench.yml"]


class ServerConfig(BaseModel):
    """Configuration for an MCP tool server.

    Supports two connection methods:
    - stdio: Command-based connection (e.g., "npx @example/weather-mcp")
    - HTTP: URL-based SSE connection (e.g., "http://localhost:8080/sse")
    """

    name: str = Field(..., min_length=1)

    # Stdio connection (command-based)
    command: str | None = None
    env: dict[str, str] | None = None

    # HTTP connection (URL-based)
    url: str | None = None

    # Optional headers for HTTP connections (e.g., for authentication)
    headers: dict[str, str] | None = None

    @model_validator(mode="after")
    def check_connection(self) -> "ServerConfig":
        """Exactly one connection method must be configured."""
        if bool(self.command) == bool(self.url):
            msg = f"server '{self.name}' needs exactly one of 'command' or 'url'"
            raise ValueError(msg)
        return self


class AgentServerConfig(BaseModel):
    """A server used by an agent. An empty allow-list permits every tool."""

    name: str = Field(..., min_length=1)
    allowed_tools: list[str] = Field(default_factory=list)


class AgentConfig(BaseModel):
    """Configuration for an agent under test."""

    name: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)  # Name of an entry under providers
    system_prompt: str | None = None
    servers: list[AgentServerConfig] = Field(default_factory=list)


class FileConfig(BaseModel):
    """Schema for agentbench.yaml configuration file."""

    providers: list[LLMConfig] = Field(default_factory=list)
    servers: list[ServerConfig] = Field(default_factory=list)
    agents: list[AgentConfig] = Field(default_factory=list)
    run: AgentRunConfig = Field(default_factory=AgentRunConfig)

    @model_validator(mode="after")
    def check_references(self) -> "FileConfig":
        """Names must be unique and agents must reference known providers."""
        provider_names = [p.display_name for p in self.providers]
        for kind, names in (
            ("provider", provider_names),
            ("server", [s.name for s in self.servers]),
            ("agent", [a.name for a in self.agents]),
        ):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                msg = f"duplicate {kind} names: {', '.join(duplicates)}"
                raise ValueError(msg)

        for agent in self.agents:
            if agent.provider not in provider_names:
                msg = f"agent '{agent.name}' references unknown provider '{agent.provider}'"
                raise ValueError(msg)
        return self

    def get_provider(self, name: str) -> LLMConfig:
        """Look up a provider by its name (or provider type when unnamed).

        Raises:
            ConfigurationError: If no provider has that name.
        """
        for provider in self.providers:
            if provider.display_name == name:
                return provider
        msg = f"Provider '{name}' is not configured"
        raise ConfigurationError(msg)

    def get_agent(self, name: str | None = None) -> AgentConfig:
        """Look up an agent by name; the first agent when name is None.

        Raises:
            ConfigurationError: If the agent is not configured.
        """
        if name is None:
            if not self.agents:
                msg = "No agents are configured"
                raise ConfigurationError(msg)
            return self.agents[0]

        for agent in self.agents:
            if agent.name == name:
                return agent
        available = ", ".join(a.name for a in self.agents) or "none"
        msg = f"Agent '{name}' is not configured. Available: {available}"
        raise ConfigurationError(msg)

    def servers_for(self, agent: AgentConfig) -> list[ServerConfig]:
        """Server configurations referenced by an agent, in binding order."""
        by_name = {server.name: server for server in self.servers}
        return [by_name[s.name] for s in agent.servers if s.name in by_name]


class ConfigLoader:
    """Load configuration from files and apply CLI overrides."""

    @staticmethod
    def discover_config_file(explicit_path: Path | None = None) -> Path | None:
        """Find configuration file in priority order.

        Args:
            explicit_path: Explicitly provided config file path.

        Returns:
            Path to config file, or None if not found.

        Raises:
            ConfigurationError: If explicit path doesn't exist.
        """
        # 1. Use explicit path if provided
        if explicit_path is not None:
            if not explicit_path.exists():
                msg = f"Configuration file not found: {explicit_path}"
                raise ConfigurationError(msg)
            return explicit_path

        # 2. Search in current directory
        cwd = Path.cwd()
        for filename in CONFIG_FILE_NAMES:
            config_path = cwd / filename
            if config_path.exists():
                return config_path

        # 3. No config file found (silent, no warning)
        return None

    @staticmethod
    def load_yaml(path: Path) -> dict[str, Any]:
        """Load and parse YAML configuration file.

        Args:
            path: Path to YAML file.

        Returns:
            Parsed configuration dictionary.

        Raises:
            ConfigurationError: If file cannot be read or parsed.
        """
        try:
            with path.open() as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Failed to parse configuration file {path}: {e}"
            raise ConfigurationError(msg) from e
        except OSError as e:
            msg = f"Failed to read configuration file {path}: {e}"
            raise ConfigurationError(msg) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            msg = f"Configuration file {path} must contain a mapping at the top level"
            raise ConfigurationError(msg)
        return content

    @staticmethod
    def interpolate_env_vars(value: Any) -> Any:
        """Recursively interpolate environment variables in configuration.

        Supports two syntaxes:
        - ${VAR} - Required variable, raises error if not set
        - ${VAR:-default} - Optional variable with default value

        Args:
            value: Configuration value (string, dict, list, or other).

        Returns:
            Value with environment variables interpolated.

        Raises:
            ConfigurationError: If required environment variable is not set.
        """
        if isinstance(value, str):

            def replace(match: re.Match[str]) -> str:
                var_name = match.group(1)
                default_value = match.group(2)  # None if no default specified
                env_value = os.environ.get(var_name)
                if env_value is not None:
                    return env_value
                if default_value is not None:
                    return default_value
                msg = f"Environment variable {var_name} is not set"
                raise ConfigurationError(msg)

            return ENV_VAR_PATTERN.sub(replace, value)
        elif isinstance(value, dict):
            return {k: ConfigLoader.interpolate_env_vars(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [ConfigLoader.interpolate_env_vars(item) for item in value]
        return value

    @staticmethod
    def load_config(explicit_path: Path | None = None) -> FileConfig | None:
        """Discover, load, and parse configuration file.

        Args:
            explicit_path: Explicitly provided config file path.

        Returns:
            Parsed FileConfig, or None if no config file found.

        Raises:
            ConfigurationError: If config file exists but is invalid.
        """
        config_path = ConfigLoader.discover_config_file(explicit_path)
        if config_path is None:
            return None

        raw_config = ConfigLoader.load_yaml(config_path)
        interpolated = ConfigLoader.interpolate_env_vars(raw_config)

        try:
            return FileConfig.model_validate(interpolated)
        except ValidationError as e:
            msg = f"Invalid configuration in {config_path}: {e}"
            raise ConfigurationError(msg) from e

    @staticmethod
    def resolve_run_config(
        file_config: FileConfig | None,
        *,
        cli_max_iterations: int | None = None,
        cli_tool_timeout: float | None = None,
        cli_add_not_final_responses: bool | None = None,
        cli_verbose: bool | None = None,
    ) -> AgentRunConfig:
        """Resolve the agent loop settings.

        Priority order (highest to lowest): CLI arguments, the ``run:``
        section of the config file, defaults.

        Args:
            file_config: Parsed configuration file, or None.
            cli_max_iterations: CLI max iterations override.
            cli_tool_timeout: CLI tool timeout override in seconds.
            cli_add_not_final_responses: CLI override for surfacing narration.
            cli_verbose: CLI verbosity override.

        Returns:
            Resolved AgentRunConfig.
        """
        base = file_config.run if file_config else AgentRunConfig()
        overrides: dict[str, Any] = {}

        if cli_max_iterations is not None:
            overrides["max_iterations"] = cli_max_iterations
        if cli_tool_timeout is not None:
            overrides["tool_timeout_seconds"] = cli_tool_timeout
        if cli_add_not_final_responses is not None:
            overrides["add_not_final_responses"] = cli_add_not_final_responses
        if cli_verbose is not None:
            overrides["verbose"] = cli_verbose

        # Revalidate so the fallback for non-positive iterations applies
        return AgentRunConfig.model_validate({**base.model_dump(), **overrides})


def load_config(explicit_path: Path | None = None) -> FileConfig | None:
    """Convenience function to load configuration.

    Args:
        explicit_path: Explicitly provided config file path.

    Returns:
        Parsed FileConfig, or None if no config file found.
    """
    return ConfigLoader.load_config(explicit_path)
