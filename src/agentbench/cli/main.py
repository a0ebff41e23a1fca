"""agentbench CLI implementation.

Provides the command-line interface for running agents against MCP servers.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from agentbench.agents.mcp_agent import MCPAgent
from agentbench.cancellation import CancellationToken
from agentbench.config import AgentConfig, ConfigLoader, FileConfig
from agentbench.exceptions import AgentBenchError, ConfigurationError
from agentbench.models.config import AgentRunConfig
from agentbench.models.conversation import ExecutionResult, Message
from agentbench.providers.factory import ProviderRegistry, create_provider
from agentbench.tools.registry import AgentServer, ToolRegistry
from agentbench.tools.server import MCPToolServer, ToolServer

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="agentbench",
    help="Benchmark LLM agents that call tools on MCP servers.",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


@dataclass
class RunOptions:
    """Options for a single prompt run."""

    prompt: str
    file_config: FileConfig
    agent_name: str | None
    run_config: AgentRunConfig
    stream: bool
    as_json: bool
    timeout: float | None


@app.command()
def run(  # noqa: PLR0913 - Typer requires CLI args as function parameters
    prompt: Annotated[
        str,
        typer.Argument(help="User prompt to send to the agent."),
    ],
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to agentbench.yaml configuration file.",
        ),
    ] = None,
    agent: Annotated[
        str | None,
        typer.Option(
            "--agent",
            "-a",
            help="Agent to run (defaults to the first configured agent).",
        ),
    ] = None,
    max_iterations: Annotated[
        int | None,
        typer.Option(
            "--max-iterations",
            "-n",
            help="Maximum LLM round-trips for the turn.",
        ),
    ] = None,
    tool_timeout: Annotated[
        float | None,
        typer.Option(
            "--tool-timeout",
            help="Per-tool timeout in seconds (0 for none).",
        ),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option(
            "--timeout",
            help="Deadline for the whole turn in seconds.",
        ),
    ] = None,
    show_progress: Annotated[
        bool,
        typer.Option(
            "--show-progress",
            help="Include intermediate narration and tool progress in the output.",
        ),
    ] = False,
    stream: Annotated[
        bool,
        typer.Option(
            "--stream",
            "-s",
            help="Stream narration as it is produced.",
        ),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Print the execution trace as JSON.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose output.",
        ),
    ] = False,
) -> None:
    """Run one prompt through an agent and show the execution trace.

    Examples:
        agentbench run "list files in /tmp"

        agentbench run "summarize README.md" --agent fs-agent --stream
    """
    _configure_logging(verbose)

    try:
        file_config = ConfigLoader.load_config(config_file)
        if file_config is None:
            msg = "No configuration file found (looked for agentbench.yaml)"
            raise ConfigurationError(msg)
        run_config = ConfigLoader.resolve_run_config(
            file_config,
            cli_max_iterations=max_iterations,
            cli_tool_timeout=tool_timeout,
            cli_add_not_final_responses=show_progress or None,
            cli_verbose=verbose or None,
        )
    except AgentBenchError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    options = RunOptions(
        prompt=prompt,
        file_config=file_config,
        agent_name=agent,
        run_config=run_config,
        stream=stream,
        as_json=as_json,
        timeout=timeout,
    )

    try:
        result = asyncio.run(_run_prompt(options))
    except AgentBenchError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e

    if as_json:
        console.print_json(result.model_dump_json(by_alias=True))
    else:
        _display_result(result, show_output=not stream)

    if not result.succeeded:
        raise typer.Exit(code=1)


async def _connect_servers(
    stack: AsyncExitStack, file_config: FileConfig, agent_config: AgentConfig
) -> dict[str, ToolServer]:
    """Connect every server the agent uses; unreachable servers are skipped."""
    servers: dict[str, ToolServer] = {}
    for server_config in file_config.servers_for(agent_config):
        server = MCPToolServer.from_config(server_config)
        try:
            await server.connect()
        except AgentBenchError as e:
            logger.error("Skipping server %s: %s", server_config.name, e)
            console.print(f"[yellow]Warning:[/yellow] {e}")
            continue
        stack.push_async_callback(server.close)
        servers[server_config.name] = server
    return servers


async def _run_prompt(options: RunOptions) -> ExecutionResult:
    """Build the agent from configuration and run one turn."""
    agent_config = options.file_config.get_agent(options.agent_name)
    llm_config = options.file_config.get_provider(agent_config.provider)
    provider = create_provider(llm_config)

    async with AsyncExitStack() as stack:
        stack.push_async_callback(provider.close)
        servers = await _connect_servers(stack, options.file_config, agent_config)
        bindings = [
            AgentServer(name=s.name, allowed_tools=frozenset(s.allowed_tools))
            for s in agent_config.servers
        ]
        registry = await ToolRegistry.build(bindings, servers)
        agent = MCPAgent(agent_config.name, provider, registry, provider_type=llm_config.provider)

        history: list[Message] = []
        if agent_config.system_prompt:
            history.append(Message.system(agent_config.system_prompt))
        history.append(Message.user(options.prompt))

        cancel = CancellationToken()
        if options.timeout:
            cancel.cancel_after(options.timeout)

        if not options.stream:
            return await agent.run(history, options.run_config, cancel)

        turn = agent.run_streaming(history, options.run_config, cancel)
        async for chunk in turn:
            if not options.as_json:
                console.print(chunk, end="", markup=False, highlight=False)
        if not options.as_json:
            console.print()
        return await turn.result()


def _display_result(result: ExecutionResult, *, show_output: bool) -> None:
    """Display the execution trace of a turn.

    Args:
        result: The execution trace.
        show_output: Whether to print the final output (already shown when streamed).
    """
    if show_output and result.final_output:
        console.print(Panel(result.final_output, title=f"{result.agent_name} ({result.provider_type})"))

    if result.tool_calls:
        table = Table(title="Tool Calls")
        table.add_column("Tool", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        for call in result.tool_calls:
            status = "[red]ERROR[/red]" if call.error else "[green]OK[/green]"
            table.add_row(call.name, status, f"{call.duration_ms}ms")
        console.print(table)

    if result.errors:
        console.print("\n[red]Errors:[/red]")
        for error in result.errors:
            console.print(f"  - {error}", markup=False)

    console.print(
        f"\nLatency: {result.latency_ms}ms  Tokens: {result.tokens_used}  "
        f"Tool calls: {len(result.tool_calls)}"
    )

    stats = result.rate_limit_stats
    if stats is not None:
        console.print(
            f"Rate limiting: throttled {stats.throttle_count}x ({stats.throttle_wait_time_ms}ms), "
            f"429 hits {stats.rate_limit_hits}, retries {stats.retry_count} "
            f"({stats.retry_success_count} succeeded, {stats.retry_wait_time_ms}ms)"
        )


@app.command()
def validate(
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to agentbench.yaml configuration file.",
        ),
    ] = None,
) -> None:
    """Validate a configuration file without connecting to anything."""
    try:
        file_config = ConfigLoader.load_config(config_file)
    except AgentBenchError as e:
        console.print(f"[red]Validation failed:[/red] {e}")
        raise typer.Exit(code=1) from e

    if file_config is None:
        console.print("[red]Validation failed:[/red] no configuration file found")
        raise typer.Exit(code=1)

    unknown = [p.provider for p in file_config.providers if not ProviderRegistry.is_registered(p.provider)]
    if unknown:
        console.print(f"[red]Validation failed:[/red] unknown provider types: {', '.join(unknown)}")
        raise typer.Exit(code=1)

    console.print(
        f"[green]Validated {len(file_config.agents)} agent(s), "
        f"{len(file_config.providers)} provider(s), "
        f"{len(file_config.servers)} server(s).[/green]"
    )
    for agent_config in file_config.agents:
        console.print(f"  - {agent_config.name} ({agent_config.provider})")


@app.command()
def providers() -> None:
    """List available LLM providers."""
    available = ProviderRegistry.list_providers()

    table = Table(title="Available Providers")
    table.add_column("Provider", style="cyan")

    for provider_name in sorted(available):
        table.add_row(provider_name)

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
