"""Agent that answers prompts by calling tools on MCP servers.

Each turn runs the agentic loop: ask the LLM, execute any tool calls it
requests, feed the results back, and repeat until the LLM answers without
tool calls or the iteration budget runs out. Every step is recorded on an
ExecutionResult trace for the reporting side.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from agentbench.agents.streaming import StreamingTurn, is_tool_call_chunk
from agentbench.cancellation import CancellationToken
from agentbench.exceptions import OperationCancelledError
from agentbench.models.config import AgentRunConfig
from agentbench.models.conversation import (
    ExecutionResult,
    Message,
    ToolCallRecord,
    ToolCallRequest,
    ToolResult,
)
from agentbench.providers.base import LLMProvider, LLMResponse
from agentbench.providers.ratelimit import RateLimitStatsProvider
from agentbench.providers.tokens import CHARS_PER_TOKEN, extract_total_tokens
from agentbench.tools.invoker import ToolInvoker
from agentbench.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

# Above this the configured iteration budget is probably a mistake
ITERATION_WARNING_THRESHOLD = 100

# Tool results echoed into the output are cut to this many characters
RESULT_PREVIEW_LENGTH = 10000

Notify = Callable[[str], Awaitable[None]]


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def _parse_parameters(arguments: str) -> dict[str, Any] | None:
    """Best-effort parse of tool arguments for the trace."""
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _prompt_messages(history: list[Message]) -> list[Message]:
    """User messages at the end of the history, i.e. this turn's prompt."""
    prompt: list[Message] = []
    for msg in reversed(history):
        if msg.role != "user":
            break
        prompt.append(msg)
    prompt.reverse()
    return prompt


class _Turn:
    """Mutable state of one execution of the loop."""

    def __init__(self, result: ExecutionResult, notify: Notify | None) -> None:
        self.result = result
        self.output = ""
        self.tokens = 0
        self._notify = notify

    async def stream(self, text: str) -> None:
        if self._notify is not None:
            await self._notify(text)

    async def progress(self, text: str, *, surface: bool) -> None:
        """Add a progress marker to the output and stream it, when surfaced."""
        if not surface:
            return
        self.output += text
        await self.stream(text)


class MCPAgent:
    """Runs the agentic loop for one LLM provider and a set of tool servers."""

    def __init__(
        self,
        name: str,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        provider_type: str | None = None,
        invoker: ToolInvoker | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        """Initialize the agent.

        Args:
            name: Agent name recorded on traces.
            provider: LLM provider, usually rate-limited.
            registry: Tools the agent may call.
            provider_type: Provider label for traces; defaults to the
                configured provider name.
            invoker: Tool invoker; one over ``registry`` is created if omitted.
            log: Logger to use instead of the module logger.
        """
        self._name = name
        self._provider = provider
        self._registry = registry
        self._provider_type = provider_type or provider.config.provider
        self._invoker = invoker or ToolInvoker(registry, log=log)
        self._log = log or logger

    @property
    def name(self) -> str:
        """Agent name."""
        return self._name

    @property
    def provider(self) -> LLMProvider:
        """LLM provider used by the loop."""
        return self._provider

    @property
    def registry(self) -> ToolRegistry:
        """Registry of callable tools."""
        return self._registry

    async def run(
        self,
        history: list[Message],
        config: AgentRunConfig | None = None,
        cancel: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run one turn to completion.

        The history is read and appended to in place; pass the same list
        across turns to keep the conversation going. It must not be shared by
        two turns running at the same time.

        Args:
            history: Conversation so far, ending with the user prompt.
            config: Loop settings; defaults apply when omitted.
            cancel: Optional token aborting the turn.

        Returns:
            The execution trace. Failures are recorded in its errors rather
            than raised.
        """
        return await self._execute(history, config or AgentRunConfig(), cancel, None)

    def run_streaming(
        self,
        history: list[Message],
        config: AgentRunConfig | None = None,
        cancel: CancellationToken | None = None,
    ) -> StreamingTurn:
        """Start one turn in a background task, streaming narration.

        Must be called from within a running event loop.

        Args:
            history: Conversation so far, ending with the user prompt.
            config: Loop settings; defaults apply when omitted.
            cancel: Optional token aborting the turn.

        Returns:
            A StreamingTurn yielding narration chunks, then the trace.
        """
        turn = StreamingTurn()
        config = config or AgentRunConfig()

        async def on_chunk(chunk: str) -> None:
            if is_tool_call_chunk(chunk):
                if config.verbose:
                    self._log.debug("Filtered tool call chunk from stream")
                return
            turn.emit(chunk)

        async def worker() -> None:
            try:
                result = await self._execute(history, config, cancel, on_chunk)
            except asyncio.CancelledError as e:
                turn.finish(error=e)
                raise
            except Exception as e:
                # Surfaces to the caller through turn.result()
                turn.finish(error=e)
                return
            turn.finish(result=result)

        turn.attach(asyncio.create_task(worker(), name=f"agent-turn-{self._name}"))
        return turn

    async def _execute(
        self,
        history: list[Message],
        config: AgentRunConfig,
        cancel: CancellationToken | None,
        on_chunk: Notify | None,
    ) -> ExecutionResult:
        started = time.monotonic()
        max_iterations = config.max_iterations
        streaming = on_chunk is not None
        verbose = config.verbose

        if max_iterations > ITERATION_WARNING_THRESHOLD:
            self._log.warning(
                "max_iterations=%d is unusually high, check the configuration", max_iterations
            )

        result = ExecutionResult(
            agent_name=self._name,
            provider_type=self._provider_type,
            messages=_prompt_messages(history),
        )
        turn = _Turn(result, on_chunk)
        tools = self._registry.tool_schemas()

        if verbose:
            self._log.info(
                "Execution started (agent=%s, provider=%s, max_iterations=%d, tools=%d, streaming=%s)",
                self._name,
                self._provider_type,
                max_iterations,
                len(tools),
                streaming,
            )

        iteration = 0
        while True:
            if cancel is not None and cancel.cancelled:
                await self._record_cancelled(turn, iteration, cancel.reason)
                break

            if iteration >= max_iterations:
                msg = f"Reached maximum iterations ({max_iterations}) without final answer"
                result.errors.append(msg)
                self._log.warning(
                    "Max iterations reached (max_iterations=%d, agent=%s)",
                    max_iterations,
                    self._name,
                )
                await turn.stream(f"\n[Warning] {msg}\n")
                break

            iteration += 1
            if verbose:
                self._log.debug("Starting LLM call (iteration %d/%d)", iteration, max_iterations)

            response = await self._generate(turn, history, tools, iteration, cancel, on_chunk)
            if response is None:
                break

            choice = response.choices[0]
            narration = choice.content
            if narration.strip():
                if verbose:
                    self._log.debug(
                        "Assistant response (iteration %d): %s",
                        iteration,
                        _truncate(narration, 150),
                    )
                self._append(turn, history, Message(role="assistant", content=narration))

            if not choice.tool_calls:
                turn.output += narration
                if verbose:
                    self._log.info(
                        "Final answer received (iteration %d, stop_reason=%s)",
                        iteration,
                        choice.stop_reason,
                    )
                break

            if config.add_not_final_responses and narration.strip():
                turn.output += narration

            await self._run_tools(turn, history, choice.tool_calls, iteration, config, cancel)

        result.final_output = turn.output
        result.end_time = datetime.now(UTC)
        result.latency_ms = int((time.monotonic() - started) * 1000)
        result.tokens_used = turn.tokens or len(turn.output) // CHARS_PER_TOKEN
        if isinstance(self._provider, RateLimitStatsProvider):
            result.rate_limit_stats = self._provider.get_stats()

        if verbose:
            self._log.info(
                "Execution completed (iterations=%d, duration_ms=%d, tool_calls=%d, errors=%d, tokens=%d)",
                iteration,
                result.latency_ms,
                len(result.tool_calls),
                len(result.errors),
                result.tokens_used,
            )
        return result

    async def _generate(
        self,
        turn: _Turn,
        history: list[Message],
        tools: list[dict[str, Any]],
        iteration: int,
        cancel: CancellationToken | None,
        on_chunk: Notify | None,
    ) -> LLMResponse | None:
        """Call the LLM; None means the turn is over and the error is recorded."""
        try:
            response = await self._provider.generate(
                history, tools=tools or None, on_chunk=on_chunk, cancel=cancel
            )
        except OperationCancelledError as e:
            await self._record_cancelled(turn, iteration, str(e))
            return None
        except Exception as e:
            msg = f"LLM generation error (iteration {iteration}): {e}"
            turn.result.errors.append(msg)
            self._log.error("LLM generation failed (iteration %d): %s", iteration, e)
            await turn.stream(f"\n[Error] {msg}\n")
            return None

        turn.tokens += extract_total_tokens(response.usage)

        if not response.choices:
            msg = f"LLM returned no choices (iteration {iteration})"
            turn.result.errors.append(msg)
            self._log.error("No choices returned from LLM (iteration %d)", iteration)
            return None

        return response

    async def _record_cancelled(self, turn: _Turn, iteration: int, reason: str) -> None:
        msg = f"Context cancelled: {reason}"
        turn.result.errors.append(msg)
        self._log.error("Context cancelled (iteration %d): %s", iteration, reason)
        await turn.stream(f"\n[Error] {msg}\n")

    def _append(self, turn: _Turn, history: list[Message], message: Message) -> None:
        history.append(message)
        turn.result.messages.append(message)

    async def _run_tools(
        self,
        turn: _Turn,
        history: list[Message],
        tool_calls: list[ToolCallRequest],
        iteration: int,
        config: AgentRunConfig,
        cancel: CancellationToken | None,
    ) -> None:
        """Execute requested tools in order, pairing each with a tool response."""
        total = len(tool_calls)
        surface = config.add_not_final_responses
        if config.verbose:
            self._log.debug("Processing %d tool call(s) (iteration %d)", total, iteration)

        await turn.progress(
            f"\n[Iteration {iteration}: {total} tool(s) to execute]\n", surface=surface
        )

        for index, call in enumerate(tool_calls, start=1):
            if config.verbose:
                self._log.debug(
                    "Executing tool %d/%d (iteration %d): %s %s",
                    index,
                    total,
                    iteration,
                    call.name,
                    _truncate(call.arguments, RESULT_PREVIEW_LENGTH),
                )
            await turn.progress(f"\n[tool_usage {index}/{total}] {call.name}\n", surface=surface)

            record, tool_output = await self._execute_tool(call, iteration, index, config, cancel)
            if record.error is not None:
                turn.result.errors.append(record.error)
                if surface:
                    await turn.stream(f"\n[Error] {record.error}\n")
            turn.result.tool_calls.append(record)

            self._append(turn, history, Message(role="assistant", tool_calls=[call]))
            self._append(
                turn,
                history,
                Message(role="tool", content=tool_output, tool_call_id=call.id, name=call.name),
            )

            await turn.progress(
                f"\n[tool_response] {_truncate(tool_output, RESULT_PREVIEW_LENGTH)}\n",
                surface=surface,
            )

    async def _execute_tool(
        self,
        call: ToolCallRequest,
        iteration: int,
        index: int,
        config: AgentRunConfig,
        cancel: CancellationToken | None,
    ) -> tuple[ToolCallRecord, str]:
        """Invoke one tool and build its trace record.

        Returns:
            The record and the content of the paired tool response message,
            which is the error text when the call failed.
        """
        parameters = _parse_parameters(call.arguments)
        if parameters is None:
            self._log.warning(
                "Failed to parse tool arguments (iteration %d, tool %d): %s",
                iteration,
                index,
                _truncate(call.arguments, 150),
            )
            parameters = {}

        started_at = datetime.now(UTC)
        started = time.monotonic()
        timeout = config.tool_timeout_seconds or None
        try:
            payload = await self._invoker.invoke(
                call.name, call.arguments, timeout=timeout, cancel=cancel
            )
        except Exception as e:
            msg = f"Tool execution error (iteration {iteration}, tool {call.name}): {e}"
            self._log.error(
                "Tool execution failed (iteration %d, tool %d, name=%s): %s",
                iteration,
                index,
                call.name,
                e,
            )
            record = ToolCallRecord(
                name=call.name,
                parameters=parameters,
                result=ToolResult.from_text(msg),
                error=msg,
                timestamp=started_at,
                completed_at=datetime.now(UTC),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return record, msg

        try:
            tool_result = ToolResult.model_validate_json(payload)
        except ValidationError as e:
            if config.verbose:
                self._log.warning("Failed to parse tool result (tool %s): %s", call.name, e)
            tool_result = ToolResult.from_text("Failed to parse tool result")

        if tool_result.is_error:
            self._log.warning(
                "Tool reported an error result (iteration %d, tool %s)", iteration, call.name
            )

        if config.verbose:
            self._log.debug(
                "Tool execution successful (tool %s): %s",
                call.name,
                _truncate(payload, RESULT_PREVIEW_LENGTH),
            )

        record = ToolCallRecord(
            name=call.name,
            parameters=parameters,
            result=tool_result,
            timestamp=started_at,
            completed_at=datetime.now(UTC),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return record, payload
