"""Token estimation and provider usage extraction."""

import logging
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import tiktoken

from agentbench.models.conversation import Message

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# Usage field variants reported by different SDKs, in priority order.
# Single keys are totals; pairs are summed.
USAGE_KEY_VARIANTS: tuple[tuple[str, ...], ...] = (
    ("TotalTokens",),
    ("total_tokens",),
    ("PromptTokens", "CompletionTokens"),
    ("prompt_tokens", "completion_tokens"),
    ("input_tokens", "output_tokens"),
)


def _message_texts(messages: list[Message]) -> list[str]:
    texts: list[str] = []
    for msg in messages:
        if msg.content:
            texts.append(msg.content)
        for call in msg.tool_calls:
            texts.append(call.name)
            if call.arguments:
                texts.append(call.arguments)
    return texts


@lru_cache(maxsize=32)
def _encoding_for_model(model_name: str) -> tiktoken.Encoding | None:
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        logger.debug("No tiktoken encoding for model %s, using heuristic", model_name)
        return None
    except Exception as e:  # noqa: BLE001 - encoding download can fail in many ways
        logger.debug("Failed to load tiktoken encoding for %s: %s", model_name, e)
        return None


def estimate_tokens_heuristic(messages: list[Message]) -> int:
    """Estimate tokens as one per four characters of text (minimum 1)."""
    total_chars = sum(len(text) for text in _message_texts(messages))
    tokens = total_chars // CHARS_PER_TOKEN
    if tokens < 1 and total_chars > 0:
        tokens = 1
    return tokens


def estimate_tokens_accurate(messages: list[Message], model_name: str) -> int:
    """Count tokens with the model's tokenizer.

    Returns:
        Token count, or 0 when no tokenizer is available for the model.
    """
    if not model_name:
        return 0
    encoding = _encoding_for_model(model_name)
    if encoding is None:
        return 0
    return sum(len(encoding.encode(text)) for text in _message_texts(messages))


def estimate_input_tokens(messages: list[Message], model_name: str = "") -> int:
    """Estimate input tokens for a pending request.

    Prefers the model's tokenizer and falls back to the character heuristic.
    """
    tokens = estimate_tokens_accurate(messages, model_name)
    if tokens > 0:
        return tokens
    return estimate_tokens_heuristic(messages)


def _as_int(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def extract_total_tokens(usage: Mapping[str, Any] | None) -> int:
    """Read actual token usage from a provider usage mapping.

    Tries each known key variant in priority order.

    Returns:
        Total tokens, or 0 when none of the variants are present.
    """
    if not usage:
        return 0

    for keys in USAGE_KEY_VARIANTS:
        values = [_as_int(usage.get(key)) for key in keys]
        if any(v > 0 for v in values):
            return sum(values)
    return 0
