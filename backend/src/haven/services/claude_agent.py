"""Text generation backend on top of the Claude Agent SDK."""

import logging
from typing import AsyncIterator

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)

from haven.errors import ProviderError
from haven.services.text_generation import ChatMessage, GenerationOptions

logger = logging.getLogger(__name__)


def format_messages(messages: list[ChatMessage]) -> tuple[str | None, str]:
    """Split chat messages into a system prompt and a flat conversation prompt."""
    system = "\n\n".join(m.content for m in messages if m.role == "system") or None

    lines = []
    for msg in messages:
        if msg.role == "system":
            continue
        role = "Student" if msg.role == "user" else "Assistant"
        lines.append(f"{role}: {msg.content}")

    # A single user turn goes through verbatim so prompt templates stay intact
    if len(lines) == 1 and messages[-1].role == "user":
        return system, messages[-1].content
    return system, "\n\n".join(lines)


class ClaudeAgentProvider:
    """Runs prompts through ``claude_agent_sdk.query``.

    Sampling parameters are not exposed by the SDK, so temperature and
    max_tokens are ignored here.
    """

    supports_streaming = True

    def __init__(self, model: str = "haiku"):
        self.model = model

    def _options(self, system_prompt: str | None) -> ClaudeAgentOptions:
        return ClaudeAgentOptions(
            model=self.model,
            system_prompt=system_prompt,
            permission_mode="bypassPermissions",
            max_turns=1,
        )

    async def stream_complete(
        self, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        system, prompt = format_messages(messages)
        async for msg in query(prompt=prompt, options=self._options(system)):
            if isinstance(msg, AssistantMessage):
                for block in msg.content:
                    if isinstance(block, TextBlock) and block.text:
                        yield block.text
            elif isinstance(msg, ResultMessage):
                if msg.is_error:
                    logger.error(f"Claude Agent SDK error: {msg.result}")
                    raise ProviderError(
                        f"Claude error: {msg.result or 'Unknown error'}", retryable=True
                    )

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str:
        collected: list[str] = []
        async for text in self.stream_complete(messages, options):
            collected.append(text)
        return "\n".join(collected)
