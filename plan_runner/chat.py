"""
Chat-completion service used by the tool loop.

The orchestrator only depends on ``ChatService.stream``: given a system prompt,
the message history and tool definitions, it yields text deltas, tool-call
requests, and a final TurnEnd. ``AnthropicChatService`` is the production
implementation on top of the Anthropic Messages API.
"""

from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Protocol, Union

import anthropic

from .errors import ModelUnavailableError, TransientToolError


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class TurnEnd:
    stop_reason: Optional[str] = None
    usage: Optional[dict] = None


ChatEvent = Union[TextDelta, ToolCallRequest, TurnEnd]


class ChatService(Protocol):
    def stream(self, system: str, messages: list[dict], tools: list[dict]) -> AsyncIterator[ChatEvent]:
        ...


class AnthropicChatService:
    """Messages API with tool use. Transport failures map onto the error taxonomy."""

    def __init__(self, model: str, max_tokens: int = 8192, client: Optional[anthropic.AsyncAnthropic] = None):
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            try:
                self._client = anthropic.AsyncAnthropic()
            except anthropic.AnthropicError as e:
                raise ModelUnavailableError(f"Cannot create Anthropic client: {e}") from e
        return self._client

    async def stream(self, system: str, messages: list[dict], tools: list[dict]) -> AsyncIterator[ChatEvent]:
        kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            kwargs["tools"] = tools
        try:
            async with self.client.messages.stream(**kwargs) as response:
                async for text in response.text_stream:
                    yield TextDelta(text)
                final = await response.get_final_message()
        except anthropic.RateLimitError as e:
            raise TransientToolError(f"Model rate limited (429): {e}") from e
        except anthropic.APIConnectionError as e:
            # includes APITimeoutError
            raise TransientToolError(f"Model connection failed (timed out or connection reset): {e}") from e
        except anthropic.InternalServerError as e:
            raise TransientToolError(f"Model server error (status {e.status_code}): {e}") from e
        except anthropic.APIStatusError as e:
            raise ModelUnavailableError(f"Model request rejected (status {e.status_code}): {e}") from e

        for block in final.content:
            if block.type == "tool_use":
                yield ToolCallRequest(id=block.id, name=block.name, input=dict(block.input or {}))

        usage = None
        if final.usage is not None:
            usage = {"input_tokens": final.usage.input_tokens, "output_tokens": final.usage.output_tokens}
        yield TurnEnd(stop_reason=final.stop_reason, usage=usage)
