"""LLM provider abstraction and the Anthropic Claude implementation."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional

import anthropic
from anthropic import AsyncAnthropic

from yoloagent.cancel import CancelToken
from yoloagent.constants import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, SUPPORTED_MODELS
from yoloagent.errors import GenerationCancelled, ProviderError
from yoloagent.tools.base import ToolDefinition

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultBlock:
    """The outcome of one tool call, fed back to the model."""

    tool_call_id: str
    content: str
    is_error: bool = False


@dataclass
class ChatMessage:
    """One conversation message.

    Attributes:
        role: system, user or assistant
        content: Message text
        tool_calls: Calls requested by an assistant message
        tool_results: Results carried by a user message
        internal: Orchestration traffic hidden from session replay
    """

    role: Literal["system", "user", "assistant"]
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResultBlock] = field(default_factory=list)
    internal: bool = False


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class LLMResponse:
    """A completed model reply."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


@dataclass
class RequestOptions:
    """Per-call options for LLMProvider.send_message."""

    model: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    tools: list[ToolDefinition] = field(default_factory=list)
    cancel: Optional[CancelToken] = None


@dataclass
class ModelDescriptor:
    """Descriptor for an LLM model."""

    provider: Literal["anthropic"]
    name: str
    max_output_tokens: int


@dataclass
class ModelInfo:
    id: str
    name: str
    max_output_tokens: int


def parse_model_string(model_str: str) -> ModelDescriptor:
    """Parse a model string into a ModelDescriptor.

    Args:
        model_str: Model string (e.g., "anthropic:claude-sonnet-4-5")

    Returns:
        ModelDescriptor

    Raises:
        ValueError: If the model string is not supported
    """
    if model_str not in SUPPORTED_MODELS:
        raise ValueError(
            f"Unsupported model: {model_str}. "
            f"Supported: {', '.join(SUPPORTED_MODELS.keys())}"
        )

    model_config = SUPPORTED_MODELS[model_str]
    return ModelDescriptor(
        provider=model_config["provider"],
        name=model_config["name"],
        max_output_tokens=model_config["max_output_tokens"],
    )


class LLMProvider(ABC):
    """A cancellable, potentially slow chat-completion backend."""

    @abstractmethod
    async def send_message(
        self,
        messages: list[ChatMessage],
        options: RequestOptions,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> LLMResponse:
        """Send a conversation and return the model's reply.

        Raises:
            GenerationCancelled: options.cancel fired during the call
            ProviderError: Network, auth or rate-limit failure
        """

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """List models this provider can serve."""

    @abstractmethod
    async def validate_api_key(self, api_key: str) -> bool:
        """Check whether an API key is accepted."""


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider using the streaming Messages API."""

    def __init__(self, api_key: str, client: Optional[AsyncAnthropic] = None):
        """Initialize provider.

        Args:
            api_key: Anthropic API key
            client: Optional preconfigured client
        """
        self.api_key = api_key
        self.client = client or AsyncAnthropic(api_key=api_key)

    async def send_message(
        self,
        messages: list[ChatMessage],
        options: RequestOptions,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> LLMResponse:
        descriptor = parse_model_string(options.model)
        system, chat_messages = self._convert_messages(messages)

        kwargs: dict[str, Any] = {
            "model": descriptor.name,
            "messages": chat_messages,
            "temperature": options.temperature,
            "max_tokens": min(options.max_tokens, descriptor.max_output_tokens),
        }
        if system:
            kwargs["system"] = system
        if options.tools:
            kwargs["tools"] = [self._convert_tool(t) for t in options.tools]

        if options.cancel:
            options.cancel.raise_if_cancelled()

        stream_task = asyncio.create_task(self._stream(kwargs, on_chunk))
        remove = options.cancel.on_cancel(stream_task.cancel) if options.cancel else None
        try:
            return await stream_task
        except asyncio.CancelledError:
            if options.cancel and options.cancel.cancelled:
                raise GenerationCancelled("Generation stopped") from None
            raise
        except anthropic.APIError as e:
            raise ProviderError(str(e)) from e
        finally:
            if remove:
                remove()

    async def _stream(self, kwargs: dict[str, Any], on_chunk: Optional[ChunkCallback]) -> LLMResponse:
        async with self.client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if on_chunk:
                    on_chunk(text)
            final = await stream.get_final_message()

        response = LLMResponse(finish_reason=final.stop_reason)
        for block in final.content:
            if block.type == "text":
                response.content += block.text
            elif block.type == "tool_use":
                response.tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                )
        if final.usage:
            response.usage = TokenUsage(
                input_tokens=final.usage.input_tokens,
                output_tokens=final.usage.output_tokens,
            )
        return response

    def _convert_messages(
        self, messages: list[ChatMessage]
    ) -> tuple[Optional[str], list[dict[str, Any]]]:
        """Lift system messages out and turn tool traffic into content blocks."""
        system_parts = [m.content for m in messages if m.role == "system" and m.content]
        system = "\n\n".join(system_parts) if system_parts else None

        chat_messages: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                continue

            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            for result in message.tool_results:
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": result.tool_call_id,
                    "content": result.content,
                    "is_error": result.is_error,
                })
            if not blocks:
                continue

            # The API expects alternating roles; fold consecutive turns together
            if chat_messages and chat_messages[-1]["role"] == message.role:
                chat_messages[-1]["content"].extend(blocks)
            else:
                chat_messages.append({"role": message.role, "content": blocks})

        return system, chat_messages

    @staticmethod
    def _convert_tool(tool: ToolDefinition) -> dict[str, Any]:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters,
        }

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(id=model_id, name=cfg["name"], max_output_tokens=cfg["max_output_tokens"])
            for model_id, cfg in SUPPORTED_MODELS.items()
        ]

    async def validate_api_key(self, api_key: str) -> bool:
        client = AsyncAnthropic(api_key=api_key)
        try:
            await client.models.list(limit=1)
        except anthropic.AuthenticationError:
            return False
        except anthropic.APIError as e:
            raise ProviderError(str(e)) from e
        return True
