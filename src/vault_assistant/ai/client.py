"""Streaming transport built around the OpenAI-compatible Gemini endpoint."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIStatusError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam

from .ai_types import (
    FunctionCall,
    FunctionResponse,
    GenerationConfig,
    NormalizedChunk,
    ToolDescriptor,
    Turn,
)
from .errors import TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

__all__ = ["ClientSettings", "OpenAICompatTransport", "DEFAULT_BASE_URL", "history_to_messages"]


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the SDK transport."""

    api_key: str
    model: str
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float | None = 90.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


def call_id(turn_index: int, call_index: int) -> str:
    return f"call_{turn_index}_{call_index}"


def history_to_messages(
    history: Sequence[Turn],
    system_instruction: str | None = None,
) -> List[ChatCompletionMessageParam]:
    """Convert the transcript into chat-completions messages.

    Call ids are positional: the ``j``-th call of the model turn at index ``i``
    gets ``call_i_j``. The function-response turn that follows reuses the ids
    of the calls it answers, matched by order.
    """

    messages: List[Dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    pending_ids: List[str] = []
    for index, turn in enumerate(history):
        if turn.role == "model":
            calls = turn.function_calls
            pending_ids = [call_id(index, position) for position in range(len(calls))]
            message: Dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            if calls:
                message["tool_calls"] = [
                    {
                        "id": pending_ids[position],
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments_json()},
                    }
                    for position, call in enumerate(calls)
                ]
            messages.append(message)
            continue

        responses = turn.function_responses_parts
        if responses:
            for position, response in enumerate(responses):
                tool_call_id = pending_ids[position] if position < len(pending_ids) else call_id(index, position)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": tool_call_id,
                        "content": _response_content(response),
                    }
                )
            pending_ids = []
        if turn.text:
            messages.append({"role": "user", "content": turn.text})
    return messages  # type: ignore[return-value]


def _response_content(response: FunctionResponse) -> str:
    return json.dumps(response.response, ensure_ascii=False)


class OpenAICompatTransport:
    """Stream transport using ``AsyncOpenAI.chat.completions.stream``.

    Generation requests are never retried here; failures surface as
    :class:`TransportError` and the caller decides whether to resubmit.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> AsyncIterator[NormalizedChunk]:
        payload = self._build_chat_payload(history, tools, config)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async with self._client.chat.completions.stream(**payload) as stream:
                async for event in stream:
                    normalized = self._normalize_stream_event(event)
                    if normalized is not None:
                        yield normalized
        except APIStatusError as exc:
            raise TransportError(
                f"Gemini request failed: {exc.message}",
                status_code=exc.status_code,
                body=_response_text(exc.response),
            ) from exc
        except APIConnectionError as exc:
            raise TransportError(f"Unable to reach Gemini endpoint: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"HTTP error while streaming: {exc}") from exc
        yield NormalizedChunk.terminal()

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _build_chat_payload(
        self,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.model or self._settings.model,
            "messages": history_to_messages(history, config.system_instruction),
        }
        if tools:
            payload["tools"] = [descriptor.to_openai_tool() for descriptor in tools]
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.max_output_tokens:
            payload["max_tokens"] = config.max_output_tokens
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        return payload

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> NormalizedChunk | None:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return NormalizedChunk.of_text(str(delta_text))
            return None
        if event_type == "tool_calls.function.arguments.done":
            name = getattr(event, "name", None)
            if not name:
                LOGGER.warning("Dropping tool call without a name at index %s", getattr(event, "index", None))
                return None
            args = self._decode_arguments(
                name,
                getattr(event, "parsed_arguments", None),
                getattr(event, "arguments", None),
            )
            return NormalizedChunk.of_calls(FunctionCall(name=str(name), args=args))
        return None

    @staticmethod
    def _decode_arguments(name: str, parsed: Any, raw: Any) -> Dict[str, Any]:
        if isinstance(parsed, Mapping):
            return dict(parsed)
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Tool call %s carried malformed arguments: %r", name, raw)
            return {}
        if not isinstance(decoded, Mapping):
            LOGGER.warning("Tool call %s arguments are not an object: %r", name, raw)
            return {}
        return dict(decoded)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


def _response_text(response: httpx.Response | None) -> str | None:
    if response is None:
        return None
    try:
        return response.text
    except httpx.ResponseNotRead:
        return None
