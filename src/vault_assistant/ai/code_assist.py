"""REST transport for the Code Assist ``v1internal`` endpoint.

The endpoint answers ``streamGenerateContent?alt=sse`` with a server-sent-event
body. The whole body is read, parsed into JSON events, and replayed as
normalized chunks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .ai_types import FunctionCall, GenerationConfig, NormalizedChunk, ToolDescriptor, Turn
from .auth import AuthProvider
from .errors import ParseError, TransportError

LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://cloudcode-pa.googleapis.com"
API_VERSION = "v1internal"
USER_AGENT = "vault-assistant/0.1.0"

__all__ = [
    "CodeAssistSettings",
    "CodeAssistTransport",
    "parse_sse_body",
    "normalize_event",
]


@dataclass(slots=True)
class CodeAssistSettings:
    """Settings for the Code Assist transport."""

    model: str
    endpoint: str = DEFAULT_ENDPOINT
    project_id: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False


# -----------------------------------------------------------------------------
# SSE parsing and part normalization
# -----------------------------------------------------------------------------


def parse_sse_body(body: str) -> List[Dict[str, Any]]:
    """Return every decodable JSON event in an SSE body.

    Lines that do not start with ``data:`` are ignored. Undecodable ``data:``
    lines are skipped with a warning. A body without any valid event raises
    :class:`ParseError`.
    """

    events: List[Dict[str, Any]] = []
    for line in body.splitlines():
        stripped = line.strip()
        if not stripped.startswith("data:"):
            continue
        data = stripped[len("data:"):].strip()
        if not data or data == "[DONE]":
            continue
        try:
            decoded = json.loads(data)
        except ValueError:
            LOGGER.warning("Skipping undecodable SSE line: %.200s", data)
            continue
        if isinstance(decoded, dict):
            events.append(decoded)
        else:
            LOGGER.warning("Skipping non-object SSE event: %.200s", data)
    if not events:
        raise ParseError("No valid events found in SSE stream", raw=body[:2000])
    return events


def normalize_event(event: Mapping[str, Any]) -> NormalizedChunk | None:
    """Convert one (possibly wrapped) response event into a chunk."""

    response = event.get("response", event)
    if not isinstance(response, Mapping):
        return None
    candidates = response.get("candidates") or []
    if not candidates:
        return None
    if not isinstance(candidates, Sequence) or isinstance(candidates, str):
        LOGGER.warning("Skipping event with malformed candidates: %.200r", candidates)
        return None
    candidate = candidates[0]
    if not isinstance(candidate, Mapping):
        LOGGER.warning("Skipping event with malformed candidate: %.200r", candidate)
        return None
    content = candidate.get("content") or {}
    if not isinstance(content, Mapping):
        LOGGER.warning("Skipping event with malformed content: %.200r", content)
        return None
    parts = content.get("parts") or []
    if not isinstance(parts, Sequence) or isinstance(parts, str):
        LOGGER.warning("Skipping event with malformed parts: %.200r", parts)
        return None

    text_fragments: List[str] = []
    calls: List[FunctionCall] = []
    for part in parts:
        if not isinstance(part, Mapping):
            continue
        text = part.get("text")
        if text and not part.get("thought"):
            text_fragments.append(str(text))
        raw_call = part.get("functionCall") or part.get("function_call")
        if raw_call and not isinstance(raw_call, Mapping):
            LOGGER.warning("Skipping malformed function call part: %.200r", raw_call)
        elif raw_call:
            call = _normalize_function_call(raw_call)
            if call is not None:
                calls.append(call)

    if not text_fragments and not calls:
        return None
    return NormalizedChunk(text="".join(text_fragments) or None, function_calls=tuple(calls))


def _normalize_function_call(raw: Mapping[str, Any]) -> FunctionCall | None:
    name = raw.get("name")
    if not name:
        LOGGER.warning("Dropping function call without a name: %s", raw)
        return None
    args: Any = raw.get("args")
    if args is None:
        args = raw.get("arguments")
    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except ValueError:
            LOGGER.warning("Function call %s carried malformed arguments: %r", name, args)
            args = {}
    if not isinstance(args, Mapping):
        args = {}
    return FunctionCall(name=str(name), args=dict(args))


def _iter_chunks(events: Iterable[Mapping[str, Any]]) -> Iterator[NormalizedChunk]:
    for event in events:
        chunk = normalize_event(event)
        if chunk is not None:
            yield chunk


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


class CodeAssistTransport:
    """Stream transport authenticated with an OAuth bearer token."""

    def __init__(
        self,
        settings: CodeAssistSettings,
        auth: AuthProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._auth = auth
        self._http = http_client or httpx.AsyncClient(timeout=settings.request_timeout)
        self._project_id = settings.project_id
        self._project_lock = asyncio.Lock()

    @property
    def settings(self) -> CodeAssistSettings:
        return self._settings

    @property
    def project_id(self) -> str | None:
        return self._project_id

    async def generate(
        self,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> AsyncIterator[NormalizedChunk]:
        project = await self.ensure_project()
        body = self._build_request_body(project, history, tools, config)
        LOGGER.debug(
            "Starting Code Assist generation via %s with %s turn(s)", body["model"], len(history)
        )
        if self._settings.debug_logging:
            LOGGER.debug("Code Assist request body:\n%s", json.dumps(body, ensure_ascii=False, indent=2))

        raw = await self._post(f"{API_VERSION}:streamGenerateContent", body, params={"alt": "sse"})
        events = parse_sse_body(raw)
        for chunk in _iter_chunks(events):
            yield chunk
        yield NormalizedChunk.terminal()

    async def generate_content(self, body: Mapping[str, Any]) -> Dict[str, Any]:
        """Non-streaming ``generateContent`` call; returns the unwrapped response."""

        raw = await self._post(f"{API_VERSION}:generateContent", body)
        try:
            decoded = json.loads(raw)
        except ValueError as exc:
            raise ParseError("generateContent returned a non-JSON body", raw=raw[:2000]) from exc
        if isinstance(decoded, list) and decoded:
            decoded = decoded[0]
        if not isinstance(decoded, dict):
            raise ParseError("generateContent returned an unexpected body", raw=raw[:2000])
        return decoded.get("response", decoded)

    async def ensure_project(self) -> str:
        """Resolve the Code Assist project id once per transport."""

        if self._project_id:
            return self._project_id
        async with self._project_lock:
            if self._project_id:
                return self._project_id
            async for attempt in self._retrying():
                with attempt:
                    payload = await self._load_code_assist()
            project = payload.get("cloudaicompanionProject")
            if not project:
                raise TransportError("loadCodeAssist response did not include a project id")
            tier = payload.get("currentTier") or {}
            LOGGER.info("Code Assist project %s (tier %s)", project, tier.get("name", "unknown"))
            self._project_id = str(project)
            return self._project_id

    async def _load_code_assist(self) -> Dict[str, Any]:
        body = {
            "metadata": {
                "ideType": "IDE_UNSPECIFIED",
                "platform": "PLATFORM_UNSPECIFIED",
                "pluginType": "GEMINI",
            }
        }
        raw = await self._post(f"{API_VERSION}:loadCodeAssist", body)
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise TransportError("loadCodeAssist returned a non-JSON body", body=raw) from exc
        if not isinstance(payload, dict):
            raise TransportError("loadCodeAssist returned an unexpected body", body=raw)
        return payload

    async def _post(
        self,
        method: str,
        body: Mapping[str, Any],
        *,
        params: Mapping[str, str] | None = None,
    ) -> str:
        token = await self._auth.access_token()
        url = f"{self._settings.endpoint.rstrip('/')}/{method}"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
            "x-goog-api-client": USER_AGENT,
        }
        try:
            response = await self._http.post(url, json=dict(body), headers=headers, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {method} failed: {exc}") from exc
        if response.status_code >= 400:
            LOGGER.error("Code Assist %s returned HTTP %s", method, response.status_code)
            raise TransportError(
                f"API error from {method}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.text

    def _build_request_body(
        self,
        project: str,
        history: Sequence[Turn],
        tools: Sequence[ToolDescriptor],
        config: GenerationConfig,
    ) -> Dict[str, Any]:
        session_id = str(uuid.uuid4())
        generation_config: Dict[str, Any] = {
            "temperature": config.temperature,
            "maxOutputTokens": config.max_output_tokens,
            "topP": config.top_p if config.top_p is not None else 1,
        }
        request: Dict[str, Any] = {
            "contents": [turn.to_wire() for turn in history],
            "generationConfig": generation_config,
            "tools": (
                [{"function_declarations": [tool.to_function_declaration() for tool in tools]}]
                if tools
                else []
            ),
            "session_id": session_id,
        }
        if config.system_instruction:
            request["systemInstruction"] = {
                "role": "user",
                "parts": [{"text": config.system_instruction}],
            }
        return {
            "model": config.model or self._settings.model,
            "project": project,
            "user_prompt_id": f"{session_id}########0",
            "request": request,
        }

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_transient),
        )

    async def aclose(self) -> None:
        await self._http.aclose()


def _is_transient(exc: BaseException) -> bool:
    """Network failures, rate limits and server errors are worth another attempt."""

    if not isinstance(exc, TransportError):
        return False
    status = exc.status_code
    return status is None or status == 429 or status >= 500
