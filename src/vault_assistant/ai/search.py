"""Grounded web search backends used by the ``google_web_search`` tool."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Mapping, Protocol, runtime_checkable

import httpx

from .code_assist import CodeAssistTransport
from .errors import TransportError

LOGGER = logging.getLogger(__name__)

GENERATIVE_LANGUAGE_URL = "https://generativelanguage.googleapis.com/v1beta"
SEARCH_SYSTEM_INSTRUCTION = (
    "You are an interactive assistant specializing in knowledge management and note-taking."
)

__all__ = [
    "SearchBackend",
    "ApiKeySearchBackend",
    "CodeAssistSearchBackend",
    "format_search_results",
]


@runtime_checkable
class SearchBackend(Protocol):
    async def search(self, query: str) -> Mapping[str, Any]:
        """Return a raw ``GenerateContentResponse`` grounded on Google Search."""
        ...


def format_search_results(query: str, response: Mapping[str, Any]) -> str:
    """Render the answer text followed by a numbered list of sources."""

    candidates = response.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, Mapping))
    if not text.strip():
        return f'No search results or information found for query: "{query}"'

    formatted = f'Web search results for "{query}":\n\n{text}'
    sources = (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []
    if sources:
        lines = []
        for index, source in enumerate(sources, start=1):
            web = source.get("web") or {}
            lines.append(f"[{index}] {web.get('title') or 'Untitled'}\n    {web.get('uri') or 'No URI'}")
        formatted += "\n\nSources:\n" + "\n".join(lines)
    LOGGER.debug("Search for %r returned %s chars and %s source(s)", query, len(text), len(sources))
    return formatted


class ApiKeySearchBackend:
    """Calls ``models/{model}:generateContent`` with the ``googleSearch`` tool."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = GENERATIVE_LANGUAGE_URL,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._http = http_client or httpx.AsyncClient(timeout=60.0)
        self._base_url = base_url.rstrip("/")

    async def search(self, query: str) -> Mapping[str, Any]:
        body = {
            "contents": [{"role": "user", "parts": [{"text": query}]}],
            "tools": [{"googleSearch": {}}],
            "generationConfig": {"temperature": 0.7, "maxOutputTokens": 8192},
        }
        url = f"{self._base_url}/models/{self._model}:generateContent"
        try:
            response = await self._http.post(url, json=body, headers={"x-goog-api-key": self._api_key})
        except httpx.HTTPError as exc:
            raise TransportError(f"Search request failed: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError("Search request failed", status_code=response.status_code, body=response.text)
        return response.json()

    async def aclose(self) -> None:
        await self._http.aclose()


class CodeAssistSearchBackend:
    """Runs the grounded search through the Code Assist ``generateContent`` method."""

    def __init__(self, transport: CodeAssistTransport, model: str) -> None:
        self._transport = transport
        self._model = model

    async def search(self, query: str) -> Mapping[str, Any]:
        project = await self._transport.ensure_project()
        session_id = str(uuid.uuid4())
        body: Dict[str, Any] = {
            "model": self._model,
            "project": project,
            "user_prompt_id": f"{session_id}########0",
            "request": {
                "contents": [{"role": "user", "parts": [{"text": query}]}],
                "systemInstruction": {"role": "user", "parts": [{"text": SEARCH_SYSTEM_INSTRUCTION}]},
                "tools": [{"googleSearch": {}}],
                "generationConfig": {"temperature": 0, "topP": 1},
                "session_id": session_id,
            },
        }
        return await self._transport.generate_content(body)
