"""Tests for the built-in vault, web and memory tools."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import httpx
import pytest

from vault_assistant.ai.errors import ToolExecutionError, TransportError
from vault_assistant.ai.memory import MemoryStore
from vault_assistant.ai.tools.builtin import (
    LIST_FILES_LIMIT,
    MAX_FETCH_CHARS,
    BuiltinTools,
    build_builtin_catalog,
    sanitize_file_path,
    to_raw_github_url,
)
from vault_assistant.vault import FileSystemVault, VaultError


def _fetch_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True, max_redirects=5)


class _SearchBackend:
    def __init__(self, response: Mapping[str, Any] | None = None, error: Exception | None = None) -> None:
        self.response = response or {}
        self.error = error
        self.queries: list[str] = []

    async def search(self, query: str) -> Mapping[str, Any]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return self.response


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Meeting: 10:30", "Meeting- 10-30.md"),
        ("notes/What? <draft>", "notes/What draft.md"),
        ("  ...  ", "Untitled.md"),
        ("plan.md", "plan.md"),
    ],
)
def test_sanitize_file_path(raw: str, expected: str) -> None:
    assert sanitize_file_path(raw) == expected


def test_github_blob_urls_are_rewritten() -> None:
    assert (
        to_raw_github_url("https://github.com/org/repo/blob/main/README.md")
        == "https://raw.githubusercontent.com/org/repo/main/README.md"
    )
    assert to_raw_github_url("https://example.com/a") == "https://example.com/a"


# -----------------------------------------------------------------------------
# Vault tools
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_read_file_with_window(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault)

    full = await tools.read_file({"file_path": "notes/alpha.md"})
    window = await tools.read_file({"file_path": "notes/alpha.md", "offset": 1, "limit": 2})

    assert full.startswith("# Alpha")
    assert window == "[Showing lines 2-3 of 4 from notes/alpha.md]\nfirst\nsecond"


@pytest.mark.asyncio
async def test_read_file_rejects_missing_and_escaping_paths(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault)

    with pytest.raises(VaultError):
        await tools.read_file({"file_path": "missing.md"})
    with pytest.raises(ToolExecutionError):
        await tools.read_file({"file_path": "../outside.md"})


@pytest.mark.asyncio
async def test_list_files_skips_hidden_and_truncates(vault_dir: Path) -> None:
    for index in range(LIST_FILES_LIMIT + 5):
        (vault_dir / "bulk").mkdir(exist_ok=True)
        (vault_dir / "bulk" / f"note-{index:02d}.md").write_text("x", encoding="utf-8")
    tools = BuiltinTools(FileSystemVault(vault_dir))

    everything = await tools.list_files({})
    notes_only = await tools.list_files({"directory": "notes"})

    assert ".obsidian" not in everything
    assert everything.startswith(f"Files in vault ({LIST_FILES_LIMIT + 8} total):")
    assert everything.endswith("... and 8 more files")
    assert notes_only == "Files in vault (notes) (2 total):\nnotes/alpha.md\nnotes/beta.md"


@pytest.mark.asyncio
async def test_read_many_files_matches_globs_and_excludes(vault_dir: Path) -> None:
    (vault_dir / "notes" / "debug.log").write_text("noise", encoding="utf-8")
    tools = BuiltinTools(FileSystemVault(vault_dir))

    output = await tools.read_many_files({"paths": ["notes/**"], "exclude": ["notes/beta.md"]})

    assert output.startswith("Successfully read 1 file(s) using patterns: notes/**")
    assert "- notes/alpha.md" in output
    assert "--- notes/alpha.md ---" in output
    assert "debug.log" not in output
    assert output.endswith("--- End of content ---")


@pytest.mark.asyncio
async def test_read_many_files_requires_paths(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault)

    with pytest.raises(ToolExecutionError):
        await tools.read_many_files({"paths": []})
    assert await tools.read_many_files({"paths": ["*.pdf"]}) == "No files found matching the specified patterns."


@pytest.mark.asyncio
async def test_write_file_sanitizes_name(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault)

    message = await tools.write_file({"file_path": "Ideas: Q3", "content": "- ship it"})

    assert message == "File written successfully: Ideas- Q3.md (sanitized from: Ideas: Q3)"
    assert (vault.root / "Ideas- Q3.md").read_text(encoding="utf-8") == "- ship it"


@pytest.mark.asyncio
async def test_create_folder_reports_existing(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault)

    assert await tools.create_folder({"folder_path": "Projects/2024"}) == "Created folder: Projects/2024"
    assert await tools.create_folder({"folder_path": "Projects/2024/"}) == "Folder already exists: Projects/2024"
    assert (vault.root / "Projects" / "2024").is_dir()


# -----------------------------------------------------------------------------
# Web tools
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_web_fetch_rewrites_github_and_pretty_prints_json(vault: FileSystemVault) -> None:
    requested: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, json={"name": "repo", "stars": 3})

    tools = BuiltinTools(vault, http_client=_fetch_client(_handler))

    output = await tools.web_fetch({"prompt": "Summarize https://github.com/org/repo/blob/main/data.json please"})

    assert requested == ["https://raw.githubusercontent.com/org/repo/main/data.json"]
    assert output.startswith("Web fetch successful from https://github.com/org/repo/blob/main/data.json")
    assert '"stars": 3' in output
    assert '{\n  "name": "repo"' in output


@pytest.mark.asyncio
async def test_web_fetch_reports_redirects_and_truncates(vault: FileSystemVault) -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(301, headers={"Location": "https://example.com/new"})
        return httpx.Response(200, text="x" * (MAX_FETCH_CHARS + 10), headers={"content-type": "text/plain"})

    tools = BuiltinTools(vault, http_client=_fetch_client(_handler))

    output = await tools.web_fetch({"prompt": "https://example.com/old"})

    assert output.startswith(
        "Web fetch successful (followed redirects from https://example.com/old to https://example.com/new)"
    )
    assert output.endswith("(content truncated due to size)")


@pytest.mark.asyncio
async def test_web_fetch_errors(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault, http_client=_fetch_client(lambda request: httpx.Response(404)))

    with pytest.raises(ToolExecutionError, match="at least one valid URL"):
        await tools.web_fetch({"prompt": "no link here"})
    with pytest.raises(ToolExecutionError, match="status code 404"):
        await tools.web_fetch({"prompt": "https://example.com/missing"})


@pytest.mark.asyncio
async def test_google_web_search_formats_sources(vault: FileSystemVault) -> None:
    backend = _SearchBackend(
        {
            "candidates": [
                {
                    "content": {"parts": [{"text": "Python 3.13 was released in October 2024."}]},
                    "groundingMetadata": {
                        "groundingChunks": [{"web": {"title": "python.org", "uri": "https://python.org"}}]
                    },
                }
            ]
        }
    )
    tools = BuiltinTools(vault, search_backend=backend)

    output = await tools.google_web_search({"query": " python release "})

    assert backend.queries == ["python release"]
    assert output.startswith('Web search results for "python release":')
    assert "[1] python.org" in output
    assert "https://python.org" in output


@pytest.mark.asyncio
async def test_google_web_search_wraps_backend_errors(vault: FileSystemVault) -> None:
    tools = BuiltinTools(vault, search_backend=_SearchBackend(error=TransportError("quota", status_code=429)))

    with pytest.raises(ToolExecutionError, match="Google search failed"):
        await tools.google_web_search({"query": "anything"})


# -----------------------------------------------------------------------------
# Memory tools and catalog
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_save_and_delete_memory(vault: FileSystemVault, tmp_path: Path) -> None:
    memory = MemoryStore(tmp_path / "memory.json")
    tools = BuiltinTools(vault, memory=memory)

    saved = await tools.save_memory({"fact": "Prefers bullet lists"})
    deleted = await tools.delete_memory({"fact_to_delete": "bullet"})
    missing = await tools.delete_memory({"fact_to_delete": "bullet"})

    assert saved == 'Okay, I\'ve remembered that: "Prefers bullet lists"'
    assert deleted == 'Deleted 1 memory: "Prefers bullet lists"'
    assert missing == 'No memories found matching "bullet"'


def test_catalog_omits_write_tools_when_disabled(vault: FileSystemVault) -> None:
    enabled = build_builtin_catalog(vault)
    disabled = build_builtin_catalog(vault, enable_file_tools=False)

    assert {"write_file", "create_folder"} <= set(enabled.names())
    assert "write_file" not in disabled
    assert "create_folder" not in disabled
    read_file = enabled.get("read_file")
    assert read_file is not None and read_file.descriptor.requires_confirmation is False


@pytest.mark.asyncio
async def test_catalog_binding_runs_tool(vault: FileSystemVault) -> None:
    catalog = build_builtin_catalog(vault)
    entry = catalog.get("list_files")
    assert entry is not None

    output = await entry.binding.execute("list_files", {"directory": "notes"})

    assert "notes/alpha.md" in output
