"""Built-in vault, web and memory tools."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

import httpx

from ..ai_types import ToolDescriptor
from ..errors import AssistantError, ToolExecutionError
from ..memory import MemoryStore
from ..search import SearchBackend, format_search_results
from ...vault import FileSystemVault
from .catalog import ToolCatalog

__all__ = [
    "BuiltinTools",
    "build_builtin_catalog",
    "builtin_descriptors",
    "sanitize_file_path",
    "extract_urls",
    "to_raw_github_url",
    "DEFAULT_EXCLUDES",
    "LIST_FILES_LIMIT",
    "MAX_FETCH_CHARS",
]

LOGGER = logging.getLogger(__name__)

LIST_FILES_LIMIT = 20
MAX_FETCH_CHARS = 100_000
MAX_BINARY_CHARS = 10_000
MAX_REDIRECTS = 5
FETCH_TIMEOUT = 10.0
USER_AGENT = "vault-assistant/0.1.0"
TRUNCATION_NOTICE = "\n... (content truncated due to size)"

DEFAULT_EXCLUDES: tuple[str, ...] = (
    "node_modules/**",
    ".git/**",
    ".obsidian/**",
    "*.log",
    "*.tmp",
    "*.cache",
    "*.lock",
    "*.pid",
    "*.seed",
    "*.pid.lock",
    ".DS_Store",
    "Thumbs.db",
)

_URL_PATTERN = re.compile(r"https?://\S+")


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def sanitize_file_path(file_path: str) -> str:
    """Make the final path segment a valid note name ending in ``.md``."""

    directory, _, file_name = (file_path or "").replace("\\", "/").rpartition("/")
    sanitized = re.sub(r"[:\\]", "-", file_name)
    sanitized = re.sub(r'[*?"<>|]', "", sanitized)
    sanitized = re.sub(r"\s+", " ", sanitized).strip()
    sanitized = sanitized.strip(". ")
    if not sanitized:
        sanitized = "Untitled"
    if not sanitized.endswith(".md"):
        sanitized += ".md"
    return f"{directory}/{sanitized}" if directory else sanitized


def extract_urls(text: str) -> List[str]:
    return _URL_PATTERN.findall(text or "")


def to_raw_github_url(url: str) -> str:
    if "github.com" in url and "/blob/" in url:
        return url.replace("github.com", "raw.githubusercontent.com", 1).replace("/blob/", "/", 1)
    return url


def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    index = 0
    out: List[str] = []
    while index < len(pattern):
        char = pattern[index]
        if pattern.startswith("**/", index):
            out.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            out.append(".*")
            index += 2
            continue
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(char))
        index += 1
    return re.compile("^" + "".join(out) + "$")


def _matches(path: str, pattern: str) -> bool:
    if "*" in pattern or "?" in pattern:
        regex = _glob_to_regex(pattern)
        if regex.match(path):
            return True
        # bare file patterns such as "*.log" apply at any depth
        return "/" not in pattern and bool(regex.match(path.rpartition("/")[2]))
    trimmed = pattern.rstrip("/")
    return path == trimmed or path.startswith(trimmed + "/")


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if str(item).strip()]
    return []


def _optional_int(args: Mapping[str, Any], key: str) -> int | None:
    value = args.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolExecutionError("read_file", f"Parameter '{key}' must be a number") from None


def _required_str(tool: str, args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolExecutionError(tool, f'Parameter "{key}" must be a non-empty string.')
    return value


# -----------------------------------------------------------------------------
# Tool implementations
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class BuiltinTools:
    """Handlers bound to one vault, memory store and search backend."""

    vault: FileSystemVault
    memory: MemoryStore | None = None
    search_backend: SearchBackend | None = None
    http_client: httpx.AsyncClient | None = None

    async def read_file(self, args: Mapping[str, Any]) -> str:
        file_path = _required_str("read_file", args, "file_path")
        content = self.vault.read_file(file_path)
        offset = _optional_int(args, "offset")
        limit = _optional_int(args, "limit")
        if offset is None and limit is None:
            return content

        lines = content.splitlines()
        start = max(0, offset or 0)
        end = len(lines) if limit is None else min(len(lines), start + max(0, limit))
        if start >= len(lines) and lines:
            raise ToolExecutionError("read_file", f"Offset {start} is beyond the end of {file_path} ({len(lines)} lines)")
        window = "\n".join(lines[start:end])
        return f"[Showing lines {start + 1}-{end} of {len(lines)} from {file_path}]\n{window}"

    async def list_files(self, args: Mapping[str, Any]) -> str:
        directory = str(args.get("directory") or "").strip().strip("/")
        files = self.vault.list_files(directory)
        shown = "\n".join(files[:LIST_FILES_LIMIT])
        suffix = f"\n... and {len(files) - LIST_FILES_LIMIT} more files" if len(files) > LIST_FILES_LIMIT else ""
        where = f" ({directory})" if directory else ""
        return f"Files in vault{where} ({len(files)} total):\n{shown}{suffix}"

    async def read_many_files(self, args: Mapping[str, Any]) -> str:
        paths = _string_list(args.get("paths"))
        if not paths:
            raise ToolExecutionError("read_many_files", "paths parameter is required and must be a non-empty array")
        patterns = paths + _string_list(args.get("include"))
        excludes = _string_list(args.get("exclude"))
        if args.get("useDefaultExcludes", True) is not False:
            excludes = list(DEFAULT_EXCLUDES) + excludes

        matching = [
            path
            for path in self.vault.list_files()
            if any(_matches(path, pattern) for pattern in patterns)
            and not any(_matches(path, pattern) for pattern in excludes)
        ]
        LOGGER.debug("read_many_files matched %s file(s) for %s", len(matching), patterns)
        if not matching:
            return "No files found matching the specified patterns."

        sections: List[str] = []
        processed: List[str] = []
        skipped: List[tuple[str, str]] = []
        for path in matching:
            try:
                content = self.vault.read_file(path)
            except (OSError, ToolExecutionError) as exc:
                LOGGER.warning("Failed to read %s: %s", path, exc)
                skipped.append((path, f"Read error: {exc}"))
                continue
            sections.append(f"--- {path} ---\n\n{content}\n\n")
            processed.append(path)

        summary = f"Successfully read {len(processed)} file(s) using patterns: {', '.join(patterns)}"
        if len(processed) <= 10:
            summary += "\n\n**Processed Files:**\n" + "\n".join(f"- {p}" for p in processed)
        else:
            summary += "\n\n**Processed Files (first 10 shown):**\n" + "\n".join(f"- {p}" for p in processed[:10])
            summary += f"\n- ...and {len(processed) - 10} more."
        if skipped:
            summary += f"\n\n**Skipped {len(skipped)} file(s):**\n"
            summary += "\n".join(f"- {path} ({reason})" for path, reason in skipped[:5])
            if len(skipped) > 5:
                summary += f"\n- ...and {len(skipped) - 5} more."
        if not sections:
            return summary
        return f"{summary}\n\n{''.join(sections)}--- End of content ---"

    async def write_file(self, args: Mapping[str, Any]) -> str:
        file_path = _required_str("write_file", args, "file_path")
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolExecutionError("write_file", 'Parameter "content" must be a string.')
        sanitized = sanitize_file_path(file_path)
        if sanitized != file_path:
            LOGGER.debug("Sanitized path %r -> %r", file_path, sanitized)
        self.vault.write_file(sanitized, content)
        note = f" (sanitized from: {file_path})" if sanitized != file_path else ""
        return f"File written successfully: {sanitized}{note}"

    async def create_folder(self, args: Mapping[str, Any]) -> str:
        folder_path = _required_str("create_folder", args, "folder_path").strip().strip("/")
        if self.vault.create_folder(folder_path):
            return f"Created folder: {folder_path}"
        return f"Folder already exists: {folder_path}"

    async def web_fetch(self, args: Mapping[str, Any]) -> str:
        prompt = _required_str("web_fetch", args, "prompt")
        urls = extract_urls(prompt)
        if not urls:
            raise ToolExecutionError(
                "web_fetch",
                "The 'prompt' must contain at least one valid URL (starting with http:// or https://).",
            )
        url = urls[0]
        fetch_url = to_raw_github_url(url)
        if fetch_url != url:
            LOGGER.debug("Converted GitHub URL %s -> %s", url, fetch_url)

        client = self.http_client or httpx.AsyncClient(
            follow_redirects=True, max_redirects=MAX_REDIRECTS, timeout=FETCH_TIMEOUT
        )
        try:
            response = await client.get(fetch_url, headers={"User-Agent": USER_AGENT})
        except httpx.TooManyRedirects as exc:
            raise ToolExecutionError("web_fetch", f"Too many redirects (max {MAX_REDIRECTS})") from exc
        except httpx.HTTPError as exc:
            raise ToolExecutionError("web_fetch", f"Fetch failed: {exc}") from exc
        finally:
            if self.http_client is None:
                await client.aclose()

        if not 200 <= response.status_code < 300:
            raise ToolExecutionError("web_fetch", f"Request failed with status code {response.status_code}")

        content = _render_body(response)
        if len(content) > MAX_FETCH_CHARS:
            content = content[:MAX_FETCH_CHARS] + TRUNCATION_NOTICE
        final_url = str(response.url)
        if final_url != fetch_url:
            header = f"Web fetch successful (followed redirects from {url} to {final_url}):\n\n"
        else:
            header = f"Web fetch successful from {url}:\n\n"
        LOGGER.debug("Fetched %s characters from %s", len(content), final_url)
        return header + content

    async def google_web_search(self, args: Mapping[str, Any]) -> str:
        query = _required_str("google_web_search", args, "query").strip()
        if self.search_backend is None:
            raise ToolExecutionError("google_web_search", "Web search is not configured")
        try:
            response = await self.search_backend.search(query)
        except AssistantError as exc:
            raise ToolExecutionError("google_web_search", f"Google search failed: {exc}") from exc
        return format_search_results(query, response)

    async def save_memory(self, args: Mapping[str, Any]) -> str:
        fact = _required_str("save_memory", args, "fact")
        store = self._memory_store("save_memory")
        category = args.get("category")
        entry = store.add(fact, str(category) if category else None)
        LOGGER.debug("Saved memory %s", entry.id)
        return f'Okay, I\'ve remembered that: "{entry.fact}"'

    async def delete_memory(self, args: Mapping[str, Any]) -> str:
        needle = _required_str("delete_memory", args, "fact_to_delete")
        store = self._memory_store("delete_memory")
        matches = store.search(needle)
        if not matches:
            return f'No memories found matching "{needle}"'
        deleted = [entry for entry in matches if store.delete(entry.id)]
        if len(deleted) == 1:
            return f'Deleted 1 memory: "{deleted[0].fact}"'
        facts = ", ".join(f'"{entry.fact}"' for entry in deleted)
        return f"Deleted {len(deleted)} memories: {facts}"

    def _memory_store(self, tool: str) -> MemoryStore:
        if self.memory is None:
            raise ToolExecutionError(tool, "Long-term memory is not configured")
        return self.memory


def _render_body(response: httpx.Response) -> str:
    content_type = response.headers.get("content-type", "")
    text = response.text
    if "application/json" in content_type:
        try:
            return json.dumps(response.json(), indent=2, ensure_ascii=False)
        except ValueError:
            return text
    if "text/" in content_type:
        return text
    if len(text) > MAX_BINARY_CHARS:
        return text[:MAX_BINARY_CHARS] + TRUNCATION_NOTICE
    return text


# -----------------------------------------------------------------------------
# Declarations
# -----------------------------------------------------------------------------


def _schema(properties: Dict[str, Any], required: Sequence[str] = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = list(required)
    return schema


_STRING_ARRAY = {"type": "array", "items": {"type": "string"}}


def builtin_descriptors(*, enable_file_tools: bool = True) -> List[ToolDescriptor]:
    descriptors = [
        ToolDescriptor(
            name="read_file",
            description="Reads and returns the content of a file from the vault.",
            parameter_schema=_schema(
                {
                    "file_path": {
                        "type": "string",
                        "description": 'The path to the file relative to the vault root (e.g., "folder/note.md")',
                    },
                    "offset": {"type": "number", "description": "Optional: 0-based line number to start reading from"},
                    "limit": {"type": "number", "description": "Optional: Number of lines to read"},
                },
                ["file_path"],
            ),
            requires_confirmation=False,
        ),
        ToolDescriptor(
            name="list_files",
            description="Lists all files in the vault or in a specific directory.",
            parameter_schema=_schema(
                {
                    "directory": {
                        "type": "string",
                        "description": "Optional: Directory path to list files from. Lists the whole vault when omitted.",
                    }
                }
            ),
            requires_confirmation=False,
        ),
        ToolDescriptor(
            name="read_many_files",
            description=(
                "Reads content from multiple files specified by paths or glob patterns within the vault. "
                "Concatenates file content with separators."
            ),
            parameter_schema=_schema(
                {
                    "paths": {**_STRING_ARRAY, "description": 'Glob patterns or paths relative to the vault root (e.g., ["notes/**/*.md"])'},
                    "include": {**_STRING_ARRAY, "description": "Optional: Additional glob patterns to include."},
                    "exclude": {**_STRING_ARRAY, "description": "Optional: Glob patterns for files or folders to exclude."},
                    "useDefaultExcludes": {
                        "type": "boolean",
                        "description": "Optional: Apply default exclusion patterns (.git, node_modules, ...). Defaults to true.",
                    },
                },
                ["paths"],
            ),
            requires_confirmation=False,
        ),
    ]
    if enable_file_tools:
        descriptors.extend(
            [
                ToolDescriptor(
                    name="write_file",
                    description="Creates a new file or overwrites an existing file in the vault with the provided content.",
                    parameter_schema=_schema(
                        {
                            "file_path": {"type": "string", "description": "The path where the file should be written"},
                            "content": {"type": "string", "description": "The content to write to the file"},
                        },
                        ["file_path", "content"],
                    ),
                ),
                ToolDescriptor(
                    name="create_folder",
                    description="Creates a folder (and any missing parent folders) in the vault.",
                    parameter_schema=_schema(
                        {"folder_path": {"type": "string", "description": "Folder path relative to the vault root"}},
                        ["folder_path"],
                    ),
                ),
            ]
        )
    descriptors.extend(
        [
            ToolDescriptor(
                name="web_fetch",
                description=(
                    "Fetches content from a URL included in the prompt, along with instructions on how to "
                    "process it. Only the first URL is fetched."
                ),
                parameter_schema=_schema(
                    {
                        "prompt": {
                            "type": "string",
                            "description": "A prompt containing the URL to fetch (http:// or https://) and instructions.",
                        }
                    },
                    ["prompt"],
                ),
            ),
            ToolDescriptor(
                name="google_web_search",
                description="Performs a web search using Google Search and returns the results with their sources.",
                parameter_schema=_schema(
                    {"query": {"type": "string", "description": "The search query to find information on the web."}},
                    ["query"],
                ),
            ),
            ToolDescriptor(
                name="save_memory",
                description=(
                    "Saves a specific fact to long-term memory. Use it when the user asks you to remember "
                    "something or states a clear fact worth keeping for future conversations."
                ),
                parameter_schema=_schema(
                    {
                        "fact": {"type": "string", "description": "The self-contained fact to remember."},
                        "category": {"type": "string", "description": "Optional: Category or tag for this memory."},
                    },
                    ["fact"],
                ),
            ),
            ToolDescriptor(
                name="delete_memory",
                description="Deletes every saved memory whose text contains the given fragment (case-insensitive).",
                parameter_schema=_schema(
                    {"fact_to_delete": {"type": "string", "description": "The fact text to search for and delete."}},
                    ["fact_to_delete"],
                ),
            ),
        ]
    )
    return descriptors


def build_builtin_catalog(
    vault: FileSystemVault,
    memory: MemoryStore | None = None,
    *,
    search_backend: SearchBackend | None = None,
    http_client: httpx.AsyncClient | None = None,
    enable_file_tools: bool = True,
    catalog: ToolCatalog | None = None,
) -> ToolCatalog:
    """Register every built-in tool on ``catalog`` (a new one by default)."""

    tools = BuiltinTools(vault=vault, memory=memory, search_backend=search_backend, http_client=http_client)
    target = catalog or ToolCatalog()
    for descriptor in builtin_descriptors(enable_file_tools=enable_file_tools):
        target.register_builtin(descriptor, getattr(tools, descriptor.name))
    return target
