"""System prompt templates for vault conversations."""

from __future__ import annotations

from datetime import date
from typing import Iterable

from .memory import MemoryEntry

__all__ = ["build_system_prompt", "format_memories"]


def build_system_prompt(
    vault_name: str,
    memories: Iterable[MemoryEntry] | str = (),
    *,
    vault_path: str | None = None,
    today: date | None = None,
) -> str:
    """Compose the system instruction for a conversation.

    ``memories`` may be the entries themselves or text already rendered by
    :meth:`MemoryStore.as_prompt_text`.
    """

    memories_text = memories if isinstance(memories, str) else format_memories(memories)
    sections = [_intro_section(), _context_section(vault_name, vault_path, today or date.today())]
    if memories_text:
        sections.append(memories_text)
    sections.extend(
        [
            f"# Core Mandates\n\n{_mandates_section()}",
            f"# Primary Workflows\n\n{_workflow_section()}",
            f"# Operational Guidelines\n\n{_guidelines_section()}",
            f"# Critical Rules\n\n{_rules_section()}",
        ]
    )
    return "\n\n".join(sections)


def format_memories(memories: Iterable[MemoryEntry]) -> str:
    lines = [f"- {entry.fact}" for entry in memories]
    if not lines:
        return ""
    return "## Saved Memories\n" + "\n".join(lines)


def _intro_section() -> str:
    return (
        "You are an interactive assistant specializing in knowledge management and note-taking. "
        "Your primary goal is to help users efficiently access and organize their notes, adhering "
        "strictly to the following instructions and utilizing your available tools."
    )


def _context_section(vault_name: str, vault_path: str | None, today: date) -> str:
    lines = ["# Current Context", f"- Vault: {vault_name or 'vault'}"]
    if vault_path:
        lines.append(f"- Vault path: {vault_path}")
    lines.append(f"- Date: {today.isoformat()}")
    return "\n".join(lines)


def _mandates_section() -> str:
    return """- **Tool Usage:** You cannot access files directly. You MUST use the provided tools to read file content.
- **Proactiveness:** Fulfill the user's request thoroughly using the available tools.
- **Explaining Actions:** After completing a task *do not* provide summaries unless asked."""


def _workflow_section() -> str:
    return """## When Asked About File Content
1. **Understand:** Decide which files are relevant. Use 'list_files' to discover files if needed.
2. **Read:** Use 'read_file' to get the content. 'list_files' only returns names, NOT content.
3. **Answer:** Respond based on the content you read."""


def _guidelines_section() -> str:
    return """## Tone and Style
- **Professional & Direct:** No preambles or postambles. Get straight to the answer.
- **Formatting:** Use Markdown. Reference notes with [[WikiLinks]].

## Tool Usage
- **File Paths:** Use paths relative to the vault root (e.g., 'folder/note.md').
- **File Names:** Avoid the characters / \\ : * ? " < > | when creating files.
- **Respect User Confirmations:** If the user rejects a tool call, do not retry it unless asked.

## Web Search and Citations
- **google_web_search:** Results list their sources at the bottom. Cite them inline with superscript numbers."""


def _rules_section() -> str:
    return """- You CANNOT see file content without using 'read_file'.
- Use tools actively and in sequence to complete tasks.
- **Remembering Facts:** Use 'save_memory' for user-specific facts or preferences the user asks you to remember. Use 'delete_memory' to remove outdated ones before saving a correction."""
