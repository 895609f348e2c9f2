"""Long-term memory persisted as a small JSON document."""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping

LOGGER = logging.getLogger(__name__)

MEMORY_FILE_NAME = "memory.json"
CURRENT_VERSION = "1.0"
_ID_ALPHABET = string.ascii_lowercase + string.digits

__all__ = ["MemoryEntry", "MemoryStore", "MEMORY_FILE_NAME"]


@dataclass(slots=True, frozen=True)
class MemoryEntry:
    id: str
    fact: str
    timestamp: int
    category: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> MemoryEntry | None:
        fact = payload.get("fact")
        if not isinstance(fact, str) or not fact.strip():
            return None
        return cls(
            id=str(payload.get("id") or _new_id()),
            fact=fact,
            timestamp=int(payload.get("timestamp") or 0),
            category=payload.get("category") or None,
        )

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.category is None:
            data.pop("category")
        return data


def _new_id() -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"mem-{int(time.time() * 1000)}-{suffix}"


class MemoryStore:
    """Keeps saved facts in memory and mirrors every change to disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser()
        self._memories: List[MemoryEntry] = []

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[MemoryEntry]:
        """Read the memory file; a missing or corrupt file yields an empty store."""

        self._memories = []
        if not self._path.exists():
            LOGGER.debug("No memory file at %s, starting fresh", self._path)
            return []
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.error("Unable to load memories from %s: %s", self._path, exc)
            return []
        if not isinstance(payload, Mapping):
            LOGGER.error("Memory file %s does not contain an object", self._path)
            return []
        if payload.get("version") != CURRENT_VERSION:
            LOGGER.warning("Memory file version %s differs from %s", payload.get("version"), CURRENT_VERSION)
        for item in payload.get("memories") or []:
            if isinstance(item, Mapping):
                entry = MemoryEntry.from_payload(item)
                if entry is not None:
                    self._memories.append(entry)
        LOGGER.debug("Loaded %s memories", len(self._memories))
        return list(self._memories)

    def save(self) -> Path:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        body = json.dumps(
            {"version": CURRENT_VERSION, "memories": [entry.to_payload() for entry in self._memories]},
            indent=2,
            ensure_ascii=False,
        )
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Saved %s memories to %s", len(self._memories), self._path)
        return self._path

    def entries(self) -> List[MemoryEntry]:
        return list(self._memories)

    def __len__(self) -> int:
        return len(self._memories)

    def add(self, fact: str, category: str | None = None) -> MemoryEntry:
        text = fact.strip()
        if not text:
            raise ValueError("fact must be a non-empty string")
        entry = MemoryEntry(
            id=_new_id(),
            fact=text,
            timestamp=int(time.time() * 1000),
            category=category or None,
        )
        self._memories.append(entry)
        self.save()
        LOGGER.debug("Added memory %s", entry.id)
        return entry

    def delete(self, memory_id: str) -> bool:
        remaining = [entry for entry in self._memories if entry.id != memory_id]
        if len(remaining) == len(self._memories):
            return False
        self._memories = remaining
        self.save()
        LOGGER.debug("Deleted memory %s", memory_id)
        return True

    def search(self, text: str) -> List[MemoryEntry]:
        needle = text.strip().lower()
        if not needle:
            return []
        return [entry for entry in self._memories if needle in entry.fact.lower()]

    def clear(self) -> None:
        self._memories = []
        self.save()

    def as_prompt_text(self) -> str:
        if not self._memories:
            return ""
        return "## Saved Memories\n" + "\n".join(f"- {entry.fact}" for entry in self._memories)
