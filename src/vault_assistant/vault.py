"""Filesystem adapter used by the built-in vault tools."""

from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from typing import List

from .ai.errors import ToolExecutionError

LOGGER = logging.getLogger(__name__)

__all__ = ["FileSystemVault", "VaultError"]


class VaultError(ToolExecutionError):
    """Raised for missing files and paths that escape the vault root."""

    def __init__(self, message: str) -> None:
        super().__init__("vault", message)


class FileSystemVault:
    """A directory tree addressed with vault-relative POSIX paths.

    Every path is resolved against the root and rejected if it ends up outside
    of it, so ``..`` segments and absolute paths cannot reach other files.
    """

    def __init__(self, root: Path | str, *, skip_hidden: bool = True) -> None:
        self._root = Path(root).expanduser().resolve()
        self._skip_hidden = skip_hidden

    @property
    def root(self) -> Path:
        return self._root

    @property
    def name(self) -> str:
        return self._root.name or "vault"

    def resolve(self, relative_path: str) -> Path:
        cleaned = (relative_path or "").strip().replace("\\", "/").lstrip("/")
        candidate = (self._root / cleaned).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise VaultError(f"Path escapes the vault: {relative_path}")
        return candidate

    def relative(self, path: Path) -> str:
        return PurePosixPath(path.relative_to(self._root)).as_posix()

    def read_file(self, relative_path: str) -> str:
        path = self.resolve(relative_path)
        if not path.exists():
            raise VaultError(f"File not found: {relative_path}")
        if not path.is_file():
            raise VaultError(f"Path is not a file: {relative_path}")
        return path.read_text(encoding="utf-8", errors="replace")

    def list_files(self, directory: str = "") -> List[str]:
        """Return every file under ``directory`` as sorted vault-relative paths."""

        base = self.resolve(directory) if directory else self._root
        if not base.exists():
            return []
        if base.is_file():
            return [self.relative(base)]
        files: List[str] = []
        for current, dirnames, filenames in os.walk(base):
            if self._skip_hidden:
                dirnames[:] = [name for name in dirnames if not name.startswith(".")]
            for filename in filenames:
                if self._skip_hidden and filename.startswith("."):
                    continue
                files.append(self.relative(Path(current) / filename))
        files.sort()
        return files

    def write_file(self, relative_path: str, content: str) -> bool:
        """Write ``content``; returns ``True`` when the file was newly created."""

        path = self.resolve(relative_path)
        if path.is_dir():
            raise VaultError(f"Path is a folder, not a file: {relative_path}")
        created = not path.exists()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        LOGGER.debug("%s %s", "Created" if created else "Updated", relative_path)
        return created

    def create_folder(self, relative_path: str) -> bool:
        """Create a folder and its parents; returns ``False`` if it already existed."""

        path = self.resolve(relative_path)
        if path.exists():
            if path.is_dir():
                return False
            raise VaultError(f"Path exists but is a file, not a folder: {relative_path}")
        path.mkdir(parents=True)
        return True
