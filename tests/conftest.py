"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from vault_assistant.vault import FileSystemVault


@pytest.fixture
def vault_dir(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    (root / "notes").mkdir(parents=True)
    (root / "notes" / "alpha.md").write_text("# Alpha\nfirst\nsecond\nthird\n", encoding="utf-8")
    (root / "notes" / "beta.md").write_text("beta body", encoding="utf-8")
    (root / "todo.md").write_text("- [ ] water plants", encoding="utf-8")
    (root / ".obsidian").mkdir()
    (root / ".obsidian" / "config.json").write_text("{}", encoding="utf-8")
    return root


@pytest.fixture
def vault(vault_dir: Path) -> FileSystemVault:
    return FileSystemVault(vault_dir)
