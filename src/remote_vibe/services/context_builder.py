from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from ..core.errors import ContextRetrievalFailed
from ..domain.session_models import CommandContext


logger = logging.getLogger(__name__)

_SKIP_DIRS = {"node_modules", "__pycache__", ".git", ".venv", "venv"}


class WorkspaceContextBuilder:
    """Read-only text retrieval over a session's repository working tree.

    Produces markdown blocks appended to the system prompt: a project structure
    listing and/or the contents of named files.
    """

    def __init__(self, max_depth: int = 3, max_listing: int = 50, max_file_chars: int = 20000) -> None:
        self.max_depth = max_depth
        self.max_listing = max_listing
        self.max_file_chars = max_file_chars

    async def build_context(self, repository: str, context: Optional[CommandContext] = None) -> str:
        if context is None or not (context.include_workspace or context.include_files):
            return ""
        try:
            return await asyncio.to_thread(self._build, repository, context)
        except ContextRetrievalFailed:
            raise
        except OSError as exc:
            raise ContextRetrievalFailed(f"Unable to read repository context: {exc}", {"repository": repository}) from exc

    def _build(self, repository: str, context: CommandContext) -> str:
        root = Path(repository).expanduser()
        if not root.is_dir():
            raise ContextRetrievalFailed("Repository path is not a readable directory", {"repository": repository})
        text = ""
        if context.include_workspace:
            text += self._workspace_block(root, repository)
        if context.include_files:
            text += self._files_block(root, context.include_files)
        return text

    def _workspace_block(self, root: Path, repository: str) -> str:
        files = self.list_files(root)
        block = f"\n## Workspace Context\nRepository: {repository}\n\n### Project Structure:\n"
        block += "\n".join(files[: self.max_listing]) + "\n\n"
        return block

    def _files_block(self, root: Path, names: List[str]) -> str:
        block = "\n## Relevant Files\n\n"
        for name in names:
            path = Path(name)
            if not path.is_absolute():
                path = root / name
            if not path.is_file():
                logger.debug("Skipping missing context file %s", path)
                continue
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                block += f"### {name}\n(Unable to read file)\n\n"
                continue
            if len(content) > self.max_file_chars:
                content = content[: self.max_file_chars] + "\n… (truncated)"
            block += f"### {name}\n```\n{content}\n```\n\n"
        return block

    def list_files(self, root: Path) -> List[str]:
        files: List[str] = []

        def walk(directory: Path, depth: int) -> None:
            if depth > self.max_depth:
                return
            try:
                entries = sorted(directory.iterdir(), key=lambda p: p.name)
            except OSError:
                return
            for entry in entries:
                if entry.name.startswith(".") or entry.name in _SKIP_DIRS:
                    continue
                if entry.is_dir():
                    walk(entry, depth + 1)
                else:
                    files.append(entry.relative_to(root).as_posix())

        walk(root, 0)
        return files
