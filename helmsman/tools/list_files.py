"""List files in a directory, optionally recursively."""

import asyncio
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)

IGNORED_DIRS = {
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "__pycache__",
    "node_modules",
    ".mypy_cache",
    ".pytest_cache",
    ".tox",
    "dist",
    "build",
}


def _is_true(value: str | None) -> bool:
    return str(value or "").strip().lower() in {"true", "1", "yes"}


def collect_paths(root: Path, recursive: bool, limit: int) -> tuple[list[str], bool]:
    """Breadth-first listing of ``root``; directories end with '/'.

    Returns:
        (entries relative to root, whether the limit cut the listing short)
    """
    entries: list[str] = []
    queue: list[Path] = [root]
    while queue:
        current = queue.pop(0)
        try:
            children = sorted(current.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        except OSError as e:
            log.debug("Skipping unreadable directory", path=str(current), error=str(e))
            continue
        for child in children:
            if len(entries) >= limit:
                return entries, True
            relative = child.relative_to(root).as_posix()
            if child.is_dir():
                entries.append(relative + "/")
                if recursive and child.name not in IGNORED_DIRS and not child.is_symlink():
                    queue.append(child)
            else:
                entries.append(relative)
    return entries, False


class ListFilesTool(Tool):
    """List directory contents."""

    name = "list_files"
    description = (
        "List files and directories within the specified directory. If "
        "recursive is true, it will list all files and directories recursively. "
        "If recursive is false or not provided, it will only list the top-level contents."
    )
    read_only = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path of the directory to list contents for (relative to the current working directory)",
            },
            "recursive": {
                "type": "string",
                "description": "Whether to list files recursively. Use true for recursive listing, false or omit for top-level only.",
            },
        },
        "required": ["path"],
    }

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('path', '')}']"

    async def execute(
        self,
        context: ToolContext,
        path: str = "",
        recursive: str | None = None,
        **kwargs: Any,
    ) -> ToolOutcome:
        directory = context.resolve_path(path)
        if not directory.is_dir():
            return ToolOutcome(success=False, error=f"Not a directory: {path}")

        limit = max(1, int(context.config.tools.list_limit))
        entries, truncated = await asyncio.to_thread(collect_paths, directory, _is_true(recursive), limit)
        if not entries:
            return ToolOutcome(content="No files found.")

        content = "\n".join(entries)
        if truncated:
            content += (
                "\n\n(File list truncated. Use list_files on specific subdirectories "
                "if you need to explore further.)"
            )
        return ToolOutcome(content=content)
