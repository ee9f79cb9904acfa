"""Regex search across files in a directory."""

import asyncio
import fnmatch
import re
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.list_files import IGNORED_DIRS
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)

_MAX_LINE_CHARS = 500


def _iter_files(root: Path, file_pattern: str):
    for path in sorted(root.rglob("*")):
        if any(part in IGNORED_DIRS for part in path.relative_to(root).parts[:-1]):
            continue
        if path.is_file() and fnmatch.fnmatch(path.name, file_pattern):
            yield path


def search_directory(
    root: Path,
    pattern: re.Pattern[str],
    file_pattern: str,
    max_results: int,
) -> tuple[list[tuple[str, list[tuple[int, str, bool]]]], int]:
    """Find matching lines with one line of context on each side.

    Returns:
        ([(relative path, [(line number, text, is_match)])], total match count)
    """
    grouped: list[tuple[str, list[tuple[int, str, bool]]]] = []
    count = 0
    for path in _iter_files(root, file_pattern):
        try:
            raw = path.read_bytes()
        except OSError:
            continue
        if b"\x00" in raw[:8192]:
            continue
        lines = raw.decode("utf-8", errors="replace").splitlines()
        hits: dict[int, bool] = {}
        for index, line in enumerate(lines):
            if count >= max_results:
                break
            if pattern.search(line):
                count += 1
                for neighbour in (index - 1, index, index + 1):
                    if 0 <= neighbour < len(lines):
                        hits[neighbour] = hits.get(neighbour, False) or neighbour == index
        if hits:
            rows = [(i + 1, lines[i][:_MAX_LINE_CHARS], hits[i]) for i in sorted(hits)]
            grouped.append((path.relative_to(root).as_posix(), rows))
        if count >= max_results:
            break
    return grouped, count


def format_results(grouped: list[tuple[str, list[tuple[int, str, bool]]]], count: int, max_results: int) -> str:
    if count == 0:
        return "Found 0 results."
    header = f"Found {count} result{'s' if count != 1 else ''}."
    if count >= max_results:
        header = f"Showing first {max_results} of {max_results}+ results. Use a more specific search if necessary."
    out = [header, ""]
    for relative, rows in grouped:
        out.append(relative)
        out.append("│----")
        previous = None
        for number, text, _ in rows:
            if previous is not None and number != previous + 1:
                out.append("│----")
            out.append(f"│{text}")
            previous = number
        out.append("│----")
        out.append("")
    return "\n".join(out).rstrip()


class SearchFilesTool(Tool):
    """Search file contents with a regular expression."""

    name = "search_files"
    description = (
        "Perform a regex search across files in a specified directory, providing "
        "context-rich results. Each match is shown with its surrounding lines."
    )
    read_only = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path of the directory to search in (relative to the current working directory). Searched recursively.",
            },
            "regex": {
                "type": "string",
                "description": "The regular expression pattern to search for (Python syntax)",
            },
            "file_pattern": {
                "type": "string",
                "description": "Glob pattern to filter files (e.g. '*.py'). Defaults to all files.",
            },
        },
        "required": ["path", "regex"],
    }

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('regex', '')}' in '{params.get('path', '')}']"

    async def execute(
        self,
        context: ToolContext,
        path: str = "",
        regex: str = "",
        file_pattern: str | None = None,
        **kwargs: Any,
    ) -> ToolOutcome:
        directory = context.resolve_path(path)
        if not directory.is_dir():
            return ToolOutcome(success=False, error=f"Not a directory: {path}")
        try:
            pattern = re.compile(regex)
        except re.error as e:
            return ToolOutcome(success=False, error=f"Invalid regex '{regex}': {e}")

        max_results = max(1, int(context.config.tools.search_max_results))
        grouped, count = await asyncio.to_thread(
            search_directory,
            directory,
            pattern,
            (file_pattern or "*").strip() or "*",
            max_results,
        )
        log.debug("Searched files", path=str(directory), regex=regex, matches=count)
        return ToolOutcome(content=format_results(grouped, count, max_results))
