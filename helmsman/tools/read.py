"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = (
        "Read the contents of a file at the specified path. Use this when you "
        "need to examine the contents of an existing file, for example to "
        "analyze code or review text files."
    )
    read_only = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path of the file to read (relative to the current working directory)",
            },
        },
        "required": ["path"],
    }

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('path', '')}']"

    @staticmethod
    def _read(file_path: Path, max_bytes: int) -> tuple[bytes, int]:
        size = file_path.stat().st_size
        with open(file_path, "rb") as f:
            data = f.read(max_bytes)
        return data, size

    async def execute(self, context: ToolContext, path: str = "", **kwargs: Any) -> ToolOutcome:
        """Read a file.

        Args:
            path: Path to file, relative to the task's working directory

        Returns:
            ToolOutcome with file contents
        """
        file_path = context.resolve_path(path)
        if not file_path.exists():
            return ToolOutcome(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolOutcome(success=False, error=f"Not a file: {path}")

        max_bytes = max(1, int(context.config.tools.read_max_bytes))
        try:
            data, size = await asyncio.to_thread(self._read, file_path, max_bytes)
        except OSError as e:
            log.error("Failed to read file", path=str(file_path), error=str(e))
            return ToolOutcome(success=False, error=str(e))

        if b"\x00" in data[:8192]:
            return ToolOutcome(success=False, error=f"Cannot read binary file: {path}")

        content = data.decode("utf-8", errors="replace")
        if size > max_bytes:
            content += f"\n... [truncated, {size} total bytes]"

        log.debug("Read file", path=str(file_path), size=size)
        return ToolOutcome(content=content)
