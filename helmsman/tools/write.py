"""Write tool for writing file contents."""

import asyncio
import json
import re
from pathlib import Path
from typing import Any

from helmsman.assistant_message import remove_closing_tag
from helmsman.logging import get_logger
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)

_FENCE_OPEN_RE = re.compile(r"^```[^\n]*\n")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def sanitize_content(content: str) -> str:
    """Undo formatting artifacts models wrap around file bodies.

    Strips an enclosing Markdown code fence and unescapes ``&gt;``, ``&lt;``
    and ``&quot;``.
    """
    if content.startswith("```"):
        content = _FENCE_OPEN_RE.sub("", content, count=1)
    if content.rstrip().endswith("```"):
        content = _FENCE_CLOSE_RE.sub("", content, count=1)
    if "&gt;" in content or "&lt;" in content or "&quot;" in content:
        content = content.replace("&gt;", ">").replace("&lt;", "<").replace("&quot;", '"')
    return content


class WriteToFileTool(Tool):
    """Create or overwrite files."""

    name = "write_to_file"
    description = (
        "Write content to a file at the specified path. If the file exists, it "
        "will be overwritten with the provided content. If the file doesn't "
        "exist, it will be created. Missing directories are created as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "The path of the file to write to (relative to the current working directory)",
            },
            "content": {
                "type": "string",
                "description": "The complete intended content of the file, without truncation or omissions",
            },
        },
        "required": ["path", "content"],
    }

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('path', '')}']"

    def format_prompt(self, params: dict[str, str], partial: bool) -> str:
        content = params.get("content")
        if content is not None:
            content = sanitize_content(remove_closing_tag("content", content, partial))
        return json.dumps(
            {
                "tool": self.name,
                "path": remove_closing_tag("path", params.get("path"), partial),
                "content": content or "",
            }
        )

    @staticmethod
    def _write(file_path: Path, content: str) -> bool:
        existed = file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return existed

    async def execute(self, context: ToolContext, path: str = "", content: str = "", **kwargs: Any) -> ToolOutcome:
        """Write ``content`` to ``path`` after sanitising it."""
        file_path = context.resolve_path(path)
        if file_path.exists() and file_path.is_dir():
            return ToolOutcome(success=False, error=f"Path is a directory: {path}")

        body = sanitize_content(content)
        if body and not body.endswith("\n"):
            body += "\n"

        try:
            existed = await asyncio.to_thread(self._write, file_path, body)
        except OSError as e:
            log.error("Failed to write file", path=str(file_path), error=str(e))
            return ToolOutcome(success=False, error=str(e))

        log.info("Wrote file", path=str(file_path), chars=len(body), overwritten=existed)
        return ToolOutcome(content=f"The content was successfully saved to {context.relative_path(file_path)}.")
