"""Load and render the system prompt templates shipped with the package.

Supports a two-layer override system:
  1. Personal overrides in ``~/.helmsman/prompts/`` (highest priority)
  2. Package defaults in ``helmsman/prompts/``
"""

from __future__ import annotations

import os
import platform
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.helmsman/prompts").expanduser()
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"
CUSTOM_INSTRUCTIONS_TEMPLATE = "custom_instructions.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render prompt templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("HELMSMAN_PROMPTS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Prompt template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))

    def system_prompt(self, cwd: Path, tool_usage: str, custom_instructions: str = "") -> str:
        """Full system prompt for one provider call."""
        prompt = self.render(
            SYSTEM_PROMPT_TEMPLATE,
            cwd=cwd.as_posix(),
            tool_usage=tool_usage,
            os_name=platform.system() or "unknown",
            shell=os.environ.get("SHELL", "sh"),
            home=Path.home().as_posix(),
        )
        if custom_instructions and custom_instructions.strip():
            prompt += "\n\n" + self.render(
                CUSTOM_INSTRUCTIONS_TEMPLATE,
                custom_instructions=custom_instructions.strip(),
            )
        return prompt
