"""Incremental parsing of streamed assistant output into content blocks.

The model writes prose interleaved with XML-style tool invocations::

    I'll create the file.
    <write_to_file>
    <path>a.txt</path>
    <content>hi</content>
    </write_to_file>

``parse_assistant_message`` is a pure function of the text received so far.
It is re-run from scratch on every chunk, so a block that is still open at the
end of the buffer comes back with ``partial=True`` and may be rewritten by the
next parse.  Only tag names registered as tools open a tool block; anything
else is kept as literal text.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Literal

# Parameters whose values may legitimately contain their own closing tag
# (file bodies with embedded XML).  Their value spans from the first opening
# tag to the last closing tag inside the tool block.
LONG_VALUE_PARAMS: tuple[str, ...] = ("content",)

DEFAULT_TOOL_NAMES: tuple[str, ...] = (
    "execute_command",
    "read_file",
    "write_to_file",
    "list_files",
    "search_files",
    "ask_followup_question",
    "attempt_completion",
)

DEFAULT_PARAM_NAMES: tuple[str, ...] = (
    "command",
    "path",
    "content",
    "regex",
    "file_pattern",
    "recursive",
    "question",
    "result",
)

_THINKING_OPEN_RE = re.compile(r"<thinking>\s?")
_THINKING_CLOSE_RE = re.compile(r"\s?</thinking>")
_TAG_NAME_RE = re.compile(r"^[a-zA-Z_]+$")


@dataclass
class TextContent:
    """Prose outside any tool tag."""

    content: str
    partial: bool = True
    type: Literal["text"] = "text"


@dataclass
class ToolUse:
    """A tool invocation and the parameters closed so far."""

    name: str
    params: dict[str, str] = field(default_factory=dict)
    partial: bool = True
    type: Literal["tool_use"] = "tool_use"


ContentBlock = TextContent | ToolUse


def _ends_with(message: str, end: int, tag: str) -> bool:
    """Whether ``message[:end]`` ends with ``tag`` without slicing the buffer."""
    start = end - len(tag)
    return start >= 0 and message.startswith(tag, start)


def parse_assistant_message(
    message: str,
    tool_names: Iterable[str] = DEFAULT_TOOL_NAMES,
    param_names: Iterable[str] = DEFAULT_PARAM_NAMES,
) -> list[ContentBlock]:
    """Parse the full text received so far into an ordered block list.

    Args:
        message: Raw assistant text accumulated in the current turn
        tool_names: Tag names that open a tool block
        param_names: Tag names that open a parameter inside a tool block

    Returns:
        Blocks in stream order; the last block may be partial
    """
    tool_tags = [(name, f"<{name}>") for name in tool_names]
    param_tags = [(name, f"<{name}>") for name in param_names]

    blocks: list[ContentBlock] = []
    text: TextContent | None = None
    text_start = 0
    tool: ToolUse | None = None
    tool_start = 0
    param: str | None = None
    param_start = 0

    for i in range(len(message)):
        end = i + 1

        if tool is not None and param is not None:
            closing = f"</{param}>"
            if _ends_with(message, end, closing):
                tool.params[param] = message[param_start:end - len(closing)].strip()
                param = None
            continue

        if tool is not None:
            closing = f"</{tool.name}>"
            if _ends_with(message, end, closing):
                tool.partial = False
                blocks.append(tool)
                tool = None
                continue

            for name, opening in param_tags:
                if _ends_with(message, end, opening):
                    param = name
                    param_start = end
                    break

            for name in LONG_VALUE_PARAMS:
                if param is None and _ends_with(message, end, f"</{name}>"):
                    span = message[tool_start:end]
                    opening = f"<{name}>"
                    first = span.find(opening)
                    last = span.rfind(f"</{name}>")
                    if first != -1 and last > first:
                        tool.params[name] = span[first + len(opening):last].strip()
            continue

        started_tool = False
        for name, opening in tool_tags:
            if _ends_with(message, end, opening):
                tool = ToolUse(name=name)
                tool_start = end
                if text is not None:
                    # The text block picked up the opening tag minus its final '>'.
                    text.partial = False
                    text.content = text.content[: -(len(opening) - 1)].strip()
                    if text.content:
                        blocks.append(text)
                    text = None
                started_tool = True
                break

        if not started_tool:
            if text is None:
                text_start = i
            text = TextContent(content=message[text_start:end].strip())

    if tool is not None:
        if param is not None:
            tool.params[param] = message[param_start:].strip()
        blocks.append(tool)

    if text is not None:
        blocks.append(text)

    return blocks


def strip_reasoning_markup(content: str) -> str:
    """Remove <thinking> delimiters, keeping what was inside them."""
    content = _THINKING_OPEN_RE.sub("", content)
    return _THINKING_CLOSE_RE.sub("", content)


def strip_partial_tag(content: str) -> str:
    """Drop an unterminated tag fragment ("<", "</", "<write_to") at the tail."""
    index = content.rfind("<")
    if index == -1:
        return content
    possible_tag = content[index:]
    if ">" in possible_tag:
        return content
    if possible_tag.startswith("</"):
        tag_name = possible_tag[2:].strip()
    else:
        tag_name = possible_tag[1:].strip()
    if possible_tag in ("<", "</") or _TAG_NAME_RE.match(tag_name):
        return content[:index].strip()
    return content


def clean_text_for_display(content: str) -> str:
    """Text as it should be shown to the operator while it streams."""
    if not content:
        return content
    return strip_partial_tag(strip_reasoning_markup(content))


def remove_closing_tag(tag: str, text: str | None, partial: bool) -> str:
    """Strip a half-received ``</tag`` from the end of a streaming param value."""
    if not partial:
        return text or ""
    if not text:
        return ""
    optional_chars = "".join(f"(?:{re.escape(char)})?" for char in tag)
    return re.sub(rf"\s?</?{optional_chars}$", "", text)
