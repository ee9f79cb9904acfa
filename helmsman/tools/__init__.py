"""Tools package for Helmsman."""

from helmsman.config import Config, get_config
from helmsman.tools.registry import (
    Tool,
    ToolContext,
    ToolOutcome,
    ToolRegistry,
)
from helmsman.tools.command import ExecuteCommandTool
from helmsman.tools.read import ReadFileTool
from helmsman.tools.write import WriteToFileTool
from helmsman.tools.list_files import ListFilesTool
from helmsman.tools.search import SearchFilesTool
from helmsman.tools.followup import AskFollowupQuestionTool
from helmsman.tools.completion import AttemptCompletionTool


def create_default_registry(config: Config | None = None) -> ToolRegistry:
    """Build a registry holding every tool enabled in config."""
    cfg = config or get_config()
    command_tool = ExecuteCommandTool()
    available: list[Tool] = [
        command_tool,
        ReadFileTool(),
        WriteToFileTool(),
        ListFilesTool(),
        SearchFilesTool(),
        AskFollowupQuestionTool(),
        AttemptCompletionTool(command_tool),
    ]
    enabled = set(cfg.tools.enabled)
    registry = ToolRegistry()
    for tool in available:
        if tool.name in enabled:
            registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolContext",
    "ToolOutcome",
    "ToolRegistry",
    "create_default_registry",
    "ExecuteCommandTool",
    "ReadFileTool",
    "WriteToFileTool",
    "ListFilesTool",
    "SearchFilesTool",
    "AskFollowupQuestionTool",
    "AttemptCompletionTool",
]
