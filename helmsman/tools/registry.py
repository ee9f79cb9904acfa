"""Tool registry and base tool class."""

import asyncio
import dataclasses
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

from helmsman.assistant_message import remove_closing_tag
from helmsman.config import Config, get_config
from helmsman.exceptions import AskError, ToolExecutionError, ToolNotFoundError
from helmsman.logging import get_logger
from helmsman.message_bus import MessageBus

log = get_logger(__name__)


class ToolOutcome(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None
    images: list[str] = Field(default_factory=list)
    user_rejected: bool = False
    completed: bool = False

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolOutcome":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


@dataclass
class ToolContext:
    """What a running tool may touch besides its parameters."""

    bus: MessageBus
    cwd: Path
    abort_event: asyncio.Event
    config: Config = dataclasses.field(default_factory=get_config)

    def resolve_path(self, path: str) -> Path:
        return (self.cwd / Path(path).expanduser()).resolve()

    def relative_path(self, path: Path | str) -> str:
        target = Path(path)
        try:
            return target.resolve().relative_to(self.cwd.resolve()).as_posix()
        except ValueError:
            return target.as_posix()


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = 30.0
    # Read-only tools may skip approval when the operator allows it.
    read_only: bool = False
    # Tools that talk to the operator themselves are not gated by the presenter.
    requires_approval: bool = True
    approval_kind: str = "tool"

    @abstractmethod
    async def execute(self, context: ToolContext, **kwargs: Any) -> ToolOutcome:
        """Execute the tool.

        Args:
            context: Bus, working directory and abort signal for this call
            **kwargs: Tool-specific string parameters

        Returns:
            ToolOutcome with success status and content
        """
        pass

    @property
    def param_names(self) -> list[str]:
        return list(self.parameters.get("properties", {}).keys())

    def validate(self, params: dict[str, str]) -> str | None:
        """Return the first required parameter with no value, if any."""
        for field in self.parameters.get("required", []):
            if not str(params.get(field) or "").strip():
                return field
        return None

    def describe(self, params: dict[str, str]) -> str:
        """Short label used to frame this call's result for the model."""
        return f"[{self.name}]"

    def format_prompt(self, params: dict[str, str], partial: bool) -> str:
        """Text shown to the operator for this call, possibly while it streams."""
        shown = {
            key: remove_closing_tag(key, params.get(key), partial)
            for key in self.param_names
            if key in params
        }
        return json.dumps({"tool": self.name, **shown})

    async def present_partial(self, params: dict[str, str], context: ToolContext, auto_approved: bool) -> None:
        """Render a provisional prompt while the call is still streaming."""
        text = self.format_prompt(params, partial=True)
        if auto_approved:
            await context.bus.notify("tool", text, partial=True)
        else:
            await context.bus.ask(self.approval_kind, text, partial=True)

    def usage_text(self) -> str:
        """Markdown section describing the tool and its XML call format."""
        required = set(self.parameters.get("required", []))
        lines = [f"## {self.name}", f"Description: {self.description}", "Parameters:"]
        for key, schema in self.parameters.get("properties", {}).items():
            flag = "required" if key in required else "optional"
            lines.append(f"- {key}: ({flag}) {schema.get('description', '')}")
        lines.append("Usage:")
        lines.append(f"<{self.name}>")
        for key in self.param_names:
            lines.append(f"<{key}>{key} here</{key}>")
        lines.append(f"</{self.name}>")
        return "\n".join(lines)

    async def dispose(self) -> None:
        """Release resources held across calls (processes, handles)."""
        return None


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def param_names(self) -> list[str]:
        """Every parameter tag any registered tool accepts."""
        names: list[str] = []
        for tool in self._tools.values():
            for key in tool.param_names:
                if key not in names:
                    names.append(key)
        return names

    def usage_text(self) -> str:
        return "\n\n".join(tool.usage_text() for tool in self._tools.values())

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            pass

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror the task abort event to the per-call tool abort event."""
        await source.wait()
        target.set()

    async def dispatch(self, name: str, params: dict[str, str], context: ToolContext) -> ToolOutcome:
        """Execute a tool by name.

        Args:
            name: Tool name
            params: Parsed tool parameters
            context: Execution context; its abort event cancels the call

        Returns:
            ToolOutcome from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
            AskError if an operator prompt inside the tool was superseded or aborted
        """
        tool = self.get(name)

        execute_task: asyncio.Task[ToolOutcome] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        call_context = dataclasses.replace(context, abort_event=tool_abort_event)
        try:
            log.info("Executing tool", tool=name, params=list(params.keys()))
            timeout_seconds = tool.timeout_seconds
            if timeout_seconds is not None:
                timeout_seconds = max(1.0, float(timeout_seconds))

            if context.abort_event.is_set():
                raise ToolExecutionError(name, "Execution aborted")
            bridge_task = asyncio.create_task(
                self._bridge_abort_event(context.abort_event, tool_abort_event)
            )

            execute_task = asyncio.create_task(tool.execute(call_context, **params))
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolOutcome):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except (ToolExecutionError, AskError):
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)

    async def dispose_all(self) -> None:
        """Tear down every registered tool."""
        for tool in self._tools.values():
            try:
                await tool.dispose()
            except Exception as e:
                log.warning("Tool teardown failed", tool=tool.name, error=str(e))
