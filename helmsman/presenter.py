"""Turn presenter: walks the parsed blocks of one turn and acts on each once.

``present`` is re-entered from two directions: every new stream chunk
schedules a pass, and every finished block drains straight into the next
one.  A lock flag serialises those passes; a pass that finds the lock taken
only records that an update is pending, and the holder re-runs once when it
releases.  Blocks are handled strictly in stream order.
"""

import asyncio
import copy
from dataclasses import dataclass, field

from helmsman import responses
from helmsman.assistant_message import (
    ContentBlock,
    TextContent,
    ToolUse,
    clean_text_for_display,
    strip_reasoning_markup,
)
from helmsman.exceptions import AskIgnoredError, TaskAbortedError, ToolError
from helmsman.history import ImagePart, Part, TextPart
from helmsman.logging import get_logger
from helmsman.message_bus import AskResponseType
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome, ToolRegistry

log = get_logger(__name__)


@dataclass
class ExecutedTool:
    """The one tool call a turn actually ran."""

    name: str
    params: dict[str, str]


@dataclass
class TurnResult:
    """What the turn hands back to the task loop as the next user content."""

    content: list[Part] = field(default_factory=list)
    missing_param_count: int = 0
    valid_tool_call: bool = False
    executed_tool: ExecutedTool | None = None
    completed: bool = False

    @property
    def text(self) -> str:
        return "\n\n".join(part.text for part in self.content if isinstance(part, TextPart))


class TurnPresenter:
    """Per-turn state machine over the block sequence of one assistant turn."""

    def __init__(
        self,
        registry: ToolRegistry,
        context: ToolContext,
        always_allow_read_only: bool = False,
    ):
        self.registry = registry
        self.context = context
        self.bus = context.bus
        self.always_allow_read_only = always_allow_read_only

        self.blocks: list[ContentBlock] = []
        self.current_index = 0
        self.did_reject_tool = False
        self.did_use_tool = False
        self.stream_complete = False
        self.result = TurnResult()

        self._locked = False
        self._pending_update = False
        self._ready = asyncio.Event()
        self._error: BaseException | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def update_blocks(self, blocks: list[ContentBlock]) -> None:
        """Replace the known block sequence with a fresh parse of the stream."""
        self.blocks = blocks

    def schedule(self) -> None:
        """Start a presentation pass without waiting for it."""
        task = asyncio.create_task(self.present())
        self._tasks.add(task)
        task.add_done_callback(self._on_pass_done)

    def _on_pass_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and self._error is None:
            log.debug("Presentation failed", error=str(error))
            self._error = error
            self._ready.set()

    def mark_stream_complete(self) -> None:
        """The stream ended: every block is final, so present what is left."""
        self.stream_complete = True
        for block in self.blocks:
            block.partial = False
        self.schedule()

    async def wait_ready(self) -> TurnResult:
        """Wait until every block was presented; re-raise a failed pass."""
        await self._ready.wait()
        if self._error is not None:
            raise self._error
        return self.result

    async def close(self) -> None:
        """Cancel passes still in flight."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _mark_ready(self) -> None:
        if not self._ready.is_set():
            self._ready.set()

    async def present(self) -> None:
        if self.context.abort_event.is_set():
            raise TaskAbortedError(self.bus.task_id)

        if self._locked:
            self._pending_update = True
            return
        self._locked = True
        self._pending_update = False

        if self.current_index >= len(self.blocks):
            if self.stream_complete:
                self._mark_ready()
            self._locked = False
            return

        # Later parses replace self.blocks; work on a private copy.
        block = copy.deepcopy(self.blocks[self.current_index])

        try:
            if self.did_reject_tool:
                if isinstance(block, ToolUse):
                    self._push_text(responses.skipped_after_rejection(self._describe(block), block.partial))
            elif self.did_use_tool:
                if isinstance(block, ToolUse):
                    self._push_text(responses.one_tool_per_message(block.name))
            elif isinstance(block, TextContent):
                await self._present_text(block)
            else:
                await self._present_tool(block)
        finally:
            self._locked = False

        if not block.partial or self.did_reject_tool or self.did_use_tool:
            if self.current_index == len(self.blocks) - 1 and self.stream_complete:
                self._mark_ready()
            self.current_index += 1
            if self.current_index < len(self.blocks):
                await self.present()
                return

        if self._pending_update:
            await self.present()

    def _describe(self, block: ToolUse) -> str:
        if self.registry.has_tool(block.name):
            return self.registry.get(block.name).describe(block.params)
        return f"[{block.name}]"

    def _push_text(self, text: str) -> None:
        self.result.content.append(TextPart(text))

    def _push_tool_result(self, description: str, content: str, images: list[str] | None = None) -> None:
        self.result.content.append(TextPart(f"{description} Result:"))
        self.result.content.append(TextPart(content or responses.NO_RESULT))
        for image in images or []:
            self.result.content.append(ImagePart(data=image))
        self.did_use_tool = True

    async def _present_text(self, block: TextContent) -> None:
        if block.partial:
            content = clean_text_for_display(block.content)
        else:
            content = strip_reasoning_markup(block.content)
        if not content and block.partial:
            return
        await self.bus.notify("text", content, partial=block.partial)

    def _auto_approved(self, tool: Tool) -> bool:
        return tool.read_only and self.always_allow_read_only

    async def _present_tool(self, block: ToolUse) -> None:
        description = self._describe(block)
        try:
            tool = self.registry.get(block.name)
        except ToolError as e:
            await self.bus.notify("error", str(e))
            self._push_tool_result(description, responses.tool_error(str(e)))
            return

        if block.partial:
            try:
                await tool.present_partial(block.params, self.context, self._auto_approved(tool))
            except AskIgnoredError:
                pass
            return

        missing = tool.validate(block.params)
        if missing is not None:
            self.result.missing_param_count += 1
            await self.bus.notify(
                "error",
                responses.missing_parameter_notice(block.name, missing, block.params.get("path")),
            )
            self._push_tool_result(description, responses.tool_error(responses.missing_parameter(missing)))
            return

        self.result.valid_tool_call = True

        if tool.requires_approval and not await self._request_approval(tool, block, description):
            return

        try:
            outcome = await self.registry.dispatch(block.name, block.params, self.context)
        except (ToolError, AskIgnoredError) as e:
            log.warning("Tool call failed", tool=block.name, error=str(e))
            await self.bus.notify("error", f"Error executing {description}:\n{e}")
            self._push_tool_result(description, responses.tool_error(str(e)))
            return

        await self._record_outcome(block, description, outcome)

    async def _request_approval(self, tool: Tool, block: ToolUse, description: str) -> bool:
        text = tool.format_prompt(block.params, partial=False)
        if self._auto_approved(tool):
            await self.bus.notify("tool", text, partial=False)
            return True

        try:
            response = await self.bus.ask(tool.approval_kind, text, partial=False)
        except AskIgnoredError:
            log.debug("Approval prompt superseded", tool=block.name)
            self._push_tool_result(description, responses.tool_denied())
            self.did_reject_tool = True
            return False

        if response is not None and response.response == AskResponseType.APPROVED:
            return True

        if response is not None and response.text:
            await self.bus.notify("user_feedback", response.text, response.images)
            self._push_tool_result(
                description,
                responses.tool_denied_with_feedback(response.text),
                response.images,
            )
        else:
            self._push_tool_result(description, responses.tool_denied())
        self.did_reject_tool = True
        return False

    async def _record_outcome(self, block: ToolUse, description: str, outcome: ToolOutcome) -> None:
        self.result.executed_tool = ExecutedTool(name=block.name, params=dict(block.params))
        if outcome.completed:
            self.result.completed = True
        if outcome.user_rejected:
            self.did_reject_tool = True

        if outcome.success:
            self._push_tool_result(description, outcome.content, outcome.images)
        else:
            await self.bus.notify("error", f"Error executing {description}:\n{outcome.error}")
            self._push_tool_result(description, responses.tool_error(outcome.error), outcome.images)
