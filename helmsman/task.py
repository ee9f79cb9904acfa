"""A task and the loop that drives it one turn at a time.

Each turn sends the history to the provider, feeds the streamed text through
the parser into a fresh ``TurnPresenter`` and, once the presenter reports the
turn result ready, turns that result into the next user record.  The loop
stops when the completion tool is accepted or the task is aborted.
"""

import asyncio
import json
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

from helmsman import responses
from helmsman.assistant_message import parse_assistant_message
from helmsman.config import Config, get_config
from helmsman.exceptions import (
    LLMError,
    StreamInterruptedError,
    TaskAbortedError,
    TaskCreationError,
)
from helmsman.history import History, HistoryRecord, Part, TextPart, image_parts
from helmsman.instructions import InstructionLoader
from helmsman.llm import LLMProvider, StreamChunk, UsageChunk
from helmsman.logging import get_logger
from helmsman.message_bus import ApprovalSurface, AskResponseType, BusMessage, MessageBus
from helmsman.presenter import ExecutedTool, TurnPresenter, TurnResult
from helmsman.storage import TaskStore
from helmsman.tools.command import ExecuteCommandTool
from helmsman.tools.list_files import collect_paths
from helmsman.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)

RESUME_KINDS = ("resume_task", "resume_completed_task")
_ENV_FILE_LIMIT = 200


class TaskStatus(str, Enum):
    """Lifecycle of a task."""

    ACTIVE = "active"
    ABORTED = "aborted"
    COMPLETED = "completed"


def _format_ago(ts_ms: int) -> str:
    seconds = max(0, int(time.time() - ts_ms / 1000))
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size:
            count = seconds // size
            return f"{count} {unit}{'s' if count != 1 else ''} ago"
    return "just now"


async def _cancel_task(task: asyncio.Task[Any]) -> None:
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Stream read failed while cancelling", error=str(e))


async def _pull(stream: AsyncIterator[StreamChunk]) -> StreamChunk | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


def _request_usage(message: BusMessage | None) -> dict[str, Any]:
    if message is None or not message.text:
        return {}
    try:
        data = json.loads(message.text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


class Task:
    """One long-running unit of work driven turn by turn."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        task_id: str | None = None,
        config: Config | None = None,
        cwd: Path | str | None = None,
        store: TaskStore | None = None,
        surface: ApprovalSurface | None = None,
        records: list[HistoryRecord] | None = None,
        messages: list[BusMessage] | None = None,
        instructions: InstructionLoader | None = None,
    ):
        if provider is None or registry is None:
            raise TaskCreationError("A task needs a provider and a tool registry")

        self.id = task_id or str(uuid.uuid4())
        self.provider = provider
        self.registry = registry
        self.config = config or get_config()
        self.cwd = Path(cwd or Path.cwd()).expanduser().resolve()
        self.store = store
        self.instructions = instructions or InstructionLoader()
        self.status = TaskStatus.ACTIVE

        self.history = self._new_history(records)
        self.bus = MessageBus(
            self.id,
            surface=surface,
            on_change=self._save_messages if store else None,
            messages=messages,
        )
        self.abort_event = asyncio.Event()
        self.context = ToolContext(
            bus=self.bus,
            cwd=self.cwd,
            abort_event=self.abort_event,
            config=self.config,
        )

        self.consecutive_mistake_count = 0
        self.stall_count = 0
        self._last_executed: ExecutedTool | None = None

    def _new_history(self, records: list[HistoryRecord] | None) -> History:
        return History(
            records,
            on_change=self._save_history if self.store else None,
            reserve_tokens=self.config.context.reserve_tokens,
            max_usage_ratio=self.config.context.max_usage_ratio,
        )

    async def _save_history(self, records: list[HistoryRecord]) -> None:
        assert self.store is not None
        await self.store.save_history(self.id, records)

    async def _save_messages(self, messages: list[BusMessage]) -> None:
        assert self.store is not None
        await self.store.save_messages(self.id, messages)

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def context_window(self) -> int:
        configured = self.config.model.context_window
        if configured and configured > 0:
            return int(configured)
        reported = self.provider.get_model_info().context_window
        if reported and reported > 0:
            return int(reported)
        return self.config.resolved_context_window()

    async def abort(self) -> None:
        """Stop the task: unblock every wait and tear down the tools."""
        if self.abort_event.is_set():
            return
        log.info("Aborting task", task_id=self.id)
        self.abort_event.set()
        self.bus.abort()
        await self.registry.dispose_all()
        if self.status == TaskStatus.ACTIVE:
            self.status = TaskStatus.ABORTED

    async def start(self, text: str | None, images: list[str] | None = None) -> TaskStatus:
        """Begin a new task from the operator's request."""
        if not (text and text.strip()) and not images:
            raise TaskCreationError("A task needs a request text or images")

        log.info("Starting task", task_id=self.id)
        await self.bus.notify("text", text, images)
        content: list[Part] = [TextPart(f"<task>\n{text or ''}\n</task>"), *image_parts(images)]
        return await self._run(content, include_file_details=True)

    async def resume(self) -> TaskStatus:
        """Continue a task reconstructed from its stored history and messages."""
        messages = self.bus.messages
        while messages and messages[-1].type == "ask" and messages[-1].kind in RESUME_KINDS:
            messages.pop()
        last_ts = messages[-1].ts if messages else int(time.time() * 1000)
        was_completed = bool(messages) and messages[-1].kind == "completion_result"

        kind = "resume_completed_task" if was_completed else "resume_task"
        try:
            response = await self.bus.ask(kind)
        except TaskAbortedError:
            return self._finish_aborted()

        feedback_text: str | None = None
        feedback_images: list[str] = []
        if response is not None and response.response == AskResponseType.MESSAGE:
            feedback_text = response.text
            feedback_images = list(response.images)
            await self.bus.notify("user_feedback", feedback_text, feedback_images)

        records = self.history.records
        pending: list[Part] = []
        if records and records[-1].role == "user":
            # Fold the unanswered user turn into the resumption turn.
            pending = list(records[-1].content)
            self.history = self._new_history(records[:-1])

        note = responses.task_resumption(_format_ago(last_ts), self.cwd.as_posix(), was_completed)
        if feedback_text:
            note += responses.resumption_feedback(feedback_text)
        content: list[Part] = [*pending, TextPart(note), *image_parts(feedback_images)]

        log.info("Resuming task", task_id=self.id, records=len(self.history))
        return await self._run(content, include_file_details=False)

    def _finish_aborted(self) -> TaskStatus:
        self.status = TaskStatus.ABORTED
        return self.status

    async def _run(self, content: list[Part], include_file_details: bool) -> TaskStatus:
        try:
            while not self.aborted:
                result = await self._turn(content, include_file_details)
                include_file_details = False
                if result is None:
                    break
                if result.completed:
                    self.status = TaskStatus.COMPLETED
                    log.info("Task completed", task_id=self.id)
                    break
                content = result.content
        except TaskAbortedError:
            log.info("Task aborted while waiting", task_id=self.id)
            await self.bus.close_partial()
        except StreamInterruptedError:
            self.status = TaskStatus.ABORTED
            raise
        finally:
            if self.aborted and self.status != TaskStatus.COMPLETED:
                self.status = TaskStatus.ABORTED
            if self.store is not None:
                await self.store.set_status(self.id, self.status.value)
        return self.status

    async def _check_limits(self, content: list[Part]) -> list[Part]:
        limits = self.config.task
        if (
            self.consecutive_mistake_count < limits.mistake_limit
            and self.stall_count < limits.stall_limit
        ):
            return content

        log.warning(
            "Task is not making progress",
            task_id=self.id,
            mistakes=self.consecutive_mistake_count,
            stalls=self.stall_count,
        )
        response = await self.bus.ask(
            "mistake_limit_reached",
            "The model keeps failing to make progress. You can give guidance or let it proceed.",
        )
        feedback = None
        images: list[str] = []
        if response is not None and response.response == AskResponseType.MESSAGE:
            feedback = response.text
            images = list(response.images)
        self.consecutive_mistake_count = 0
        self.stall_count = 0
        return [*content, TextPart(responses.too_many_mistakes(feedback)), *image_parts(images)]

    async def _environment_details(self, include_file_details: bool) -> str:
        details = "<environment_details>"
        if self.registry.has_tool("execute_command"):
            command_tool = self.registry.get("execute_command")
            if isinstance(command_tool, ExecuteCommandTool) and command_tool.running:
                details += "\n\n# Actively Running Commands\nA previously started command is still running."
        if include_file_details:
            entries, truncated = await asyncio.to_thread(collect_paths, self.cwd, True, _ENV_FILE_LIMIT)
            details += f"\n\n# Current Working Directory ({self.cwd.as_posix()}) Files\n"
            details += "\n".join(entries) if entries else "(No files found)"
            if truncated:
                details += "\n(File list truncated.)"
        return details + "\n</environment_details>"

    async def _truncate_for(self, previous: BusMessage | None) -> None:
        usage = _request_usage(previous)
        if not usage:
            return
        await self.history.truncate_if_over_budget(
            int(usage.get("tokensIn") or 0),
            int(usage.get("tokensOut") or 0),
            int(usage.get("cacheWrites") or 0),
            int(usage.get("cacheReads") or 0),
            self.context_window(),
        )

    async def _next_chunk(self, stream: AsyncIterator[StreamChunk]) -> StreamChunk | None:
        """Wait for the next chunk or the abort signal, whichever comes first.

        Returns:
            The chunk, or None once the stream ended or the task was aborted
        """
        if self.aborted:
            return None
        pull_task = asyncio.create_task(_pull(stream))
        abort_wait_task = asyncio.create_task(self.abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {pull_task, abort_wait_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if pull_task in done:
                return pull_task.result()
            log.info("Abort observed mid-stream", task_id=self.id)
            return None
        finally:
            await _cancel_task(pull_task)
            await _cancel_task(abort_wait_task)

    async def _turn(self, content: list[Part], include_file_details: bool) -> TurnResult | None:
        """Run one provider request and present its output.

        Returns:
            The turn result, or None when the task was aborted
        """
        if self.aborted:
            raise TaskAbortedError(self.id)

        content = await self._check_limits(content)
        previous_request = self.bus.find_last("api_req_started")

        details = await self._environment_details(include_file_details)
        user_content = [*content, TextPart(details)]
        request_text = "\n\n".join(part.text for part in user_content if isinstance(part, TextPart))
        info: dict[str, Any] = {"request": request_text}
        await self.bus.notify("api_req_started", json.dumps(info))
        request_message = self.bus.find_last("api_req_started")

        await self.history.append(HistoryRecord(role="user", content=user_content))
        await self._truncate_for(previous_request)

        system_prompt = self.instructions.system_prompt(
            self.cwd,
            self.registry.usage_text(),
            self.config.task.custom_instructions,
        )
        presenter = TurnPresenter(
            self.registry,
            self.context,
            always_allow_read_only=self.config.task.always_allow_read_only,
        )
        tool_names = self.registry.list_tools()
        param_names = self.registry.param_names()

        assistant_text = ""
        usage = UsageChunk()
        cost: float | None = None
        stream = self.provider.stream_turn(system_prompt, self.history.records)
        try:
            while True:
                chunk = await self._next_chunk(stream)
                if chunk is None:
                    break
                if isinstance(chunk, UsageChunk):
                    usage.input_tokens += chunk.input_tokens
                    usage.output_tokens += chunk.output_tokens
                    usage.cache_write_tokens += chunk.cache_write_tokens
                    usage.cache_read_tokens += chunk.cache_read_tokens
                    if chunk.total_cost is not None:
                        cost = chunk.total_cost
                    continue
                if not chunk.text:
                    continue

                assistant_text += chunk.text
                presenter.update_blocks(parse_assistant_message(assistant_text, tool_names, param_names))
                presenter.schedule()
                await asyncio.sleep(0)

                if self.aborted:
                    break
                if presenter.did_reject_tool:
                    break
                if presenter.did_use_tool:
                    assistant_text += responses.INTERRUPTED_BY_TOOL
                    break
        except LLMError as e:
            log.error("Provider stream failed", task_id=self.id, error=str(e))
            await self._interrupt(presenter, request_message, info, "streaming_failed", assistant_text, str(e))
            await self.bus.notify("error", f"API request failed:\n{e}")
            raise StreamInterruptedError(str(e), assistant_text) from e
        except asyncio.CancelledError:
            await self._interrupt(presenter, request_message, info, "user_cancelled", assistant_text)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.aborted:
            await self._interrupt(presenter, request_message, info, "user_cancelled", assistant_text)
            return None

        presenter.mark_stream_complete()

        if cost is None:
            cost = self.provider.get_model_info().calculate_cost(
                usage.input_tokens,
                usage.output_tokens,
                usage.cache_write_tokens,
                usage.cache_read_tokens,
            )
        info.update(
            tokensIn=usage.input_tokens,
            tokensOut=usage.output_tokens,
            cacheWrites=usage.cache_write_tokens,
            cacheReads=usage.cache_read_tokens,
            cost=cost,
        )
        if request_message is not None:
            await self.bus.update_text(request_message, json.dumps(info))

        if not assistant_text:
            await presenter.close()
            await self.bus.notify(
                "error",
                "Unexpected API Response: The language model did not provide any assistant messages.",
            )
            await self.history.append(HistoryRecord.assistant(responses.EMPTY_RESPONSE))
            self.consecutive_mistake_count += 1
            self.stall_count += 1
            return TurnResult(content=[TextPart(responses.no_tools_used())])

        await self.history.append(HistoryRecord.assistant(assistant_text))
        result = await presenter.wait_ready()
        self._apply_policy(result, presenter.did_use_tool, presenter.did_reject_tool)
        return result

    def _apply_policy(self, result: TurnResult, used_tool: bool, rejected: bool) -> None:
        if result.valid_tool_call:
            self.consecutive_mistake_count = 0
        self.consecutive_mistake_count += result.missing_param_count

        if not used_tool:
            result.content.append(TextPart(responses.no_tools_used()))
            self.consecutive_mistake_count += 1

        executed = result.executed_tool
        if executed is None:
            if not rejected:
                self.stall_count += 1
        elif self._last_executed is not None and executed == self._last_executed:
            self.stall_count += 1
        else:
            self.stall_count = 0
        if executed is not None:
            self._last_executed = executed

        log.debug(
            "Turn finished",
            task_id=self.id,
            used_tool=used_tool,
            executed=executed.name if executed else None,
            mistakes=self.consecutive_mistake_count,
            stalls=self.stall_count,
        )

    async def _interrupt(
        self,
        presenter: TurnPresenter,
        request_message: BusMessage | None,
        info: dict[str, Any],
        reason: str,
        assistant_text: str,
        error: str | None = None,
    ) -> None:
        """Force-finalize a turn whose stream did not finish."""
        await presenter.close()
        await self.bus.close_partial()
        info["cancelReason"] = reason
        if error is not None:
            info["streamingFailedMessage"] = error
        if request_message is not None:
            await self.bus.update_text(request_message, json.dumps(info))

        marker = responses.INTERRUPTED_BY_USER if reason == "user_cancelled" else responses.INTERRUPTED_BY_API_ERROR
        text = f"{assistant_text}\n\n{marker}" if assistant_text else marker
        await self.history.append(HistoryRecord.assistant(text))
