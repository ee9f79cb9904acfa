"""Command tool: run a shell command and stream its output to the operator."""

import asyncio
import os
from typing import Any

from helmsman.assistant_message import remove_closing_tag
from helmsman.exceptions import AskError
from helmsman.logging import get_logger
from helmsman.message_bus import AskResponse, AskResponseType
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)

_MAX_OUTPUT_CHARS = 10_000


class ExecuteCommandTool(Tool):
    """Execute shell commands in the task's working directory.

    The first output line is posed to the operator as a ``command_output``
    prompt; later lines are plain notifications.  Answering that prompt lets
    the command keep running in the background while the task moves on.
    """

    name = "execute_command"
    description = (
        "Execute a CLI command on the system. Use this when you need to perform "
        "system operations or run specific commands to accomplish any step in "
        "the user's task. Commands run in the current working directory."
    )
    timeout_seconds = None
    approval_kind = "command"
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The CLI command to execute. Must be valid for the current operating system.",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self._processes: set[asyncio.subprocess.Process] = set()
        self._background: set[asyncio.Task[Any]] = set()

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('command', '')}']"

    def format_prompt(self, params: dict[str, str], partial: bool) -> str:
        return remove_closing_tag("command", params.get("command"), partial)

    @staticmethod
    def _format_output(lines: list[str]) -> str:
        output = "\n".join(lines).strip()
        if len(output) > _MAX_OUTPUT_CHARS:
            output = output[:_MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"
        return output

    @property
    def running(self) -> bool:
        return any(process.returncode is None for process in self._processes)

    @staticmethod
    async def _cancel(task: asyncio.Task[Any]) -> None:
        if task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def execute(self, context: ToolContext, command: str = "", **kwargs: Any) -> ToolOutcome:
        """Run ``command`` and collect its output.

        Returns:
            ToolOutcome describing completion, background continuation or
            operator feedback (``user_rejected`` set in that case)
        """
        timeout = int(context.config.tools.command_timeout or 0)
        if context.abort_event.is_set():
            return ToolOutcome(success=False, error="Command aborted")

        log.info("Executing command", command=command, cwd=str(context.cwd))
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(context.cwd),
            env=os.environ.copy(),
        )
        self._processes.add(process)

        lines: list[str] = []
        continued = asyncio.Event()
        feedback: AskResponse | None = None
        ask_task: asyncio.Task[None] | None = None

        async def await_operator(line: str) -> None:
            nonlocal feedback
            try:
                response = await context.bus.ask("command_output", line)
            except AskError:
                return
            if response is not None and response.response == AskResponseType.MESSAGE:
                feedback = response
            continued.set()

        async def read_output() -> None:
            nonlocal ask_task
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                lines.append(line)
                if continued.is_set():
                    continue
                if ask_task is None:
                    ask_task = asyncio.create_task(await_operator(line))
                else:
                    await context.bus.notify("command_output", line)
            await process.wait()

        reader = asyncio.create_task(read_output())
        continued_wait = asyncio.create_task(continued.wait())
        abort_wait = asyncio.create_task(context.abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {reader, continued_wait, abort_wait},
                timeout=timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            reader.cancel()
            raise
        finally:
            for waiter in (continued_wait, abort_wait):
                if not waiter.done():
                    waiter.cancel()

        if reader in done:
            if ask_task is not None and not ask_task.done():
                ask_task.cancel()
            self._processes.discard(process)
            await reader
            output = self._format_output(lines)
            if output:
                return ToolOutcome(content=f"Command executed.\nOutput:\n{output}")
            return ToolOutcome(content="Command executed.")

        if abort_wait in done or not done:
            await self._kill(process)
            await self._cancel(reader)
            self._processes.discard(process)
            if ask_task is not None and not ask_task.done():
                ask_task.cancel()
            if abort_wait in done:
                return ToolOutcome(success=False, error="Command aborted")
            return ToolOutcome(
                success=False,
                content=self._format_output(lines),
                error=f"Command timed out after {timeout}s",
            )

        # The operator let the command continue; keep draining it.
        self._background.add(reader)
        reader.add_done_callback(self._background.discard)
        reader.add_done_callback(lambda _: self._processes.discard(process))
        output = self._format_output(lines)

        if feedback is not None:
            await context.bus.notify("user_feedback", feedback.text, feedback.images)
            section = f"\nHere's the output so far:\n{output}" if output else ""
            return ToolOutcome(
                content=(
                    f"Command is still running in the user's terminal.{section}\n\n"
                    f"The user provided the following feedback:\n<feedback>\n{feedback.text or ''}\n</feedback>"
                ),
                images=feedback.images,
                user_rejected=True,
            )

        section = f"\nHere's the output so far:\n{output}" if output else ""
        return ToolOutcome(
            content=(
                f"Command is still running in the user's terminal.{section}\n\n"
                "You will be updated on the terminal status and new output in the future."
            )
        )

    async def dispose(self) -> None:
        for process in list(self._processes):
            await self._kill(process)
        self._processes.clear()
        for task in list(self._background):
            try:
                await self._cancel(task)
            except Exception as e:
                log.debug("Background command reader failed", error=str(e))
        self._background.clear()
