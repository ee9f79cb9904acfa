"""Console approval surface rendered with rich."""

from __future__ import annotations

import asyncio
import json
from typing import Callable

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from helmsman.logging import get_logger
from helmsman.message_bus import AskResponseType, BusMessage

log = get_logger(__name__)

Responder = Callable[..., bool]

_APPROVE_WORDS = {"", "y", "yes"}
_REJECT_WORDS = {"n", "no"}

_QUESTIONS = {
    "tool": "Allow this tool call? (y/n or type feedback)",
    "command": "Run this command? (y/n or type feedback)",
    "followup": "Your answer",
    "completion_result": "Accept the result? (y or type feedback)",
    "resume_task": "Resume this task? (y or type new instructions)",
    "resume_completed_task": "Continue this completed task? (y or type new instructions)",
    "mistake_limit_reached": "Proceed anyway? (y or type guidance)",
}


def parse_answer(kind: str, answer: str) -> tuple[AskResponseType, str | None]:
    """Map a typed answer onto an operator response."""
    cleaned = answer.strip()
    if kind == "followup":
        return AskResponseType.MESSAGE, cleaned
    lowered = cleaned.lower()
    if lowered in _APPROVE_WORDS:
        return AskResponseType.APPROVED, None
    if lowered in _REJECT_WORDS:
        return AskResponseType.REJECTED, None
    return AskResponseType.MESSAGE, cleaned


class ConsoleSurface:
    """Prints bus messages and prompts the operator for actionable asks.

    Partial messages are not printed; each message is shown once, when it is
    complete.  ``command_output`` prompts are shown as output only, so a
    running command always finishes before the task continues.  A single
    reader owns stdin; a line typed for a prompt that a newer one replaced
    is dropped and the newer prompt is asked instead.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()
        self._responder: Responder | None = None
        self._prompt_task: asyncio.Task[None] | None = None
        self._latest_ask: BusMessage | None = None

    def bind(self, responder: Responder) -> None:
        """Set the callable that delivers answers (``TaskController.respond``)."""
        self._responder = responder

    async def post_message(self, message: BusMessage, *, update: bool) -> None:
        if message.partial:
            return
        if message.type == "ask":
            self._render_ask(message)
            if message.kind in _QUESTIONS:
                self._latest_ask = message
                if self._prompt_task is None or self._prompt_task.done():
                    self._prompt_task = asyncio.create_task(self._prompt_loop())
            return
        self._render_say(message, update)

    def _render_ask(self, message: BusMessage) -> None:
        text = message.text or ""
        if message.kind == "tool":
            self.console.print(Panel(self._pretty_tool(text), title="Tool request", border_style="yellow"))
        elif message.kind == "command":
            self.console.print(Panel(text, title="Command", border_style="yellow"))
        elif message.kind == "command_output":
            self.console.print(text, style="dim", markup=False)
        elif message.kind == "followup":
            self.console.print(Panel(text, title="Question", border_style="cyan"))
        elif text:
            self.console.print(text, markup=False)

    def _render_say(self, message: BusMessage, update: bool) -> None:
        text = message.text or ""
        kind = message.kind
        if kind == "text":
            if text:
                self.console.print(Markdown(text))
        elif kind == "api_req_started":
            self._render_request(text, update)
        elif kind == "tool":
            self.console.print(Panel(self._pretty_tool(text), title="Tool", border_style="blue"))
        elif kind == "error":
            self.console.print(f"[bold red]Error:[/bold red] {escape(text)}", highlight=False)
        elif kind == "completion_result":
            self.console.print(Panel(Markdown(text), title="Result", border_style="green"))
        elif kind == "user_feedback":
            self.console.print(f"[cyan]> {escape(text)}[/cyan]")
        elif kind == "command_output":
            self.console.print(text, style="dim", markup=False)
        else:
            self.console.print(text, markup=False)

    def _render_request(self, text: str, update: bool) -> None:
        try:
            info = json.loads(text)
        except json.JSONDecodeError:
            return
        if not update:
            self.console.print("[dim]Thinking...[/dim]")
            return
        if "cancelReason" in info:
            self.console.print(f"[dim]Request ended: {info['cancelReason']}[/dim]")
        elif "tokensIn" in info:
            self.console.print(
                f"[dim]tokens in {info.get('tokensIn', 0)} / out {info.get('tokensOut', 0)}[/dim]"
            )

    @staticmethod
    def _pretty_tool(text: str) -> str:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return text
        if not isinstance(data, dict):
            return text
        return "\n".join(f"{key}: {value}" for key, value in data.items())

    async def _prompt_loop(self) -> None:
        while self._latest_ask is not None:
            message = self._latest_ask
            question = _QUESTIONS[message.kind]
            answer = await asyncio.to_thread(Prompt.ask, question, console=self.console, default="")
            if self._latest_ask is not message:
                log.debug("Prompt replaced while reading", kind=message.kind, token=message.ts)
                continue
            self._latest_ask = None
            self._deliver(message, answer)

    def _deliver(self, message: BusMessage, answer: str) -> None:
        response, text = parse_answer(message.kind, answer)
        if self._responder is None:
            log.warning("No responder bound; dropping answer", kind=message.kind)
            return
        if not self._responder(response, text, None, message.ts):
            log.debug("Answer arrived for a stale prompt", kind=message.kind, token=message.ts)
