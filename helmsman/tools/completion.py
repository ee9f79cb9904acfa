"""Completion tool: present the result and let the operator accept it."""

from typing import Any

from helmsman import responses
from helmsman.assistant_message import remove_closing_tag
from helmsman.logging import get_logger
from helmsman.message_bus import AskResponseType
from helmsman.tools.command import ExecuteCommandTool
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome

log = get_logger(__name__)


class AttemptCompletionTool(Tool):
    """Present the final result of the task to the operator.

    An optional ``command`` lets the model show off the result (open a page,
    run the program); it goes through the ``command`` approval gate on its own.
    Accepting the result completes the task; any other answer comes back to
    the model as feedback.
    """

    name = "attempt_completion"
    description = (
        "Once you've confirmed from the results of previous tool uses that the "
        "task is complete, use this tool to present the result of your work to "
        "the user. Optionally provide a CLI command to showcase the result."
    )
    timeout_seconds = None
    requires_approval = False
    approval_kind = "completion_result"
    parameters = {
        "type": "object",
        "properties": {
            "result": {
                "type": "string",
                "description": "The result of the task. Formulate it in a way that is final and does not require further input from the user.",
            },
            "command": {
                "type": "string",
                "description": "A CLI command to execute to show a live demo of the result to the user.",
            },
        },
        "required": ["result"],
    }

    def __init__(self, command_tool: ExecuteCommandTool | None = None):
        self.command_tool = command_tool or ExecuteCommandTool()

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name}]"

    def format_prompt(self, params: dict[str, str], partial: bool) -> str:
        return remove_closing_tag("result", params.get("result"), partial)

    async def present_partial(self, params: dict[str, str], context: ToolContext, auto_approved: bool) -> None:
        await context.bus.notify("completion_result", self.format_prompt(params, partial=True), partial=True)

    async def execute(
        self,
        context: ToolContext,
        result: str = "",
        command: str | None = None,
        **kwargs: Any,
    ) -> ToolOutcome:
        bus = context.bus
        await bus.notify("completion_result", result, partial=False)

        command_output = ""
        if command and command.strip():
            approval = await bus.ask("command", command)
            if approval is None or not approval.approved:
                if approval is not None and approval.text:
                    await bus.notify("user_feedback", approval.text, approval.images)
                    return ToolOutcome(
                        content=responses.tool_denied_with_feedback(approval.text),
                        images=approval.images,
                        user_rejected=True,
                    )
                return ToolOutcome(content=responses.tool_denied(), user_rejected=True)
            outcome = await self.command_tool.execute(context, command=command)
            if outcome.user_rejected:
                return outcome
            command_output = outcome.content if outcome.success else (outcome.error or "")

        response = await bus.ask("completion_result", "")
        if response is not None and response.response == AskResponseType.APPROVED:
            log.info("Completion accepted")
            return ToolOutcome(content=command_output, completed=True)

        text = (response.text if response else None) or ""
        images = response.images if response else []
        await bus.notify("user_feedback", text, images)
        return ToolOutcome(content=responses.completion_feedback(text), images=images)

    async def dispose(self) -> None:
        await self.command_tool.dispose()
