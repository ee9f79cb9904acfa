"""Ask the operator a clarifying question."""

from typing import Any

from helmsman.assistant_message import remove_closing_tag
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome


class AskFollowupQuestionTool(Tool):
    """Pose a question to the operator and return the answer."""

    name = "ask_followup_question"
    description = (
        "Ask the user a question to gather additional information needed to "
        "complete the task. Use this when you encounter ambiguities or need "
        "clarification. Use it judiciously rather than for routine confirmation."
    )
    timeout_seconds = None
    requires_approval = False
    approval_kind = "followup"
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The question to ask the user. It should clearly address the information you need.",
            },
        },
        "required": ["question"],
    }

    def describe(self, params: dict[str, str]) -> str:
        return f"[{self.name} for '{params.get('question', '')}']"

    def format_prompt(self, params: dict[str, str], partial: bool) -> str:
        return remove_closing_tag("question", params.get("question"), partial)

    async def present_partial(self, params: dict[str, str], context: ToolContext, auto_approved: bool) -> None:
        await context.bus.ask("followup", self.format_prompt(params, partial=True), partial=True)

    async def execute(self, context: ToolContext, question: str = "", **kwargs: Any) -> ToolOutcome:
        response = await context.bus.ask("followup", question, partial=False)
        text = (response.text if response else None) or ""
        images = response.images if response else []
        await context.bus.notify("user_feedback", text, images)
        return ToolOutcome(content=f"<answer>\n{text}\n</answer>", images=images)
