import asyncio

import pytest

from helmsman.message_bus import AskResponseType, MessageBus
from helmsman.tools.completion import AttemptCompletionTool
from helmsman.tools.followup import AskFollowupQuestionTool
from helmsman.tools.registry import ToolContext


def _context(config, tmp_path, surface) -> ToolContext:
    bus = MessageBus("t1", surface=surface)
    surface.responder = bus.respond
    return ToolContext(bus=bus, cwd=tmp_path, abort_event=asyncio.Event(), config=config)


@pytest.mark.asyncio
async def test_followup_returns_answer(config, tmp_path, make_surface):
    surface = make_surface({"followup": [(AskResponseType.MESSAGE, "blue")]})

    outcome = await AskFollowupQuestionTool().execute(_context(config, tmp_path, surface), question="Which colour?")

    assert outcome.content == "<answer>\nblue\n</answer>"
    assert surface.asked == ["followup"]
    assert surface.said("user_feedback") == ["blue"]


@pytest.mark.asyncio
async def test_accepted_completion_completes(config, tmp_path, make_surface):
    surface = make_surface({"completion_result": [(AskResponseType.APPROVED, None)]})

    outcome = await AttemptCompletionTool().execute(_context(config, tmp_path, surface), result="Built it.")

    assert outcome.completed is True
    assert surface.said("completion_result") == ["Built it."]


@pytest.mark.asyncio
async def test_completion_feedback_goes_back_to_model(config, tmp_path, make_surface):
    surface = make_surface({"completion_result": [(AskResponseType.MESSAGE, "add a README")]})

    outcome = await AttemptCompletionTool().execute(_context(config, tmp_path, surface), result="Built it.")

    assert outcome.completed is False
    assert "<feedback>\nadd a README\n</feedback>" in outcome.content
    assert surface.said("user_feedback") == ["add a README"]


@pytest.mark.asyncio
async def test_completion_demo_command_needs_approval(config, tmp_path, make_surface):
    surface = make_surface({"command": [(AskResponseType.REJECTED, None)]})

    outcome = await AttemptCompletionTool().execute(
        _context(config, tmp_path, surface),
        result="Built it.",
        command="echo demo",
    )

    assert outcome.user_rejected is True
    assert outcome.content == "The user denied this operation."
    assert "completion_result" not in surface.asked


@pytest.mark.asyncio
async def test_completion_runs_approved_demo_command(config, tmp_path, make_surface):
    surface = make_surface(
        {
            "command": [(AskResponseType.APPROVED, None)],
            "completion_result": [(AskResponseType.APPROVED, None)],
        }
    )

    outcome = await AttemptCompletionTool().execute(
        _context(config, tmp_path, surface),
        result="Built it.",
        command="echo demo",
    )

    assert outcome.completed is True
    assert "demo" in outcome.content
    assert surface.asked[0] == "command"
    assert surface.asked[-1] == "completion_result"
