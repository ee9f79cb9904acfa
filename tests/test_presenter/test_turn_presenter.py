import asyncio

import pytest

from helmsman.assistant_message import TextContent, ToolUse, parse_assistant_message
from helmsman.exceptions import TaskAbortedError
from helmsman.message_bus import AskResponseType, MessageBus
from helmsman.presenter import ExecutedTool, TurnPresenter
from helmsman.tools.registry import Tool, ToolContext, ToolOutcome, ToolRegistry


class RecordTool(Tool):
    name = "record"
    description = "Record a note"
    parameters = {
        "type": "object",
        "properties": {"note": {"type": "string", "description": "The note"}},
        "required": ["note"],
    }

    def __init__(self, fail: bool = False):
        self.notes: list[str] = []
        self.fail = fail

    async def execute(self, context, note: str = "", **kwargs):
        if self.fail:
            return ToolOutcome(success=False, error="boom")
        self.notes.append(note)
        return ToolOutcome(content=f"noted {note}")


class PeekTool(RecordTool):
    name = "peek"
    read_only = True


def _setup(config, tmp_path, surface, tool=None, always_allow_read_only=False):
    registry = ToolRegistry()
    tool = tool or RecordTool()
    registry.register(tool)
    registry.register(PeekTool())
    bus = MessageBus("t1", surface=surface)
    surface.responder = bus.respond
    context = ToolContext(bus=bus, cwd=tmp_path, abort_event=asyncio.Event(), config=config)
    presenter = TurnPresenter(registry, context, always_allow_read_only=always_allow_read_only)
    return presenter, tool, bus


async def _present(presenter, blocks):
    presenter.update_blocks(blocks)
    presenter.mark_stream_complete()
    return await asyncio.wait_for(presenter.wait_ready(), timeout=5)


@pytest.mark.asyncio
async def test_approved_tool_runs_and_result_is_framed(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.APPROVED, None)]})
    presenter, tool, bus = _setup(config, tmp_path, surface)

    result = await _present(
        presenter,
        [TextContent("Recording.", partial=False), ToolUse("record", {"note": "a"}, partial=False)],
    )

    assert tool.notes == ["a"]
    assert result.text == "[record] Result:\n\nnoted a"
    assert result.executed_tool == ExecutedTool("record", {"note": "a"})
    assert result.valid_tool_call is True
    assert presenter.did_use_tool is True
    assert surface.said("text") == ["Recording."]


@pytest.mark.asyncio
async def test_rejection_with_feedback_skips_later_tools(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.MESSAGE, "use python instead")]})
    presenter, tool, bus = _setup(config, tmp_path, surface)

    result = await _present(
        presenter,
        [
            ToolUse("record", {"note": "a"}, partial=False),
            ToolUse("record", {"note": "b"}, partial=False),
        ],
    )

    assert tool.notes == []
    assert presenter.did_reject_tool is True
    assert "<feedback>\nuse python instead\n</feedback>" in result.text
    assert "Skipping tool [record] due to user rejecting a previous tool." in result.text
    assert result.executed_tool is None
    assert surface.said("user_feedback") == ["use python instead"]
    assert surface.asked == ["tool"]


@pytest.mark.asyncio
async def test_plain_rejection_is_a_denial(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.REJECTED, None)]})
    presenter, tool, bus = _setup(config, tmp_path, surface)

    result = await _present(presenter, [ToolUse("record", {"note": "a"}, partial=False)])

    assert "The user denied this operation." in result.text
    assert tool.notes == []


@pytest.mark.asyncio
async def test_second_tool_in_one_turn_is_not_executed(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.APPROVED, None)]})
    presenter, tool, bus = _setup(config, tmp_path, surface)

    result = await _present(
        presenter,
        [
            ToolUse("record", {"note": "a"}, partial=False),
            TextContent("and another", partial=False),
            ToolUse("record", {"note": "b"}, partial=False),
        ],
    )

    assert tool.notes == ["a"]
    assert "Tool [record] was not executed because a tool has already been used" in result.text
    assert surface.said("text") == []


@pytest.mark.asyncio
async def test_missing_parameter_is_reported_without_running(config, tmp_path, make_surface):
    surface = make_surface()
    presenter, tool, bus = _setup(config, tmp_path, surface)

    result = await _present(presenter, [ToolUse("record", {}, partial=False)])

    assert tool.notes == []
    assert result.missing_param_count == 1
    assert result.valid_tool_call is False
    assert "Missing value for required parameter 'note'" in result.text
    assert "without value for required parameter 'note'" in surface.said("error")[0]
    assert surface.asked == []


@pytest.mark.asyncio
async def test_failed_tool_outcome_becomes_error_result(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.APPROVED, None)]})
    presenter, tool, bus = _setup(config, tmp_path, surface, tool=RecordTool(fail=True))

    result = await _present(presenter, [ToolUse("record", {"note": "a"}, partial=False)])

    assert "<error>\nboom\n</error>" in result.text
    assert surface.said("error") == ["Error executing [record]:\nboom"]
    assert result.executed_tool is not None


@pytest.mark.asyncio
async def test_read_only_tool_is_auto_approved_when_allowed(config, tmp_path, make_surface):
    surface = make_surface()
    presenter, tool, bus = _setup(config, tmp_path, surface, always_allow_read_only=True)

    result = await _present(presenter, [ToolUse("peek", {"note": "x"}, partial=False)])

    assert surface.asked == []
    assert result.text.endswith("noted x")
    assert bus.find_last("tool") is not None


@pytest.mark.asyncio
async def test_streaming_tool_prompt_is_updated_in_place(config, tmp_path, make_surface):
    surface = make_surface({"tool": [(AskResponseType.APPROVED, None)]})
    presenter, tool, bus = _setup(config, tmp_path, surface)

    presenter.update_blocks([ToolUse("record", {"note": "par"}, partial=True)])
    presenter.schedule()
    await asyncio.sleep(0.01)
    assert not presenter.ready

    result = await _present(presenter, [ToolUse("record", {"note": "partial done"}, partial=False)])

    tool_asks = [m for m in bus.messages if m.type == "ask" and m.kind == "tool"]
    assert len(tool_asks) == 1
    assert '"note": "partial done"' in tool_asks[0].text
    assert tool.notes == ["partial done"]
    assert result.executed_tool is not None


@pytest.mark.asyncio
async def test_abort_surfaces_from_wait_ready(config, tmp_path, make_surface):
    presenter, tool, bus = _setup(config, tmp_path, make_surface())
    presenter.context.abort_event.set()

    presenter.update_blocks([TextContent("hi", partial=False)])
    presenter.mark_stream_complete()

    with pytest.raises(TaskAbortedError):
        await asyncio.wait_for(presenter.wait_ready(), timeout=5)


@pytest.mark.asyncio
async def test_chunks_streamed_during_an_approval_are_presented_after_it(config, tmp_path, make_surface):
    surface = make_surface()
    presenter, tool, bus = _setup(config, tmp_path, surface)
    tool_names = presenter.registry.list_tools()
    param_names = presenter.registry.param_names()
    text = (
        "Two notes.\n"
        "<record>\n<note>a</note>\n</record>\n"
        "<record>\n<note>b</note>\n</record>"
    )

    for end in range(1, len(text) + 1):
        presenter.update_blocks(parse_assistant_message(text[:end], tool_names, param_names))
        presenter.schedule()
        await asyncio.sleep(0)
    presenter.mark_stream_complete()
    await asyncio.sleep(0.05)

    assert not presenter.ready
    assert surface.asked == ["tool"]
    (token,) = bus.pending_tokens
    assert bus.respond(token, AskResponseType.MESSAGE, "only one note")

    result = await asyncio.wait_for(presenter.wait_ready(), timeout=5)

    assert tool.notes == []
    assert presenter.did_reject_tool is True
    assert "<feedback>\nonly one note\n</feedback>" in result.text
    assert "Skipping tool [record] due to user rejecting a previous tool." in result.text
    assert surface.asked == ["tool"]
    assert surface.said("text") == ["Two notes."]
    assert len([m for m in bus.messages if m.type == "ask"]) == 1
