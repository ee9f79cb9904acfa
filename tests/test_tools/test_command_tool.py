import asyncio

import pytest

from helmsman.message_bus import AskResponseType, MessageBus
from helmsman.tools.command import ExecuteCommandTool
from helmsman.tools.registry import ToolContext


def _context(config, tmp_path, bus=None) -> ToolContext:
    return ToolContext(bus=bus or MessageBus("t1"), cwd=tmp_path, abort_event=asyncio.Event(), config=config)


@pytest.mark.asyncio
async def test_command_output_is_collected(config, tmp_path):
    tool = ExecuteCommandTool()
    context = _context(config, tmp_path)

    outcome = await tool.execute(context, command="echo hello && echo world")

    assert outcome.success is True
    assert outcome.content == "Command executed.\nOutput:\nhello\nworld"
    assert tool.running is False
    assert context.bus.pending_tokens == []


@pytest.mark.asyncio
async def test_command_runs_in_task_directory(config, tmp_path):
    (tmp_path / "marker.txt").write_text("", encoding="utf-8")

    outcome = await ExecuteCommandTool().execute(_context(config, tmp_path), command="ls")

    assert "marker.txt" in outcome.content


@pytest.mark.asyncio
async def test_silent_command(config, tmp_path):
    outcome = await ExecuteCommandTool().execute(_context(config, tmp_path), command="true")

    assert outcome.content == "Command executed."


@pytest.mark.asyncio
async def test_command_times_out(config, tmp_path):
    config.tools.command_timeout = 1

    outcome = await ExecuteCommandTool().execute(_context(config, tmp_path), command="exec sleep 5")

    assert outcome.success is False
    assert outcome.error == "Command timed out after 1s"


@pytest.mark.asyncio
async def test_abort_kills_command(config, tmp_path):
    tool = ExecuteCommandTool()
    context = _context(config, tmp_path)

    run = asyncio.create_task(tool.execute(context, command="exec sleep 5"))
    await asyncio.sleep(0.2)
    context.abort_event.set()
    outcome = await asyncio.wait_for(run, timeout=5)

    assert outcome.success is False
    assert outcome.error == "Command aborted"
    assert tool.running is False


@pytest.mark.asyncio
async def test_feedback_while_running_leaves_command_in_background(config, tmp_path, make_surface):
    surface = make_surface({"command_output": [(AskResponseType.MESSAGE, "that's enough")]})
    bus = MessageBus("t1", surface=surface)
    surface.responder = bus.respond
    tool = ExecuteCommandTool()

    outcome = await asyncio.wait_for(
        tool.execute(_context(config, tmp_path, bus), command="echo started; exec sleep 5"),
        timeout=5,
    )

    assert outcome.user_rejected is True
    assert "Command is still running in the user's terminal." in outcome.content
    assert "started" in outcome.content
    assert "<feedback>\nthat's enough\n</feedback>" in outcome.content
    assert surface.said("user_feedback") == ["that's enough"]
    assert tool.running is True

    await tool.dispose()
    assert tool.running is False


@pytest.mark.asyncio
async def test_continuing_without_feedback(config, tmp_path, make_surface):
    surface = make_surface({"command_output": [(AskResponseType.APPROVED, None)]})
    bus = MessageBus("t1", surface=surface)
    surface.responder = bus.respond
    tool = ExecuteCommandTool()

    outcome = await asyncio.wait_for(
        tool.execute(_context(config, tmp_path, bus), command="echo started; exec sleep 5"),
        timeout=5,
    )

    assert outcome.user_rejected is False
    assert "You will be updated on the terminal status" in outcome.content
    await tool.dispose()


def test_prompt_is_the_bare_command():
    tool = ExecuteCommandTool()

    assert tool.format_prompt({"command": "npm test</comm"}, partial=True) == "npm test"
    assert tool.describe({"command": "npm test"}) == "[execute_command for 'npm test']"
