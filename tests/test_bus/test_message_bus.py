import asyncio

import pytest

from helmsman.exceptions import AskIgnoredError, TaskAbortedError
from helmsman.message_bus import AskResponseType, BusMessage, MessageBus


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_partial_notifications_coalesce_into_one_message():
    bus = MessageBus("t1")

    await bus.notify("text", "He", partial=True)
    await bus.notify("text", "Hello", partial=True)
    await bus.notify("text", "Hello there", partial=False)

    assert len(bus.messages) == 1
    assert bus.messages[0].text == "Hello there"
    assert bus.messages[0].partial is False


@pytest.mark.asyncio
async def test_partial_of_another_kind_starts_a_new_message():
    bus = MessageBus("t1")

    await bus.notify("text", "Hello", partial=True)
    await bus.notify("tool", '{"tool": "read_file"}', partial=True)

    assert [m.kind for m in bus.messages] == ["text", "tool"]


@pytest.mark.asyncio
async def test_timestamps_are_strictly_increasing():
    bus = MessageBus("t1", messages=[BusMessage(ts=10**15, type="say", kind="text", text="old")])

    for i in range(5):
        await bus.notify("text", str(i))

    stamps = [m.ts for m in bus.messages]
    assert stamps == sorted(set(stamps))
    assert stamps[1] > 10**15


@pytest.mark.asyncio
async def test_ask_waits_for_matching_response():
    bus = MessageBus("t1")
    waiter = asyncio.create_task(bus.ask("tool", "run?"))
    await _settle()

    (token,) = bus.pending_tokens
    assert bus.respond(token, AskResponseType.MESSAGE, "not like that", ["img"])

    answer = await waiter
    assert answer.response == AskResponseType.MESSAGE
    assert answer.text == "not like that"
    assert answer.images == ["img"]
    assert bus.pending_tokens == []


@pytest.mark.asyncio
async def test_newer_ask_supersedes_outstanding_one():
    bus = MessageBus("t1")
    first = asyncio.create_task(bus.ask("tool", "first"))
    await _settle()
    (first_token,) = bus.pending_tokens

    second = asyncio.create_task(bus.ask("followup", "second"))
    await _settle()

    with pytest.raises(AskIgnoredError):
        await first
    assert bus.respond(first_token, AskResponseType.APPROVED) is False

    (second_token,) = bus.pending_tokens
    assert second_token > first_token
    bus.respond(second_token, AskResponseType.APPROVED)
    assert (await second).approved


@pytest.mark.asyncio
async def test_final_ask_reuses_partial_prompt():
    bus = MessageBus("t1")

    assert await bus.ask("tool", "partial", partial=True) is None
    waiter = asyncio.create_task(bus.ask("tool", "complete", partial=False))
    await _settle()

    assert len(bus.messages) == 1
    assert bus.messages[0].text == "complete"
    assert bus.messages[0].partial is False
    assert bus.pending_tokens == [bus.messages[0].ts]

    bus.respond(bus.messages[0].ts, AskResponseType.REJECTED)
    assert (await waiter).response == AskResponseType.REJECTED


@pytest.mark.asyncio
async def test_stale_or_unknown_response_is_discarded():
    bus = MessageBus("t1")

    assert bus.respond(12345, AskResponseType.APPROVED) is False


@pytest.mark.asyncio
async def test_abort_unblocks_waiters_and_refuses_new_asks():
    bus = MessageBus("t1")
    waiter = asyncio.create_task(bus.ask("followup", "?"))
    await _settle()

    bus.abort()

    with pytest.raises(TaskAbortedError):
        await waiter
    with pytest.raises(TaskAbortedError):
        await bus.ask("tool", "again")


@pytest.mark.asyncio
async def test_close_partial_finalizes_trailing_message():
    bus = MessageBus("t1")
    await bus.notify("text", "half", partial=True)

    assert await bus.close_partial() is True
    assert bus.messages[-1].partial is False
    assert await bus.close_partial() is False


@pytest.mark.asyncio
async def test_save_failures_do_not_break_notifications():
    async def failing_save(messages):
        raise RuntimeError("disk full")

    bus = MessageBus("t1", on_change=failing_save)
    await bus.notify("text", "still shown")

    assert bus.messages[0].text == "still shown"


@pytest.mark.asyncio
async def test_surface_sees_every_post(make_surface):
    surface = make_surface({"tool": [(AskResponseType.APPROVED, None)]})
    bus = MessageBus("t1", surface=surface)
    surface.responder = bus.respond

    await bus.notify("text", "hello")
    answer = await bus.ask("tool", '{"tool": "read_file"}')

    assert answer.approved
    assert surface.asked == ["tool"]
    assert [kind for _, kind, *_ in surface.posted] == ["text", "tool"]


def test_message_dict_round_trip_keeps_partial_flag():
    message = BusMessage(ts=5, type="ask", kind="tool", text="x", partial=False)

    assert BusMessage.from_dict(message.to_dict()) == message
