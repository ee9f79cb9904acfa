import asyncio
from typing import Callable

import pytest

from helmsman.config import Config, set_config
from helmsman.llm import LLMProvider, ModelInfo, TextChunk, UsageChunk
from helmsman.message_bus import AskResponseType, BusMessage


def _chunks(text: str, size: int = 7) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


class ScriptedSurface:
    """Answers asks synchronously from per-kind scripts and records every post.

    A script is a list of (response, text) pairs; the last pair repeats once
    the others are used up.  Kinds without a script are left unanswered.
    """

    def __init__(self, answers: dict[str, list[tuple[AskResponseType, str | None]]] | None = None):
        self.answers = {kind: list(script) for kind, script in (answers or {}).items()}
        self.responder: Callable[[int, AskResponseType, str | None], bool] | None = None
        self.posted: list[tuple[str, str, str | None, bool | None, bool]] = []
        self.asked: list[str] = []

    async def post_message(self, message: BusMessage, *, update: bool) -> None:
        self.posted.append((message.type, message.kind, message.text, message.partial, update))
        if message.type != "ask" or message.partial:
            return
        self.asked.append(message.kind)
        script = self.answers.get(message.kind)
        if not script or self.responder is None:
            return
        response, text = script.pop(0) if len(script) > 1 else script[0]
        self.responder(message.ts, response, text)

    def said(self, kind: str) -> list[str | None]:
        return [text for type_, k, text, partial, _ in self.posted if type_ == "say" and k == kind and not partial]


class ScriptedProvider(LLMProvider):
    """Streams one scripted turn per call.

    In a list script an exception is raised mid-stream, a number pauses the
    stream for that many seconds and an ``asyncio.Event`` stalls it until set.
    """

    model = "scripted"

    def __init__(self, turns: list[list[str | float | Exception | asyncio.Event] | str], context_window: int = 100_000):
        self.turns = list(turns)
        self.calls: list[tuple[str, list]] = []
        self.context_window = context_window
        self.closed = False

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(context_window=self.context_window)

    async def stream_turn(self, system_prompt, history):
        self.calls.append((system_prompt, list(history)))
        script = self.turns.pop(0)
        if isinstance(script, str):
            script = _chunks(script)
        for piece in script:
            if isinstance(piece, Exception):
                raise piece
            if isinstance(piece, asyncio.Event):
                await piece.wait()
                continue
            if isinstance(piece, (int, float)):
                await asyncio.sleep(piece)
                continue
            yield TextChunk(piece)
        yield UsageChunk(input_tokens=120, output_tokens=30)

    async def close(self) -> None:
        self.closed = True


COMPLETION = (
    "All done.\n"
    "<attempt_completion>\n"
    "<result>\nThe file was created.\n</result>\n"
    "</attempt_completion>"
)


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.storage.path = str(tmp_path / "tasks.db")
    set_config(cfg)
    return cfg


@pytest.fixture
def make_surface():
    return ScriptedSurface


@pytest.fixture
def make_provider():
    return ScriptedProvider


@pytest.fixture
def completion_turn() -> str:
    return COMPLETION
