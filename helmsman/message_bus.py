"""Operator-facing message log with blocking asks and coalescing notifications."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Protocol

from helmsman.exceptions import AskIgnoredError, TaskAbortedError
from helmsman.logging import get_logger

log = get_logger(__name__)


class AskResponseType(str, Enum):
    """How the operator answered a prompt."""

    APPROVED = "approved"
    REJECTED = "rejected"
    MESSAGE = "message"


@dataclass
class AskResponse:
    """Operator answer to one prompt."""

    response: AskResponseType
    text: str | None = None
    images: list[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.response == AskResponseType.APPROVED


@dataclass
class BusMessage:
    """One entry of the operator message log.

    ``partial`` is ``True`` while the entry may still be rewritten in place,
    ``False`` once a partial entry was finalized, and ``None`` for entries
    that were complete from the start.
    """

    ts: int
    type: Literal["ask", "say"]
    kind: str
    text: str | None = None
    images: list[str] = field(default_factory=list)
    partial: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ts": self.ts,
            "type": self.type,
            "kind": self.kind,
            "text": self.text,
            "images": list(self.images),
            "partial": self.partial,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BusMessage":
        return cls(
            ts=int(data["ts"]),
            type=data["type"],
            kind=data["kind"],
            text=data.get("text"),
            images=list(data.get("images") or []),
            partial=data.get("partial"),
        )


class ApprovalSurface(Protocol):
    """Where bus messages are shown; answers come back via ``MessageBus.respond``."""

    async def post_message(self, message: BusMessage, *, update: bool) -> None:
        ...


MessagesCallback = Callable[[list[BusMessage]], Awaitable[None]]


class MessageBus:
    """Rendezvous between a running task and the human operator.

    ``notify`` never waits.  ``ask`` registers a prompt keyed by a monotonic
    timestamp token; non-partial asks suspend until ``respond`` is called with
    that token.  Registering a newer prompt supersedes any outstanding one,
    whose waiter then raises ``AskIgnoredError``.
    """

    def __init__(
        self,
        task_id: str,
        surface: ApprovalSurface | None = None,
        on_change: MessagesCallback | None = None,
        messages: list[BusMessage] | None = None,
    ):
        self.task_id = task_id
        self.surface = surface
        self.on_change = on_change
        self.messages: list[BusMessage] = list(messages or [])
        self._last_ts = max((m.ts for m in self.messages), default=0)
        self._pending: dict[int, asyncio.Future[AskResponse]] = {}
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def pending_tokens(self) -> list[int]:
        """Tokens of prompts still waiting for an answer."""
        return [ts for ts, fut in self._pending.items() if not fut.done()]

    def _next_ts(self) -> int:
        now = time.time_ns() // 1_000_000
        self._last_ts = max(now, self._last_ts + 1)
        return self._last_ts

    def _last_partial(self, type_: str, kind: str) -> BusMessage | None:
        if not self.messages:
            return None
        last = self.messages[-1]
        if last.partial and last.type == type_ and last.kind == kind:
            return last
        return None

    async def _save(self) -> None:
        if self.on_change is None:
            return
        try:
            await self.on_change(list(self.messages))
        except Exception as e:
            log.error("Failed to save bus messages", task_id=self.task_id, error=str(e))

    async def _post(self, message: BusMessage, update: bool) -> None:
        if self.surface is None:
            return
        try:
            await self.surface.post_message(message, update=update)
        except Exception as e:
            log.warning("Approval surface rejected message", kind=message.kind, error=str(e))

    async def _append(self, message: BusMessage) -> None:
        self.messages.append(message)
        await self._save()
        await self._post(message, update=False)

    def _supersede_others(self, token: int) -> None:
        for ts, future in list(self._pending.items()):
            if ts != token and not future.done():
                future.set_exception(AskIgnoredError(ts))

    def _register(self, token: int) -> asyncio.Future[AskResponse]:
        self._supersede_others(token)
        future: asyncio.Future[AskResponse] = asyncio.get_running_loop().create_future()
        self._pending[token] = future
        return future

    async def ask(
        self,
        kind: str,
        text: str | None = None,
        partial: bool | None = None,
    ) -> AskResponse | None:
        """Pose a prompt to the operator.

        Args:
            kind: Prompt category ("tool", "command", "followup", ...)
            text: Prompt body
            partial: ``True`` registers or updates a provisional prompt and
                returns ``None`` immediately; otherwise waits for the answer

        Returns:
            The operator's answer, or None for provisional prompts

        Raises:
            AskIgnoredError: a newer prompt superseded this one
            TaskAbortedError: the task was aborted while waiting
        """
        if self._aborted:
            raise TaskAbortedError(self.task_id)

        previous = self._last_partial("ask", kind) if partial is not None else None

        if partial:
            if previous is not None:
                previous.text = text
                await self._post(previous, update=True)
                return None
            token = self._next_ts()
            self._supersede_others(token)
            await self._append(BusMessage(ts=token, type="ask", kind=kind, text=text, partial=True))
            return None

        if previous is not None:
            token = previous.ts
            future = self._register(token)
            previous.text = text
            previous.partial = False
            await self._save()
            await self._post(previous, update=True)
        else:
            token = self._next_ts()
            future = self._register(token)
            await self._append(BusMessage(ts=token, type="ask", kind=kind, text=text))

        log.debug("Waiting for operator", task_id=self.task_id, kind=kind, token=token)
        try:
            return await future
        finally:
            if self._pending.get(token) is future:
                del self._pending[token]

    async def notify(
        self,
        kind: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool | None = None,
    ) -> None:
        """Fire-and-forget message; consecutive partials of one kind coalesce."""
        if partial is not None:
            previous = self._last_partial("say", kind)
            if previous is not None:
                previous.text = text
                previous.images = list(images or [])
                if partial:
                    await self._post(previous, update=True)
                else:
                    previous.partial = False
                    await self._save()
                    await self._post(previous, update=True)
                return
            message = BusMessage(
                ts=self._next_ts(),
                type="say",
                kind=kind,
                text=text,
                images=list(images or []),
                partial=True if partial else None,
            )
        else:
            message = BusMessage(
                ts=self._next_ts(),
                type="say",
                kind=kind,
                text=text,
                images=list(images or []),
            )
        await self._append(message)

    def respond(
        self,
        token: int,
        response: AskResponseType,
        text: str | None = None,
        images: list[str] | None = None,
    ) -> bool:
        """Deliver the operator's answer for prompt ``token``.

        Returns:
            False when the token is unknown, already answered or superseded
        """
        future = self._pending.get(token)
        if future is None or future.done():
            log.debug("Discarding stale ask response", task_id=self.task_id, token=token)
            return False
        future.set_result(AskResponse(response=response, text=text, images=list(images or [])))
        return True

    async def update_text(self, message: BusMessage, text: str) -> None:
        """Rewrite a logged message (request bookkeeping) and persist it."""
        message.text = text
        await self._save()
        await self._post(message, update=True)

    def find_last(self, kind: str, type_: str = "say") -> BusMessage | None:
        for message in reversed(self.messages):
            if message.type == type_ and message.kind == kind:
                return message
        return None

    async def close_partial(self) -> bool:
        """Finalize a trailing partial message left behind by an interrupted turn."""
        if not self.messages or not self.messages[-1].partial:
            return False
        last = self.messages[-1]
        last.partial = False
        await self._save()
        await self._post(last, update=True)
        return True

    def abort(self) -> None:
        """Fail every outstanding wait with ``TaskAbortedError``."""
        self._aborted = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TaskAbortedError(self.task_id))
