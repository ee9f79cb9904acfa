"""Conversation history sent to the model, with budget-driven truncation."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from helmsman.exceptions import HistoryError
from helmsman.logging import get_logger

log = get_logger(__name__)


@dataclass
class TextPart:
    """Text content of a turn record."""

    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImagePart:
    """Base64-encoded image attached to a user turn."""

    data: str
    media_type: str = "image/png"
    type: Literal["image"] = "image"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "image", "data": self.data, "media_type": self.media_type}


Part = TextPart | ImagePart


def part_from_dict(data: dict[str, Any]) -> Part:
    if data.get("type") == "image":
        return ImagePart(data=data["data"], media_type=data.get("media_type", "image/png"))
    return TextPart(text=data.get("text", ""))


def image_parts(images: list[str] | None) -> list[Part]:
    return [ImagePart(data=image) for image in images or []]


@dataclass
class HistoryRecord:
    """One user or assistant turn."""

    role: Literal["user", "assistant"]
    content: list[Part] = field(default_factory=list)

    @classmethod
    def user(cls, text: str, images: list[str] | None = None) -> "HistoryRecord":
        return cls(role="user", content=[TextPart(text), *image_parts(images)])

    @classmethod
    def assistant(cls, text: str) -> "HistoryRecord":
        return cls(role="assistant", content=[TextPart(text)])

    @property
    def text(self) -> str:
        return "\n\n".join(part.text for part in self.content if isinstance(part, TextPart))

    @property
    def images(self) -> list[str]:
        return [part.data for part in self.content if isinstance(part, ImagePart)]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": [part.to_dict() for part in self.content]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryRecord":
        content = data.get("content", [])
        if isinstance(content, str):
            parts: list[Part] = [TextPart(content)]
        else:
            parts = [part_from_dict(item) for item in content]
        return cls(role=data["role"], content=parts)


HistorySaver = Callable[[list[HistoryRecord]], Awaitable[None]]


def truncation_threshold(context_window: int, reserve_tokens: int = 40_000, max_usage_ratio: float = 0.8) -> float:
    """Token total at which the oldest turns start being dropped.

    Not rounded: a request one token short of a fractional threshold keeps
    the history intact.
    """
    return max(context_window - reserve_tokens, context_window * max_usage_ratio)


def truncate_half(records: list[HistoryRecord]) -> list[HistoryRecord]:
    """Drop the oldest half of the turn pairs after the first user record.

    An even number of records is removed starting right after index 0, so the
    result still alternates user/assistant and never shrinks below the first
    record plus one pair.
    """
    remove = (len(records) - 1) // 4 * 2
    return [records[0], *records[remove + 1:]]


class History:
    """Owns the ordered turn records of one task.

    Records strictly alternate user/assistant starting with user. The only
    mutations are ``append`` and ``truncate_if_over_budget``; each persists
    the new sequence first and commits it only if persisting succeeded.
    """

    def __init__(
        self,
        records: list[HistoryRecord] | None = None,
        on_change: HistorySaver | None = None,
        reserve_tokens: int = 40_000,
        max_usage_ratio: float = 0.8,
    ):
        records = list(records or [])
        self._check_alternation(records)
        self._records = records
        self.on_change = on_change
        self.reserve_tokens = reserve_tokens
        self.max_usage_ratio = max_usage_ratio

    @staticmethod
    def _check_alternation(records: list[HistoryRecord]) -> None:
        for index, record in enumerate(records):
            expected = "user" if index % 2 == 0 else "assistant"
            if record.role != expected:
                raise HistoryError(
                    f"History record {index} has role '{record.role}', expected '{expected}'"
                )

    @property
    def records(self) -> list[HistoryRecord]:
        """A copy of the current records."""
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def last(self) -> HistoryRecord | None:
        return self._records[-1] if self._records else None

    async def _commit(self, records: list[HistoryRecord]) -> None:
        if self.on_change is not None:
            try:
                await self.on_change(list(records))
            except Exception as e:
                log.error("Failed to persist history", error=str(e))
                raise HistoryError(f"Failed to persist history: {e}") from e
        self._records = records

    async def append(self, record: HistoryRecord) -> None:
        """Append one record, keeping user/assistant alternation."""
        expected = "user" if len(self._records) % 2 == 0 else "assistant"
        if record.role != expected:
            raise HistoryError(f"Cannot append '{record.role}' record; expected '{expected}'")
        await self._commit([*self._records, record])

    async def truncate_if_over_budget(
        self,
        tokens_in: int,
        tokens_out: int,
        cache_writes: int,
        cache_reads: int,
        context_window: int,
    ) -> bool:
        """Halve the conversation when the last request used too much context.

        Returns:
            True if records were dropped
        """
        total = (tokens_in or 0) + (tokens_out or 0) + (cache_writes or 0) + (cache_reads or 0)
        threshold = truncation_threshold(context_window, self.reserve_tokens, self.max_usage_ratio)
        if total < threshold:
            return False

        truncated = truncate_half(self._records) if self._records else []
        if len(truncated) == len(self._records):
            log.debug("History too short to truncate", records=len(self._records), total=total)
            return False

        before = len(self._records)
        await self._commit(truncated)
        log.info(
            "Truncated history",
            total_tokens=total,
            threshold=threshold,
            before=before,
            after=len(truncated),
        )
        return True
