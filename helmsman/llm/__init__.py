"""Model providers: stream one turn from a system prompt and the history."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

from helmsman.config import Config, get_config
from helmsman.exceptions import ConfigurationError, LLMAPIError, LLMError
from helmsman.history import HistoryRecord, ImagePart, TextPart
from helmsman.logging import get_logger

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"


@dataclass
class TextChunk:
    """A piece of assistant text."""

    text: str


@dataclass
class UsageChunk:
    """Token totals reported by the provider for this request."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float | None = None


StreamChunk = TextChunk | UsageChunk


@dataclass
class ModelInfo:
    """Static facts about the model behind a provider."""

    context_window: int | None = None
    input_price: float = 0.0  # per million tokens
    output_price: float = 0.0
    cache_writes_price: float = 0.0
    cache_reads_price: float = 0.0
    supports_images: bool = False

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_write_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> float:
        return (
            self.input_price * input_tokens
            + self.output_price * output_tokens
            + self.cache_writes_price * cache_write_tokens
            + self.cache_reads_price * cache_read_tokens
        ) / 1_000_000


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    def stream_turn(self, system_prompt: str, history: list[HistoryRecord]) -> AsyncIterator[StreamChunk]:
        """Stream one assistant turn.

        The iterator is finite and raises ``LLMError`` on transport failure.
        """
        pass

    def get_model_info(self) -> ModelInfo:
        return ModelInfo()

    async def close(self) -> None:
        return None


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        api_key: str | None = None,
        context_window: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            api_key: Optional API key (Ollama usually doesn't need one locally)
            context_window: Context size requested from the server
            client: Preconfigured HTTP client (tests pass a mock transport)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_key = api_key
        self.context_window = context_window

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def get_model_info(self) -> ModelInfo:
        return ModelInfo(context_window=self.context_window, supports_images=True)

    def _convert_messages(self, system_prompt: str, history: list[HistoryRecord]) -> list[dict[str, Any]]:
        """Convert turn records to Ollama chat messages."""
        result: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for record in history:
            text = "\n\n".join(part.text for part in record.content if isinstance(part, TextPart))
            message: dict[str, Any] = {"role": record.role, "content": text}
            images = [part.data for part in record.content if isinstance(part, ImagePart)]
            if images:
                message["images"] = images
            result.append(message)
        return result

    async def stream_turn(self, system_prompt: str, history: list[HistoryRecord]) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion as text and usage chunks."""
        url = f"{self.base_url}/api/chat"

        options: dict[str, Any] = {"temperature": self.temperature}
        if self.max_tokens:
            options["num_predict"] = self.max_tokens
        if self.context_window:
            options["num_ctx"] = self.context_window

        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(system_prompt, history),
            "stream": True,
            "options": options,
        }

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with self.client.stream("POST", url, json=body, headers=headers) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Ollama API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable stream line", line=line[:200])
                        continue
                    if chunk.get("error"):
                        raise LLMAPIError(f"Ollama stream error: {chunk['error']}")
                    content = chunk.get("message", {}).get("content")
                    if content:
                        yield TextChunk(content)
                    if chunk.get("done"):
                        yield UsageChunk(
                            input_tokens=int(chunk.get("prompt_eval_count") or 0),
                            output_tokens=int(chunk.get("eval_count") or 0),
                        )
                        break

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")
        except Exception as e:
            raise LLMError(f"Ollama stream failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: Config | None = None) -> LLMProvider:
    """Create the provider named in config.

    Raises:
        ConfigurationError: unknown provider name
    """
    cfg = config or get_config()
    provider = (cfg.model.provider or "").strip().lower()
    if provider == "ollama":
        return OllamaProvider(
            model=cfg.model.model,
            base_url=cfg.model.base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            api_key=cfg.model.api_key or None,
            context_window=cfg.model.context_window,
        )
    raise ConfigurationError(f"Provider '{cfg.model.provider}' not supported. Use 'ollama'.")
