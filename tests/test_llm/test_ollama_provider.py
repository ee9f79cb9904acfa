import json

import httpx
import pytest

from helmsman.config import Config
from helmsman.exceptions import ConfigurationError, LLMAPIError
from helmsman.history import HistoryRecord
from helmsman.llm import OllamaProvider, TextChunk, UsageChunk, create_provider


def _ndjson(*objects) -> bytes:
    return "\n".join(json.dumps(o) for o in objects).encode("utf-8") + b"\n"


async def _collect(provider, history):
    return [chunk async for chunk in provider.stream_turn("system text", history)]


@pytest.mark.asyncio
async def test_stream_yields_text_then_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"role": "assistant", "content": "Hel"}, "done": False},
                {"message": {"role": "assistant", "content": "lo"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 42, "eval_count": 7},
            ),
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OllamaProvider(model="llama3.2", base_url="http://ollama.test/", context_window=8192, client=client)
    history = [HistoryRecord.user("hi", images=["aW1n"])]

    chunks = await _collect(provider, history)
    await provider.close()

    assert chunks == [TextChunk("Hel"), TextChunk("lo"), UsageChunk(input_tokens=42, output_tokens=7)]
    assert seen["url"] == "http://ollama.test/api/chat"
    body = seen["body"]
    assert body["stream"] is True
    assert body["options"]["num_ctx"] == 8192
    assert body["messages"][0] == {"role": "system", "content": "system text"}
    assert body["messages"][1] == {"role": "user", "content": "hi", "images": ["aW1n"]}


@pytest.mark.asyncio
async def test_http_error_status_raises_api_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, text="model not loaded")))
    provider = OllamaProvider(client=client)

    with pytest.raises(LLMAPIError) as exc:
        await _collect(provider, [HistoryRecord.user("hi")])

    assert exc.value.status_code == 500
    assert "model not loaded" in str(exc.value)


@pytest.mark.asyncio
async def test_error_line_mid_stream_raises():
    def handler(request):
        return httpx.Response(
            200,
            content=_ndjson({"message": {"content": "par"}, "done": False}, {"error": "out of memory"}),
        )

    provider = OllamaProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    received = []

    with pytest.raises(LLMAPIError):
        async for chunk in provider.stream_turn("s", [HistoryRecord.user("hi")]):
            received.append(chunk)

    assert received == [TextChunk("par")]


@pytest.mark.asyncio
async def test_transport_failure_becomes_api_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = OllamaProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    with pytest.raises(LLMAPIError):
        await _collect(provider, [HistoryRecord.user("hi")])


def test_create_provider_from_config():
    cfg = Config()
    cfg.model.model = "qwen3:32b"
    cfg.model.base_url = "http://gpu-box:11434"

    provider = create_provider(cfg)

    assert isinstance(provider, OllamaProvider)
    assert provider.model == "qwen3:32b"
    assert provider.base_url == "http://gpu-box:11434"


def test_unknown_provider_is_a_configuration_error():
    cfg = Config()
    cfg.model.provider = "carrier-pigeon"

    with pytest.raises(ConfigurationError):
        create_provider(cfg)


def test_model_info_cost():
    info = OllamaProvider().get_model_info()
    info.input_price = 3.0
    info.output_price = 15.0

    assert info.calculate_cost(1_000_000, 100_000) == pytest.approx(4.5)
