"""Model transport over httpx, exercised with httpx.MockTransport."""

import json

import httpx

from autoui.config import DEFAULT_RELAY_URL, DIRECT_API_URL, RuntimeConfig
from autoui.llm_client import (
    ANTHROPIC_VERSION,
    NOT_CONFIGURED_ERROR,
    ModelTransport,
    extract_text,
    extract_tool_use,
    tool_use_blocks,
)
from autoui.transcript_log import TranscriptLog

REPLY = {
    "content": [
        {"type": "text", "text": "thinking"},
        {"type": "tool_use", "id": "t1", "name": "write_component", "input": {"src": "x = 1"}},
    ],
    "usage": {"input_tokens": 10, "output_tokens": 4, "cache_read_input_tokens": 2},
}


def _transport(config, handler):
    requests = []

    def record(request: httpx.Request):
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    transcript = TranscriptLog()
    return ModelTransport(config, transcript, http_client=client), transcript, requests


async def test_none_mode_short_circuits():
    def handler(request):
        raise AssertionError("no request expected")

    transport, transcript, requests = _transport(RuntimeConfig(api_mode="none"), handler)
    result = await transport.call("sys", [{"role": "user", "content": "hi"}], source="author:x")

    assert not result.ok
    assert result.error == NOT_CONFIGURED_ERROR
    assert requests == []
    assert transcript.snapshot()[0].source == "author:x"
    assert transcript.snapshot()[0].error == NOT_CONFIGURED_ERROR


async def test_direct_mode_sends_credentials():
    config = RuntimeConfig(api_mode="direct", api_key="sk-test", model="m-1", max_tokens=100)
    transport, transcript, requests = _transport(config, lambda r: httpx.Response(200, json=REPLY))

    tools = [{"name": "write_component", "input_schema": {"type": "object"}}]
    result = await transport.call(
        "system text",
        [{"role": "user", "content": "go"}],
        {"tools": tools, "_source": "ignored", "tool_choice": {"type": "auto"}},
        source="reasoning:root",
    )

    assert result.ok
    assert extract_tool_use(result.data, "write_component") == {"src": "x = 1"}
    assert extract_text(result.data) == "thinking"

    request = requests[0]
    assert str(request.url) == DIRECT_API_URL
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
    body = json.loads(request.content)
    assert body["model"] == "m-1"
    assert body["max_tokens"] == 100
    assert body["system"] == "system text"
    assert body["tool_choice"] == {"type": "auto"}
    assert "_source" not in body

    entry = transcript.snapshot()[0]
    assert entry.source == "reasoning:root"
    assert entry.tools == ["write_component"]
    assert entry.usage == {"input_tokens": 10, "output_tokens": 4, "cache_read_input_tokens": 2}


async def test_relay_mode_has_no_credentials():
    config = RuntimeConfig(api_mode="relay", api_key="sk-test")
    transport, _, requests = _transport(config, lambda r: httpx.Response(200, json=REPLY))

    await transport.call("s", [])

    assert str(requests[0].url) == DEFAULT_RELAY_URL
    assert "x-api-key" not in requests[0].headers
    assert "anthropic-version" not in requests[0].headers


async def test_non_2xx_becomes_error():
    config = RuntimeConfig(api_mode="relay")
    transport, transcript, _ = _transport(config, lambda r: httpx.Response(529, text="overloaded"))

    result = await transport.call("s", [])

    assert result.error == "529: overloaded"
    assert result.data is None
    assert transcript.snapshot()[0].error == "529: overloaded"


async def test_network_error_is_returned_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport, transcript, _ = _transport(RuntimeConfig(api_mode="relay"), handler)
    result = await transport.call("s", [])

    assert result.error == "connection refused"
    assert len(transcript) == 1


async def test_usage_accrues_across_calls():
    transport, _, _ = _transport(RuntimeConfig(api_mode="relay"), lambda r: httpx.Response(200, json=REPLY))

    await transport.call("s", [])
    await transport.call("s", [])

    assert transport.get_accrued_usage() == {
        "input_tokens": 20,
        "output_tokens": 8,
        "cache_read_input_tokens": 4,
    }


def test_response_helpers_tolerate_garbage():
    assert tool_use_blocks(None) == []
    assert extract_text({"content": ["not a block"]}) == ""
    assert extract_tool_use({"content": []}, "respond") is None
