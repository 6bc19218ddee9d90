from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from reply_engine.client import ApiConfig, CompletionClient, chat_url, extract_content
from reply_engine.errors import EmptyCompletion, HttpError, NetworkError, NoApiConfig


def _client(handler, **cfg) -> CompletionClient:
    config = ApiConfig(base_url=cfg.pop("base_url", "https://llm.test/v1"), model=cfg.pop("model", "m1"), **cfg)
    return CompletionClient(config, transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    "base,expected",
    [
        ("https://llm.test/v1", "https://llm.test/v1/chat/completions"),
        ("https://llm.test/v1/", "https://llm.test/v1/chat/completions"),
        ("https://llm.test/v1/chat/completions", "https://llm.test/v1/chat/completions"),
        ("https://llm.test/v1/completions/", "https://llm.test/v1/chat/completions"),
        (" https://llm.test/v1 ", "https://llm.test/v1/chat/completions"),
    ],
)
def test_chat_url_normalisation(base, expected):
    assert chat_url(base) == expected


def test_request_shape_and_reply():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": " hey there \n"}}]})

    client = _client(handler, api_key="sk-test", temperature=0.5)
    text = asyncio.run(client.complete("SYSTEM", "USER"))

    assert text == "hey there"
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "m1"
    assert seen["body"]["temperature"] == 0.5
    assert seen["body"]["messages"] == [
        {"role": "system", "content": "SYSTEM"},
        {"role": "user", "content": "USER"},
    ]


def test_no_auth_header_without_key():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "Authorization" not in request.headers
        return httpx.Response(200, json={"choices": [{"text": "ok"}]})

    assert asyncio.run(_client(handler).complete("s", "u")) == "ok"


def test_missing_config_raises_before_any_request():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("no request expected")

    client = CompletionClient(ApiConfig(base_url="", model=""), transport=httpx.MockTransport(handler))
    with pytest.raises(NoApiConfig):
        asyncio.run(client.complete("s", "u"))


def test_http_error_status():
    client = _client(lambda request: httpx.Response(401, text="bad key"))
    with pytest.raises(HttpError) as info:
        asyncio.run(client.complete("s", "u"))
    assert info.value.status == 401
    assert info.value.body == "bad key"


def test_network_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError):
        asyncio.run(_client(handler).complete("s", "u"))


def test_empty_content_carries_finish_reason():
    client = _client(lambda request: httpx.Response(
        200, json={"choices": [{"message": {"content": ""}, "finish_reason": "content_filter"}]}
    ))
    with pytest.raises(EmptyCompletion) as info:
        asyncio.run(client.complete("s", "u"))
    assert info.value.finish_reason == "content_filter"


def test_extract_content_fallbacks():
    assert extract_content({"choices": [{"message": {"content": "  "}}, {"text": "second"}]}) == "second"
    assert extract_content({"message": {"content": "top"}}) == "top"
    assert extract_content({"content": "c"}) == "c"
    assert extract_content({"text": "t"}) == "t"
    assert extract_content([]) == ""
