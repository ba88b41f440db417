import asyncio
import base64
import json

import httpx
import pytest

from ai_extractor import (
    ConfigurationError,
    EmptyResponseError,
    ExtractionClient,
    TransportError,
)

from conftest import make_record


def _gemini_reply(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _client(handler, **kwargs):
    http_client = httpx.AsyncClient(
        base_url="https://gemini.test",
        transport=httpx.MockTransport(handler),
    )
    return ExtractionClient("test-key", model="gemini-test", http_client=http_client, **kwargs)


def test_missing_api_key_fails_at_construction():
    with pytest.raises(ConfigurationError, match="API key not configured"):
        ExtractionClient("")


def test_request_bundles_prompt_and_inline_file():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_gemini_reply("Invoice Number\nA1"))

    record = make_record("r.png", data=b"\x89PNGdata")
    text = asyncio.run(_client(handler).extract(record, "PROMPT"))

    assert text == "Invoice Number\nA1"
    assert seen["url"] == "https://gemini.test/v1beta/models/gemini-test:generateContent"
    assert seen["key"] == "test-key"

    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0] == {"text": "PROMPT"}
    assert parts[1]["inline_data"]["mime_type"] == "image/png"
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"\x89PNGdata"
    assert seen["body"]["generationConfig"]["temperature"] == 0.1


def test_multiple_text_parts_are_joined():
    def handler(request):
        reply = {"candidates": [{"content": {"parts": [{"text": "a,"}, {"text": "b"}]}}]}
        return httpx.Response(200, json=reply)

    assert asyncio.run(_client(handler).extract(make_record(), "p")) == "a,b"


@pytest.mark.parametrize("status, rate_limited, quota", [
    (429, True, False),
    (402, False, True),
    (500, False, False),
])
def test_error_status_raises_transport_error(status, rate_limited, quota):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "nope"}})

    with pytest.raises(TransportError) as exc_info:
        asyncio.run(_client(handler).extract(make_record(), "p"))

    assert exc_info.value.status_code == status
    assert exc_info.value.is_rate_limited is rate_limited
    assert exc_info.value.is_quota_exhausted is quota


def test_network_failure_raises_transport_error_without_status():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError) as exc_info:
        asyncio.run(_client(handler).extract(make_record(), "p"))

    assert exc_info.value.status_code is None


@pytest.mark.parametrize("payload", [
    {"candidates": []},
    {},
    _gemini_reply("   \n "),
])
def test_blank_reply_raises_empty_response(payload):
    def handler(request):
        return httpx.Response(200, json=payload)

    with pytest.raises(EmptyResponseError):
        asyncio.run(_client(handler).extract(make_record(), "p"))
