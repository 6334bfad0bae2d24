import asyncio
import json
import logging
from types import SimpleNamespace

import httpx
import openai
import pytest

from brevita.errors import (
    FatalTransportError,
    TransientTransportError,
    TransportError,
    TransportErrorKind,
)
from brevita.transport import (
    CompletionRequest,
    OpenAITransport,
    ProxyTransport,
    proxy_request_body,
)

SEARCH_REQUEST = CompletionRequest(
    system_instruction="You are an analyst.",
    user_message="Summarize https://news.example/a",
    use_search=True,
    strict_json=False,
)
DIRECT_REQUEST = CompletionRequest(
    system_instruction="You are an analyst.",
    user_message="ARTICLE:\nBody",
)


class FakeResponses:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.exc:
            raise self.exc
        return self.response


class FakeClient:
    def __init__(self, response=None, exc=None):
        self.responses = FakeResponses(response=response, exc=exc)


def _response(text, *citations, status="completed"):
    annotations = [
        SimpleNamespace(type="url_citation", url=url, title=title) for url, title in citations
    ]
    return SimpleNamespace(
        output_text=text,
        status=status,
        incomplete_details=None,
        error=None,
        output=[
            SimpleNamespace(type="web_search_call"),
            SimpleNamespace(
                type="message",
                content=[SimpleNamespace(type="output_text", annotations=annotations)],
            ),
        ],
    )


def _status_error(status_code, message):
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    return openai.APIStatusError(
        message, response=httpx.Response(status_code, request=request), body=None
    )


def test_openai_direct_request_asks_for_json_without_tools():
    client = FakeClient(response=_response('{"summary_30s": "x"}'))
    transport = OpenAITransport(client, model="gpt-test", max_tokens=500, temperature=0.2)

    completion = asyncio.run(transport.complete(DIRECT_REQUEST))

    kwargs = client.responses.calls[0]
    assert kwargs["model"] == "gpt-test"
    assert kwargs["input"][0] == {"role": "system", "content": "You are an analyst."}
    assert kwargs["input"][1] == {"role": "user", "content": "ARTICLE:\nBody"}
    assert kwargs["text"] == {"format": {"type": "json_object"}}
    assert kwargs["max_output_tokens"] == 500
    assert kwargs["temperature"] == 0.2
    assert "tools" not in kwargs
    assert completion.text == '{"summary_30s": "x"}'
    assert completion.grounding_sources == []


def test_openai_search_request_enables_tool_and_reads_citations():
    client = FakeClient(
        response=_response("{}", ("https://news.example/a", "Story A"), ("https://b.example", None))
    )
    transport = OpenAITransport(client, model="gpt-test")

    completion = asyncio.run(transport.complete(SEARCH_REQUEST))

    kwargs = client.responses.calls[0]
    assert kwargs["tools"] == [{"type": "web_search"}]
    assert "text" not in kwargs
    assert "max_output_tokens" not in kwargs
    assert [(s.uri, s.title) for s in completion.grounding_sources] == [
        ("https://news.example/a", "Story A"),
        ("https://b.example", None),
    ]


@pytest.mark.parametrize(
    "status_code, kind",
    [
        (429, TransportErrorKind.RATE_LIMITED),
        (503, TransportErrorKind.OVERLOADED),
    ],
)
def test_openai_retryable_statuses(status_code, kind):
    transport = OpenAITransport(FakeClient(exc=_status_error(status_code, "slow down")), model="m")

    with pytest.raises(TransientTransportError) as excinfo:
        asyncio.run(transport.complete(DIRECT_REQUEST))

    assert excinfo.value.kind is kind
    assert excinfo.value.status == status_code


def test_openai_bad_request_is_fatal():
    transport = OpenAITransport(FakeClient(exc=_status_error(400, "invalid input")), model="m")

    with pytest.raises(FatalTransportError) as excinfo:
        asyncio.run(transport.complete(DIRECT_REQUEST))
    assert excinfo.value.status == 400


def test_openai_connection_error_is_fatal():
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    transport = OpenAITransport(FakeClient(exc=openai.APIConnectionError(request=request)), model="m")

    with pytest.raises(FatalTransportError):
        asyncio.run(transport.complete(DIRECT_REQUEST))


def test_openai_incomplete_response_names_reason():
    response = _response("", status="incomplete")
    response.incomplete_details = SimpleNamespace(reason="max_output_tokens")
    transport = OpenAITransport(FakeClient(response=response), model="m")

    with pytest.raises(FatalTransportError) as excinfo:
        asyncio.run(transport.complete(DIRECT_REQUEST))
    assert "max_output_tokens" in str(excinfo.value)


def test_openai_empty_output_is_fatal():
    transport = OpenAITransport(FakeClient(response=_response("   ")), model="m")

    with pytest.raises(FatalTransportError) as excinfo:
        asyncio.run(transport.complete(DIRECT_REQUEST))
    assert "No response generated" in str(excinfo.value)


def test_proxy_body_shape():
    body = proxy_request_body(SEARCH_REQUEST)
    assert body["messages"] == [
        {"role": "user", "parts": [{"text": "Summarize https://news.example/a"}]}
    ]
    assert body["config"] == {
        "systemInstruction": "You are an analyst.",
        "tools": [{"type": "web_search"}],
    }
    assert proxy_request_body(DIRECT_REQUEST)["config"]["responseMimeType"] == "application/json"


async def _proxy_call(handler, request, base_url="https://proxy.example/"):
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        transport = ProxyTransport(base_url, "session-token", client=client)
        return await transport.complete(request)


def test_proxy_posts_with_bearer_token_and_reads_sources():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "text": '{"summary_30s": "x"}',
                "groundingSources": [{"uri": "https://news.example/a", "title": "A"}],
            },
        )

    completion = asyncio.run(_proxy_call(handler, SEARCH_REQUEST))

    request = seen[0]
    assert str(request.url) == "https://proxy.example/analyze-briefing"
    assert request.headers["authorization"] == "Bearer session-token"
    assert json.loads(request.content) == proxy_request_body(SEARCH_REQUEST)
    assert completion.text == '{"summary_30s": "x"}'
    assert completion.grounding_sources[0].uri == "https://news.example/a"


@pytest.mark.parametrize(
    "status_code, error, kind",
    [
        (429, "RESOURCE_EXHAUSTED", TransportErrorKind.RATE_LIMITED),
        (503, "The model is overloaded", TransportErrorKind.OVERLOADED),
        (500, "quota exceeded upstream", TransportErrorKind.RATE_LIMITED),
        (500, "internal failure", TransportErrorKind.FATAL),
        (401, "Missing bearer token.", TransportErrorKind.FATAL),
    ],
)
def test_proxy_errors_are_classified(status_code, error, kind):
    def handler(request):
        return httpx.Response(status_code, json={"error": error})

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(_proxy_call(handler, DIRECT_REQUEST))

    exc = excinfo.value
    assert exc.kind is kind
    assert exc.status == status_code
    assert error in str(exc)


def test_proxy_empty_text_is_fatal():
    def handler(request):
        return httpx.Response(200, json={"text": ""})

    with pytest.raises(FatalTransportError):
        asyncio.run(_proxy_call(handler, DIRECT_REQUEST))


def test_proxy_network_error_is_fatal():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(FatalTransportError) as excinfo:
        asyncio.run(_proxy_call(handler, DIRECT_REQUEST))
    assert "Could not reach the briefing proxy" in str(excinfo.value)


def test_proxy_skips_malformed_grounding_sources(caplog):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "text": '{"summary_30s": "x"}',
                "groundingSources": [{"uri": 5}, "junk", {"uri": "https://ok.example"}],
            },
        )

    with caplog.at_level(logging.WARNING, logger="brevita.transport"):
        completion = asyncio.run(_proxy_call(handler, SEARCH_REQUEST))

    assert [s.uri for s in completion.grounding_sources] == ["https://ok.example"]
    assert "malformed grounding source" in caplog.text
