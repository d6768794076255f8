import email.utils
import time

import httpx
import pytest

from quotapool import (
    FailureKind,
    GenerationResult,
    HttpxGenerateClient,
    JobRunner,
    KeyPool,
    RemoteCallError,
    RetryConfig,
)

OK_BODY = {
    "candidates": [
        {"content": {"parts": [{"text": "thinking", "thought": True}, {"text": "answer"}]}}
    ],
    "usageMetadata": {"promptTokenCount": 50},
}


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_httpx_header_injection_and_parse():
    seen = {}

    def handler(request):
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["path"] = request.url.path
        return httpx.Response(200, json=OK_BODY)

    with HttpxGenerateClient("gemini-2.0-flash", client=_client(handler)) as client:
        result = client("key-alpha-0001", "prompt")
    assert isinstance(result, GenerationResult)
    assert result.text == "answer"
    assert result.prompt_tokens == 50  # noqa: PLR2004
    assert seen["key"] == "key-alpha-0001"
    assert seen["path"].endswith("/models/gemini-2.0-flash:generateContent")


@pytest.mark.parametrize(
    ("status", "text", "kind"),
    [
        (429, "Too Many Requests", FailureKind.QUOTA),
        (400, "API key not valid. Please pass a valid API key.", FailureKind.AUTH_FAILURE),
        (403, "PERMISSION_DENIED", FailureKind.AUTH_FAILURE),
        (500, "internal", FailureKind.TRANSIENT),
        (503, "overloaded", FailureKind.TRANSIENT),
    ],
)
def test_httpx_error_status_classified(status, text, kind):
    client = HttpxGenerateClient("m", client=_client(lambda r: httpx.Response(status, text=text)))
    with pytest.raises(RemoteCallError) as info:
        client("key-alpha-0001", "prompt")
    assert info.value.kind is kind
    assert info.value.status == status


def test_httpx_retry_after_http_date():
    future = email.utils.formatdate(time.time() + 3, usegmt=True)

    def handler(request):
        return httpx.Response(429, headers={"Retry-After": future})

    client = HttpxGenerateClient("m", client=_client(handler))
    with pytest.raises(RemoteCallError) as info:
        client("key-alpha-0001", "prompt")
    assert 1.0 <= info.value.retry_after <= 4.0  # noqa: PLR2004


def test_httpx_transport_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = HttpxGenerateClient("m", client=_client(handler))
    with pytest.raises(RemoteCallError) as info:
        client("key-alpha-0001", "prompt")
    assert info.value.kind is FailureKind.TRANSIENT


def test_runner_fails_over_through_httpx_client():
    def handler(request):
        if request.headers["x-goog-api-key"] == "key-alpha-0001":
            return httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}})
        return httpx.Response(200, json=OK_BODY)

    pool = KeyPool(["key-alpha-0001", "key-bravo-0002"], capacity=10_000)
    with HttpxGenerateClient("m", client=_client(handler)) as client:
        runner = JobRunner(pool, client, retry=RetryConfig(base_delay=0, jitter=0))
        result = runner.run_job(1, "prompt")
    assert result.success
    assert result.value.text == "answer"
    assert pool.keys[0].failed
    assert pool.keys[1].window_usage == 50  # noqa: PLR2004
