import contextlib
import email.utils
import json
import logging
import math
import time
from collections.abc import Iterable, Mapping
from typing import Union

import httpx
import requests

from .classify import kind_for_status
from .errors import RemoteCallError
from .types import AuthConfig, FailureKind, GenerationResult

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TIMEOUT = 120.0

_logger = logging.getLogger("quotapool")

# ---------- Common helpers ----------


def _parse_retry_after(headers: Mapping[str, str], now: float) -> Union[float, None]:
    ra = None
    for k, v in headers.items():
        if k.lower() == "retry-after":
            ra = v
            break
    if ra is None:
        return None
    try:
        return float(ra)
    except ValueError:
        # HTTP-date per RFC7231
        try:
            ts = email.utils.parsedate_to_datetime(ra)
        except (TypeError, ValueError):
            return None
        # Round up so short delays are not truncated to zero
        return max(0.0, float(math.ceil(ts.timestamp() - now)))


def _as_part(part) -> dict:
    if isinstance(part, str):
        return {"text": part}
    if isinstance(part, dict):
        return part
    raise TypeError(f"content parts must be str or dict, got {type(part).__name__}")


def build_request_body(contents, generation_config: Union[dict, None] = None) -> dict:
    """Wrap prompt parts into a generateContent request body.

    ``contents`` is a string, a list of parts (str or part dicts), or an already
    built list of content dicts carrying "parts".
    """
    if isinstance(contents, (str, dict)):
        contents = [contents]
    contents = list(contents)
    if contents and all(isinstance(c, dict) and "parts" in c for c in contents):
        body_contents = contents
    else:
        body_contents = [{"role": "user", "parts": [_as_part(p) for p in contents]}]
    body: dict = {"contents": body_contents}
    if generation_config:
        body["generationConfig"] = dict(generation_config)
    return body


def parse_generation(payload) -> GenerationResult:
    """Extract text and token usage from a generateContent response body."""
    if not isinstance(payload, dict):
        raise RemoteCallError("response body is not a JSON object", FailureKind.MALFORMED_RESPONSE)
    candidates = payload.get("candidates") or []
    texts: list[str] = []
    for cand in candidates[:1]:
        for part in (cand.get("content") or {}).get("parts") or []:
            if isinstance(part, dict) and part.get("text") and not part.get("thought"):
                texts.append(part["text"])
    text = "".join(texts)
    if not text.strip():
        raise RemoteCallError("Empty response received from API", FailureKind.MALFORMED_RESPONSE)
    usage = payload.get("usageMetadata") or {}
    return GenerationResult(
        text=text,
        prompt_tokens=usage.get("promptTokenCount"),
        output_tokens=usage.get("candidatesTokenCount"),
        raw=payload,
    )


def _raise_for_status(status: int, headers: Mapping[str, str], text: str) -> None:
    if status < 400:  # noqa: PLR2004
        return
    kind = kind_for_status(status, text)
    retry_after = _parse_retry_after(headers, time.time())
    raise RemoteCallError(
        f"generateContent failed with HTTP {status}: {text[:200]}",
        kind,
        status=status,
        retry_after=retry_after,
    )


class _GenerateClientBase:
    def __init__(
        self,
        model: str,
        base_url: str = GEMINI_BASE_URL,
        auth_config: Union[AuthConfig, None] = None,
        generation_config: Union[dict, None] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.auth_config = auth_config or AuthConfig()
        self.generation_config = generation_config
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _auth(self, key: str) -> tuple[dict[str, str], dict[str, str]]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        params: dict[str, str] = {}
        ac = self.auth_config
        if ac.in_ == "query":
            params[ac.query_param] = key
        else:
            headers[ac.header] = f"{ac.scheme} {key}".strip()
        return headers, params

    def _result(self, status: int, headers: Mapping[str, str], text: str) -> GenerationResult:
        _raise_for_status(status, headers, text)
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise RemoteCallError(
                f"response is not valid JSON: {e}", FailureKind.MALFORMED_RESPONSE, status=status
            ) from e
        return parse_generation(payload)


# ---------- requests (sync) ----------


class RequestsGenerateClient(_GenerateClientBase):
    """generateContent over a requests.Session; ``client(key, contents)`` performs one call."""

    def __init__(self, model: str, session=None, **kwargs):
        super().__init__(model, **kwargs)
        self._own_session = session is None
        self.session = session or requests.Session()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self._own_session:
            with contextlib.suppress(Exception):
                self.session.close()

    def __call__(self, key: str, contents: Union[str, Iterable]) -> GenerationResult:
        headers, params = self._auth(key)
        body = build_request_body(contents, self.generation_config)
        _logger.debug(f"req start model={self.model} url={self.url}")
        try:
            resp = self.session.post(
                self.url, headers=headers, params=params, json=body, timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteCallError(f"request error: {e}", FailureKind.TRANSIENT) from e
        _logger.debug(f"req done model={self.model} status={resp.status_code}")
        return self._result(resp.status_code, dict(resp.headers), resp.text)


# ---------- httpx (sync) ----------


class HttpxGenerateClient(_GenerateClientBase):
    """generateContent over an httpx.Client; ``client(key, contents)`` performs one call."""

    def __init__(self, model: str, client: Union[httpx.Client, None] = None, **kwargs):
        super().__init__(model, **kwargs)
        self._own_client = client is None
        self.client = client or httpx.Client(timeout=self.timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self):
        if self._own_client:
            with contextlib.suppress(Exception):
                self.client.close()

    def __call__(self, key: str, contents: Union[str, Iterable]) -> GenerationResult:
        headers, params = self._auth(key)
        body = build_request_body(contents, self.generation_config)
        _logger.debug(f"req start model={self.model} url={self.url}")
        try:
            resp = self.client.post(self.url, headers=headers, params=params, json=body)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise RemoteCallError(f"request error: {e}", FailureKind.TRANSIENT) from e
        _logger.debug(f"req done model={self.model} status={resp.status_code}")
        return self._result(resp.status_code, resp.headers, resp.text)
