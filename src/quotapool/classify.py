import inspect
from typing import Callable, Union

import httpx
import requests

from .errors import RemoteCallError
from .types import FailureKind

# Wording the generative API uses when a key is out of quota or rate limited.
QUOTA_MARKERS = ("quota", "resource_exhausted", "rate limit", "too many requests")
# Wording for keys that are revoked, malformed or lack permission.
AUTH_MARKERS = ("api key not valid", "api_key_invalid", "permission_denied", "unauthenticated")

DEFAULT_CLASSIFY_ARGC = 1


def _count_positional_args(fn, default: int) -> int:
    """Return count of positional params for fn; fall back to default on failure."""
    try:
        sig = inspect.signature(fn)
        return len(
            [
                p
                for p in sig.parameters.values()
                if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
            ]
        )
    except (TypeError, ValueError):
        return default


def kind_for_status(status: int, body: str = "") -> FailureKind:
    """Map an HTTP error status (plus optional response text) to a FailureKind."""
    text = body.lower()
    if status == 429:  # noqa: PLR2004, http status code can be constant
        return FailureKind.QUOTA
    if any(m in text for m in QUOTA_MARKERS):
        return FailureKind.QUOTA
    if status in (401, 403) or any(m in text for m in AUTH_MARKERS):
        return FailureKind.AUTH_FAILURE
    if status == 408 or status >= 500:  # noqa: PLR2004
        return FailureKind.TRANSIENT
    return FailureKind.MALFORMED_RESPONSE


class ErrorClassifier:
    """Decides how a failed remote call affects the key that made it."""

    def classify(self, error: BaseException) -> FailureKind:
        raise NotImplementedError


class DefaultClassifier(ErrorClassifier):
    """Typed errors first; HTTP status next; message wording only as a last resort."""

    def classify(self, error: BaseException) -> FailureKind:
        if isinstance(error, RemoteCallError):
            return error.kind
        if isinstance(error, httpx.HTTPStatusError):
            return kind_for_status(error.response.status_code, error.response.text)
        if isinstance(error, requests.HTTPError) and error.response is not None:
            return kind_for_status(error.response.status_code, error.response.text)
        if isinstance(
            error,
            (
                httpx.TransportError,
                requests.ConnectionError,
                requests.Timeout,
                ConnectionError,
                TimeoutError,
            ),
        ):
            return FailureKind.TRANSIENT
        text = str(error).lower()
        if "429" in text or any(m in text for m in QUOTA_MARKERS):
            return FailureKind.QUOTA
        if any(m in text for m in AUTH_MARKERS):
            return FailureKind.AUTH_FAILURE
        if isinstance(error, ValueError):
            return FailureKind.MALFORMED_RESPONSE
        return FailureKind.TRANSIENT


class FunctionalClassifier(ErrorClassifier):
    """Wrap a user-supplied classification function.

    The function receives the exception and returns a FailureKind, or the
    string value of one ("quota", "auth_failure", "transient",
    "malformed_response"), or None to defer to the DefaultClassifier.
    """

    def __init__(self, classify_fn: Callable):
        self.classify_fn = classify_fn
        self._fallback = DefaultClassifier()

    def classify(self, error):
        kind = self.classify_fn(error)
        if kind is None:
            return self._fallback.classify(error)
        if isinstance(kind, str):
            return FailureKind(kind.lower())
        if not isinstance(kind, FailureKind):
            raise TypeError("Custom classify function must return a FailureKind, str or None")
        return kind


def coerce_classifier(classifier: Union[object, None]) -> ErrorClassifier:
    """Turn None | ErrorClassifier | callable into an ErrorClassifier.

    Accepted inputs:
      - None                  -> DefaultClassifier
      - ErrorClassifier       (returned as-is)
      - callable(error)       -> FunctionalClassifier
    """
    if classifier is None:
        return DefaultClassifier()
    if isinstance(classifier, ErrorClassifier):
        return classifier
    if callable(classifier):
        if _count_positional_args(classifier, DEFAULT_CLASSIFY_ARGC) < 1:
            raise TypeError("classify function must accept the exception as an argument")
        return FunctionalClassifier(classifier)
    raise TypeError("classifier must be None, an ErrorClassifier, or a callable")
