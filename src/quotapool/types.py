import enum
import random
from dataclasses import dataclass
from typing import Literal

# Free-tier input budget of the generative API, tokens per minute.
DEFAULT_TOKEN_CAPACITY = 125_000
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MIN_KEY_LENGTH = 10


class FailureKind(enum.Enum):
    QUOTA = "quota"
    AUTH_FAILURE = "auth_failure"
    TRANSIENT = "transient"
    MALFORMED_RESPONSE = "malformed_response"

    @property
    def burns_key(self) -> bool:
        return self in (FailureKind.QUOTA, FailureKind.AUTH_FAILURE)


@dataclass
class KeyConfig:
    name: str
    token: str


@dataclass(frozen=True)
class KeyAssignment:
    key: str
    index: int


@dataclass(frozen=True)
class PoolConfig:
    # Per-key consumed-capacity ceiling per window. None disables quota tracking.
    capacity: int | None = None
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    min_key_length: int = DEFAULT_MIN_KEY_LENGTH
    # Lock keys handed out by get_next_available_key until release_key.
    exclusive: bool = False


@dataclass(frozen=True)
class AuthConfig:
    header: str = "x-goog-api-key"
    scheme: str = ""
    in_: Literal["header", "query"] = "header"
    query_param: str = "key"


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    growth: float = 1.5
    cap: float = 30.0
    # Fractional spread applied to computed delays, 0 disables.
    jitter: float = 0.1
    honor_retry_after: bool = True

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.honor_retry_after and retry_after is not None and retry_after > 0:
            return min(self.cap, retry_after)
        base = min(self.cap, self.base_delay * (self.growth ** max(0, attempt - 1)))
        if self.jitter <= 0:
            return base
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))


@dataclass
class GenerationResult:
    text: str
    prompt_tokens: int | None = None
    output_tokens: int | None = None
    raw: dict | None = None
