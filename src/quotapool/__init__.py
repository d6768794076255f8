from .adapters import HttpxGenerateClient, RequestsGenerateClient
from .classify import (
    DefaultClassifier,
    ErrorClassifier,
    FunctionalClassifier,
    coerce_classifier,
    kind_for_status,
)
from .env import load_keyconfigs_from_env, load_keyconfigs_from_file, validate_key
from .errors import (
    InvalidConfiguration,
    JobCancelled,
    KeyPoolError,
    KeysBusy,
    PoolExhausted,
    RemoteCallError,
    UnknownJob,
)
from .estimate import estimate_tokens
from .pool import KeyPool, KeyStats, UsageStats
from .report import format_usage_report
from .runner import JobResult, JobRunner
from .types import (
    DEFAULT_TOKEN_CAPACITY,
    AuthConfig,
    FailureKind,
    GenerationResult,
    KeyAssignment,
    KeyConfig,
    PoolConfig,
    RetryConfig,
)

__all__ = [
    "KeyConfig",
    "KeyAssignment",
    "PoolConfig",
    "AuthConfig",
    "RetryConfig",
    "FailureKind",
    "GenerationResult",
    "DEFAULT_TOKEN_CAPACITY",
    "KeyPool",
    "KeyStats",
    "UsageStats",
    "JobRunner",
    "JobResult",
    "ErrorClassifier",
    "DefaultClassifier",
    "FunctionalClassifier",
    "coerce_classifier",
    "kind_for_status",
    "RequestsGenerateClient",
    "HttpxGenerateClient",
    "KeyPoolError",
    "InvalidConfiguration",
    "PoolExhausted",
    "KeysBusy",
    "UnknownJob",
    "JobCancelled",
    "RemoteCallError",
    "estimate_tokens",
    "format_usage_report",
    "load_keyconfigs_from_env",
    "load_keyconfigs_from_file",
    "validate_key",
]
