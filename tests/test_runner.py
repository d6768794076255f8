import threading
import time

import pytest

from quotapool import (
    FailureKind,
    GenerationResult,
    InvalidConfiguration,
    JobCancelled,
    JobRunner,
    KeyPool,
    PoolExhausted,
    RemoteCallError,
    RetryConfig,
)

KEYS = ["key-alpha-0001", "key-bravo-0002", "key-charlie-0003"]
NO_WAIT = RetryConfig(max_attempts=3, base_delay=0.0, jitter=0)


def _quota():
    return RemoteCallError("429 RESOURCE_EXHAUSTED", FailureKind.QUOTA, status=429)


class ScriptedCall:
    """Fake remote call: pops an outcome per call (exception to raise or value to return)."""

    def __init__(self, *outcomes, default="ok"):
        self.outcomes = list(outcomes)
        self.default = default
        self.keys_seen: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, key, payload):
        with self._lock:
            self.keys_seen.append(key)
            outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def test_success_records_usage_and_clears_assignment():
    pool = KeyPool(KEYS)
    call = ScriptedCall("mock json")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(2, "prompt")
    assert result.success
    assert result.value == "mock json"
    assert result.key_index == 1
    assert result.attempts == 1
    assert call.keys_seen == ["key-bravo-0002"]
    assert pool.stats().usage == {0: 0, 1: 1, 2: 0}
    assert pool._assignments == {}


def test_quota_error_fails_over_to_next_key():
    pool = KeyPool(KEYS)
    call = ScriptedCall(_quota(), "done")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(1, "prompt")
    assert result.success
    assert result.key_index == 1
    assert result.attempts == 2  # noqa: PLR2004
    assert call.keys_seen == ["key-alpha-0001", "key-bravo-0002"]
    assert pool.keys[0].failed
    assert pool.stats().usage[0] == 0


def test_auth_error_burns_key_too():
    pool = KeyPool(KEYS)
    call = ScriptedCall(RemoteCallError("API key not valid", FailureKind.AUTH_FAILURE), "done")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(3, None)
    assert result.success
    assert pool.keys[2].failed
    assert result.key_index == 0


def test_transient_error_retries_same_key_without_touching_pool():
    pool = KeyPool(KEYS)
    call = ScriptedCall(ConnectionError("socket hang up"), "done")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(1, None)
    assert result.success
    assert result.attempts == 2  # noqa: PLR2004
    assert call.keys_seen == ["key-alpha-0001", "key-alpha-0001"]
    assert pool.stats().failed == 0


def test_malformed_response_retried_until_attempts_run_out():
    pool = KeyPool(KEYS)
    bad = RemoteCallError("Empty response received from API", FailureKind.MALFORMED_RESPONSE)
    call = ScriptedCall(bad, bad, bad, "never reached")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(1, None)
    assert not result.success
    assert result.error is bad
    assert result.attempts == 3  # noqa: PLR2004
    assert pool.stats().failed == 0


def test_retry_after_is_honoured(monkeypatch):
    pool = KeyPool(KEYS)
    err = RemoteCallError("overloaded", FailureKind.TRANSIENT, status=503, retry_after=4.0)
    runner = JobRunner(pool, ScriptedCall(err, "done"), retry=RetryConfig(jitter=0))
    slept = []
    monkeypatch.setattr(runner, "_sleep", slept.append)
    assert runner.run_job(1, None).success
    assert slept == [4.0]


def test_every_key_out_of_quota_fails_job_with_cause():
    pool = KeyPool(KEYS[:2])
    first, second = _quota(), _quota()
    call = ScriptedCall(first, second)
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(1, None)
    assert not result.success
    assert result.error is second
    assert pool.stats().available == 0


def test_exhausted_pool_fails_job_at_assignment():
    pool = KeyPool(KEYS[:1])
    pool.mark_key_failed(0, "quota")
    result = JobRunner(pool, ScriptedCall()).run_job(1, None)
    assert not result.success
    assert isinstance(result.error, PoolExhausted)
    assert result.attempts == 0


def test_run_all_orders_results_and_isolates_failures():
    pool = KeyPool(KEYS)

    def call(key, payload):
        if payload == "broken":
            raise RemoteCallError("bad json", FailureKind.MALFORMED_RESPONSE)
        return payload.upper()

    runner = JobRunner(pool, call, retry=NO_WAIT, concurrency=4)
    results = runner.run_all({3: "c", 1: "a", 2: "broken", 4: "d"})
    assert [r.job_id for r in results] == [1, 2, 3, 4]
    assert [r.success for r in results] == [True, False, True, True]
    assert results[0].value == "A"
    assert pool.stats().failed == 0


def test_quota_aware_tracks_actual_or_estimated_cost():
    pool = KeyPool(KEYS, capacity=1000)
    call = ScriptedCall(GenerationResult(text="{}", prompt_tokens=42), "plain")
    runner = JobRunner(pool, call, retry=NO_WAIT, estimator=lambda payload: 10)
    assert runner.run_job(1, "p").success
    assert runner.run_job(2, "p").success
    assert pool.keys[0].window_usage == 42  # noqa: PLR2004
    assert pool.keys[1].window_usage == 10  # noqa: PLR2004


def test_quota_aware_moves_job_off_a_full_key():
    pool = KeyPool(KEYS, capacity=100)
    pool.track_usage(0, 95)
    call = ScriptedCall("done")
    result = JobRunner(pool, call, retry=NO_WAIT, estimator=lambda p: 20).run_job(1, None)
    assert result.success
    assert result.key_index == 1


def test_window_policy_parks_key_instead_of_failing_it():
    pool = KeyPool(KEYS, capacity=100)
    call = ScriptedCall(_quota(), "done")
    runner = JobRunner(
        pool, call, retry=NO_WAIT, quota_policy="window", estimator=lambda p: 10
    )
    result = runner.run_job(1, None)
    assert result.success
    assert result.key_index == 1
    state = pool.keys[0]
    assert not state.failed
    assert state.window_usage >= 100  # noqa: PLR2004


def test_window_policy_needs_capacity():
    with pytest.raises(InvalidConfiguration):
        JobRunner(KeyPool(KEYS), ScriptedCall(), quota_policy="window")
    with pytest.raises(ValueError):
        JobRunner(KeyPool(KEYS), ScriptedCall(), quota_policy="sometimes")


def test_cancel_interrupts_backoff():
    pool = KeyPool(KEYS)
    runner = JobRunner(pool, ScriptedCall(ConnectionError("reset")), retry=RetryConfig(jitter=0))
    runner.cancel()
    result = runner.run_job(1, None)
    assert not result.success
    assert isinstance(result.error, JobCancelled)
    assert pool._assignments == {}


def test_exclusive_pool_never_shares_a_key_between_jobs():
    pool = KeyPool(KEYS[:2], exclusive=True)
    active: set[str] = set()
    guard = threading.Lock()
    overlaps = []

    def call(key, payload):
        with guard:
            if key in active:
                overlaps.append(key)
            active.add(key)
        time.sleep(0.02)
        with guard:
            active.discard(key)
        return payload

    runner = JobRunner(pool, call, retry=NO_WAIT, concurrency=4)
    results = runner.run_all((i, i) for i in range(1, 7))
    assert all(r.success for r in results)
    assert overlaps == []
    assert not any(k.locked for k in pool.keys)
    assert sum(pool.stats().usage.values()) == 6  # noqa: PLR2004


def test_exclusive_pool_releases_key_after_failure():
    pool = KeyPool(KEYS[:2], exclusive=True)
    call = ScriptedCall(_quota(), "done")
    result = JobRunner(pool, call, retry=NO_WAIT).run_job(1, None)
    assert result.success
    assert pool.keys[0].failed
    assert not any(k.locked for k in pool.keys)


def test_rate_limit_delay_is_spread_across_keys(monkeypatch):
    pool = KeyPool(KEYS[:2])
    runner = JobRunner(pool, ScriptedCall("done"), rate_limit_delay=1.0)
    slept = []
    monkeypatch.setattr(runner, "_sleep", slept.append)
    runner.run_job(1, None)
    assert slept == [0.5]


def test_run_all_keeps_other_results_when_one_job_blows_up():
    pool = KeyPool(KEYS, capacity=1000)
    runner = JobRunner(pool, lambda key, payload: payload, retry=NO_WAIT)
    # the default estimator cannot size an arbitrary object
    results = runner.run_all({1: "a", 2: object(), 3: "c"})
    assert [r.job_id for r in results] == [1, 2, 3]
    assert [r.success for r in results] == [True, False, True]
    assert isinstance(results[1].error, TypeError)
    assert results[2].value == "c"


def test_cancel_interrupts_quota_window_wait():
    pool = KeyPool(KEYS[:1], capacity=100)
    call = ScriptedCall(_quota(), "done")
    runner = JobRunner(
        pool, call, retry=NO_WAIT, quota_policy="window", estimator=lambda p: 10
    )
    timer = threading.Timer(0.1, runner.cancel)
    timer.start()
    try:
        result = runner.run_job(1, None)
    finally:
        timer.cancel()
    assert not result.success
    assert isinstance(result.error, JobCancelled)
    assert len(call.keys_seen) == 1
    assert not pool.keys[0].failed


def test_window_policy_retries_after_window_rolls_over(monkeypatch):
    clock = {"t": 1000.0}
    monkeypatch.setattr(KeyPool, "_now", lambda self: clock["t"])
    pool = KeyPool(KEYS[:1], capacity=100)
    call = ScriptedCall(_quota(), "done")
    runner = JobRunner(
        pool, call, retry=NO_WAIT, quota_policy="window", estimator=lambda p: 10
    )
    slept = []

    def fake_sleep(seconds):
        slept.append(seconds)
        clock["t"] += seconds

    monkeypatch.setattr(runner, "_sleep", fake_sleep)
    result = runner.run_job(1, None)
    assert result.success
    assert result.key_index == 0
    assert result.attempts == 2  # noqa: PLR2004
    assert slept == [pytest.approx(61.0)]
    assert call.keys_seen == ["key-alpha-0001", "key-alpha-0001"]
    assert pool.keys[0].window_usage == 10  # noqa: PLR2004
