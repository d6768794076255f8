import logging
import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Union

from .classify import coerce_classifier
from .errors import InvalidConfiguration, JobCancelled, KeysBusy, PoolExhausted
from .estimate import estimate_tokens
from .pool import KeyPool
from .types import FailureKind, KeyAssignment, RetryConfig

QUOTA_POLICIES = ("permanent", "window")
# Floor for the per-call pacing delay, seconds.
MIN_PACING_DELAY = 0.1
# How long to wait before polling again when every healthy key is locked.
BUSY_POLL_INTERVAL = 0.25
# Extra time slept past a window boundary before retrying the key.
WINDOW_SLACK = 1.0


@dataclass
class JobResult:
    job_id: int
    success: bool
    value: Any = None
    error: Union[BaseException, None] = None
    key_index: Union[int, None] = None
    attempts: int = 0


class JobRunner:
    """Runs jobs against a KeyPool: picks keys, reports outcomes, retries and fails over.

    ``call(key, payload)`` performs the remote call for one job and either returns
    a value or raises. Failures are classified (see quotapool.classify): quota and
    auth failures burn the key and move the job to another one; transient and
    malformed-response failures are retried on the same key after a backoff and
    never touch pool state.

    quota_policy:
      - "permanent": a quota failure marks the key failed for the rest of the run.
      - "window": a quota failure only saturates the key's current window, so it
        comes back once the window rolls over. Needs a pool built with a capacity.
    """

    def __init__(
        self,
        pool: KeyPool,
        call: Callable[[str, Any], Any],
        classifier=None,
        retry: Union[RetryConfig, None] = None,
        concurrency: int = 3,
        rate_limit_delay: float = 0.0,
        quota_policy: str = "permanent",
        estimator: Union[Callable[[Any], int], None] = None,
    ):
        if quota_policy not in QUOTA_POLICIES:
            raise ValueError(f"quota_policy must be one of {QUOTA_POLICIES}, got {quota_policy!r}")
        if quota_policy == "window" and not pool.quota_aware:
            raise InvalidConfiguration("the 'window' quota policy needs a pool with a capacity")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.pool = pool
        self.call = call
        self.classifier = coerce_classifier(classifier)
        self.retry = retry or RetryConfig()
        self.concurrency = concurrency
        self.rate_limit_delay = rate_limit_delay
        self.quota_policy = quota_policy
        self.estimator = estimator or estimate_tokens
        self._cancel = threading.Event()
        self._logger = logging.getLogger("quotapool")

    # ---------- cancellation ----------
    def cancel(self) -> None:
        """Interrupt every wait in progress; affected jobs end with JobCancelled."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _sleep(self, seconds: float) -> None:
        if self._cancel.wait(max(0.0, seconds)):
            raise JobCancelled("job runner was cancelled")

    # ---------- key acquisition ----------
    def _acquire(self, job_id: int, cost: Union[int, None]) -> KeyAssignment:
        pool = self.pool
        if pool.exclusive:
            while True:
                try:
                    if cost is not None:
                        return pool.get_best_key_for_cost(cost)
                    return pool.get_next_available_key()
                except KeysBusy:
                    self._sleep(BUSY_POLL_INTERVAL)
        assignment = pool.get_key_for_job(job_id)
        if cost is not None and not pool.can_handle(assignment.index, cost):
            better = pool.get_best_key_for_cost(cost)
            if better.index != assignment.index:
                pool.reassign_job(job_id, better.index)
                self._logger.info(
                    f"Job {job_id} moved to API key {better.index + 1} (key "
                    f"{assignment.index + 1} has no room for ~{cost} tokens)"
                )
            assignment = better
        return assignment

    def _wait_for_window(self, job_id: int, index: int, cost: int) -> None:
        # an oversized request never fits; waiting would only delay it
        if cost > self.pool.config.capacity or self.pool.can_handle(index, cost):
            return
        wait = self.pool.seconds_until_reset(index)
        if wait <= 0:
            return
        self._logger.info(
            f"Job {job_id} waiting {wait:.0f}s for quota reset on API key {index + 1}"
        )
        self._sleep(wait + WINDOW_SLACK)

    # ---------- failure handling ----------
    def _fail_over(self, job_id: int, index: int, kind: FailureKind, error: BaseException) -> bool:
        """Take the failed key out of play. Returns False if no other key is left."""
        if kind is FailureKind.QUOTA and self.quota_policy == "window":
            self.pool.exhaust_window(index)
            return True
        self.pool.mark_key_failed(index, error)
        if self.pool.exclusive:
            return True
        try:
            alt = self.pool.get_next_available_key(exclude_index=index)
            self.pool.reassign_job(job_id, alt.index)
        except PoolExhausted:
            self._logger.error(f"No alternative API keys available for job {job_id}")
            return False
        self._logger.info(f"Job {job_id} switched to API key {alt.index + 1} for retry")
        return True

    def _attempt(self, job_id: int, assignment: KeyAssignment, payload, attempt: int):
        if self.rate_limit_delay > 0:
            self._sleep(max(MIN_PACING_DELAY, self.rate_limit_delay / len(self.pool)))
        self._logger.info(
            f"Job {job_id} - attempt {attempt}/{self.retry.max_attempts} "
            f"(API key {assignment.index + 1})"
        )
        return self.call(assignment.key, payload)

    # ---------- public API ----------
    def run_job(self, job_id: int, payload: Any = None) -> JobResult:
        pool = self.pool
        cost = None
        if pool.quota_aware:
            cost = self.estimator(payload)
            if cost > pool.config.capacity:
                self._logger.warning(
                    f"Job {job_id} request size (~{cost:,} tokens) exceeds the per-window "
                    f"limit ({pool.config.capacity:,})"
                )
        if not pool.exclusive:
            try:
                first = pool.assign_key_to_job(job_id)
            except PoolExhausted as e:
                self._logger.error(f"Could not assign API key to job {job_id}: {e}")
                return JobResult(job_id, False, error=e)
            self._logger.info(f"Job {job_id} assigned to API key {first.index + 1}")

        last_error: Union[BaseException, None] = None
        key_index: Union[int, None] = None
        attempt = 0
        try:
            for attempt in range(1, self.retry.max_attempts + 1):
                try:
                    assignment = self._acquire(job_id, cost)
                except PoolExhausted as e:
                    last_error = e
                    break
                key_index = assignment.index
                try:
                    if cost is not None:
                        self._wait_for_window(job_id, key_index, cost)
                    value = self._attempt(job_id, assignment, payload, attempt)
                except JobCancelled:
                    raise
                except Exception as e:
                    last_error = e
                    kind = self.classifier.classify(e)
                    self._logger.warning(
                        f"Job {job_id} attempt {attempt} on API key {key_index + 1} "
                        f"failed ({kind.value}): {e}"
                    )
                    if kind.burns_key:
                        if not self._fail_over(job_id, key_index, kind, e):
                            break
                        continue
                    if attempt < self.retry.max_attempts:
                        delay = self.retry.delay(attempt, getattr(e, "retry_after", None))
                        self._logger.info(f"Waiting {delay:.2f}s before retry...")
                        self._sleep(delay)
                    continue
                finally:
                    if pool.exclusive:
                        pool.release_key(key_index)

                pool.increment_usage(key_index)
                if cost is not None:
                    actual = getattr(value, "prompt_tokens", None)
                    pool.track_usage(key_index, actual if actual is not None else cost)
                self._logger.info(f"Job {job_id} completed with API key {key_index + 1}")
                return JobResult(job_id, True, value=value, key_index=key_index, attempts=attempt)
        except JobCancelled as e:
            last_error = e
        finally:
            if not pool.exclusive:
                pool.complete_job(job_id)

        self._logger.error(f"Job {job_id} failed after {attempt} attempts: {last_error}")
        return JobResult(job_id, False, error=last_error, key_index=key_index, attempts=attempt)

    def run_all(self, jobs: Union[Mapping[int, Any], Iterable[tuple[int, Any]]]) -> list[JobResult]:
        """Run jobs concurrently on up to ``concurrency`` threads; results ordered by job id."""
        items = list(jobs.items()) if isinstance(jobs, Mapping) else list(jobs)
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [
                (job_id, executor.submit(self.run_job, job_id, payload)) for job_id, payload in items
            ]
            results = []
            for job_id, future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    # a job that blew up outside its retry loop still only fails itself
                    self._logger.error(f"Job {job_id} aborted: {e!r}")
                    results.append(JobResult(job_id, False, error=e))
        results.sort(key=lambda r: r.job_id)
        ok = sum(1 for r in results if r.success)
        self._logger.info(f"{ok}/{len(results)} jobs succeeded")
        return results
