import dataclasses
import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Union

from .env import load_keyconfigs_from_env, load_keyconfigs_from_file, validate_key
from .errors import InvalidConfiguration, KeysBusy, PoolExhausted, UnknownJob
from .state import KeyState
from .types import KeyAssignment, KeyConfig, PoolConfig

_CONFIG_FIELDS = {f.name for f in dataclasses.fields(PoolConfig)}

# ---------- Reporting snapshots ----------


@dataclass(frozen=True)
class KeyStats:
    index: int
    name: str
    masked: str
    calls: int
    failed: bool
    locked: bool
    window_usage: int
    resets_in: float


@dataclass(frozen=True)
class UsageStats:
    keys: tuple[KeyStats, ...]
    capacity: Union[int, None] = None

    @property
    def total(self) -> int:
        return len(self.keys)

    @property
    def failed(self) -> int:
        return sum(1 for k in self.keys if k.failed)

    @property
    def available(self) -> int:
        return self.total - self.failed

    @property
    def usage(self) -> dict[int, int]:
        return {k.index: k.calls for k in self.keys}


# ---------- Base scheduler (shared logic; synchronization handled by subclasses) ----------


class _Scheduler:
    def __init__(self, keys: Iterable[Union[str, KeyConfig]], config: PoolConfig):
        """Initialize a _Scheduler.

        Args:
            keys (Iterable[str | KeyConfig]): raw tokens or named KeyConfig entries, in order
            config (PoolConfig): capacity/window/exclusivity settings

        Raises:
            InvalidConfiguration: if no usable key remains after trimming and validation
        """
        self.config = config
        self._logger = logging.getLogger("quotapool")
        now = self._now()
        self._keys: list[KeyState] = []
        for position, entry in enumerate(keys):
            if isinstance(entry, KeyConfig):
                name, token = entry.name, entry.token
            elif isinstance(entry, str):
                name, token = None, entry
            else:
                raise TypeError(f"keys must be str or KeyConfig, got {type(entry).__name__}")
            if not token or not token.strip():
                continue
            try:
                token = validate_key(token, config.min_key_length)
            except InvalidConfiguration as e:
                self._logger.warning(f"dropping key entry {name or position + 1}: {e}")
                continue
            idx = len(self._keys)
            self._keys.append(
                KeyState(
                    index=idx,
                    name=name or f"key_{idx + 1}",
                    token=token,
                    window_started_at=now,
                )
            )
        if not self._keys:
            raise InvalidConfiguration("No valid API keys found")
        # job id -> key index
        self._assignments: dict[int, int] = {}
        # jobs whose key failed under them; they re-resolve on next lookup
        self._orphaned: set[int] = set()

    def _now(self) -> float:
        return time.time()

    def _state(self, index: int) -> KeyState:
        if not 0 <= index < len(self._keys):
            raise IndexError(f"key index {index} out of range for pool of {len(self._keys)}")
        return self._keys[index]

    def _healthy(self) -> list[KeyState]:
        return [k for k in self._keys if not k.failed]

    def _assignment(self, ks: KeyState) -> KeyAssignment:
        return KeyAssignment(key=ks.token, index=ks.index)

    # --- static assignment ---
    def _assign(self, job_id: int) -> KeyAssignment:
        if isinstance(job_id, bool) or not isinstance(job_id, int) or job_id < 1:
            raise ValueError(f"job id must be a positive integer, got {job_id!r}")
        if not self._healthy():
            raise PoolExhausted("All API keys have failed or exceeded quota")
        n = len(self._keys)
        start = (job_id - 1) % n
        for step in range(n):
            ks = self._keys[(start + step) % n]
            if not ks.failed:
                self._assignments[job_id] = ks.index
                self._orphaned.discard(job_id)
                return self._assignment(ks)
        raise PoolExhausted("No available API keys")

    def _resolve(self, job_id: int) -> KeyAssignment:
        idx = self._assignments.get(job_id)
        if idx is None:
            if job_id not in self._orphaned:
                raise UnknownJob(job_id)
            self._logger.info(f"Reassigning key for job {job_id} (previous key failed)")
            return self._assign(job_id)
        ks = self._keys[idx]
        if ks.failed:
            self._logger.info(f"Reassigning key for job {job_id} (previous key failed)")
            return self._assign(job_id)
        return self._assignment(ks)

    def _reassign(self, job_id: int, index: int) -> None:
        ks = self._state(index)
        if ks.failed:
            raise PoolExhausted(f"cannot assign failed {ks.label()} to job {job_id}")
        self._assignments[job_id] = index
        self._orphaned.discard(job_id)

    # --- failover selection ---
    def _claim(self, candidates: list[KeyState]) -> list[KeyState]:
        if not self.config.exclusive:
            return candidates
        free = [k for k in candidates if not k.locked]
        if not free:
            raise KeysBusy("No available API keys. All keys are either failed or locked.")
        return free

    def _pick_next(self, exclude_index: Union[int, None]) -> KeyAssignment:
        healthy = self._healthy()
        if not healthy:
            raise PoolExhausted("All API keys have failed or exceeded quota")
        candidates = [k for k in healthy if k.index != exclude_index]
        if not candidates:
            raise PoolExhausted("No available API keys")
        ks = self._claim(candidates)[0]
        if self.config.exclusive:
            ks.locked = True
        return self._assignment(ks)

    def _mark_failed(self, index: int, error: Union[BaseException, str, None]) -> None:
        ks = self._state(index)
        if ks.failed:
            return
        ks.failed = True
        ks.locked = False
        for job_id in [j for j, i in self._assignments.items() if i == index]:
            del self._assignments[job_id]
            self._orphaned.add(job_id)
        detail = f": {error}" if error else ""
        self._logger.warning(f"API {ks.label()} marked as failed{detail}")
        remaining = len(self._healthy())
        if remaining:
            self._logger.info(f"{remaining} API keys remaining")
        else:
            self._logger.error("All API keys have failed or exceeded quota")

    # --- quota window bookkeeping ---
    def _require_capacity(self) -> int:
        if self.config.capacity is None:
            raise InvalidConfiguration("pool has no capacity configured; quota tracking is off")
        return self.config.capacity

    def _reset_window_if_needed(self, ks: KeyState, now: float) -> None:
        if now - ks.window_started_at >= self.config.window_seconds:
            if ks.window_usage:
                self._logger.info(f"Reset usage window for API {ks.label()}")
            ks.window_usage = 0
            ks.window_started_at = now

    def _can_handle(self, ks: KeyState, cost: int, now: float) -> bool:
        capacity = self._require_capacity()
        self._reset_window_if_needed(ks, now)
        return ks.window_usage + cost <= capacity

    def _best_for_cost(self, cost: int, exclude_index: Union[int, None]) -> KeyAssignment:
        self._require_capacity()
        healthy = self._healthy()
        if not healthy:
            raise PoolExhausted("All API keys have failed or exceeded quota")
        # the excluded key is still better than nothing when it is the only usable one
        usable = self._claim(healthy)
        candidates = [k for k in usable if k.index != exclude_index] or usable
        now = self._now()
        chosen = next((k for k in candidates if self._can_handle(k, cost, now)), None)
        if chosen is None:
            chosen = min(candidates, key=lambda k: k.window_started_at)
            self._logger.debug(
                f"no key can absorb {cost} now; {chosen.label()} resets soonest"
            )
        if self.config.exclusive:
            chosen.locked = True
        return self._assignment(chosen)

    def _track(self, ks: KeyState, cost: int) -> None:
        capacity = self._require_capacity()
        self._reset_window_if_needed(ks, self._now())
        ks.window_usage += cost
        self._logger.debug(f"API {ks.label()}: {ks.window_usage}/{capacity} this window")

    def _snapshot(self) -> UsageStats:
        now = self._now()
        window = self.config.window_seconds
        return UsageStats(
            keys=tuple(
                KeyStats(
                    index=k.index,
                    name=k.name,
                    masked=k.masked(),
                    calls=k.usage,
                    failed=k.failed,
                    locked=k.locked,
                    window_usage=k.window_usage,
                    resets_in=max(0.0, k.window_ends_at(window) - now),
                )
                for k in self._keys
            ),
            capacity=self.config.capacity,
        )


# ---------- Thread-safe pool ----------


class KeyPool(_Scheduler):
    def __init__(
        self,
        keys: Iterable[Union[str, KeyConfig]],
        config: Union[PoolConfig, None] = None,
        log_level: Union[int, None] = None,
        **kwargs,
    ):
        """Initialize a KeyPool.

        Args:
            keys (Iterable[str | KeyConfig]): ordered raw tokens or KeyConfig entries
            config (PoolConfig | None, optional): pool settings, defaults to PoolConfig()
            log_level (int | None, optional): level for the "quotapool" logger
            kwargs: individual PoolConfig fields overriding ``config``
            - capacity: int | None
            - window_seconds: float
            - min_key_length: int
            - exclusive: bool
        """
        unknown = set(kwargs) - _CONFIG_FIELDS
        if unknown:
            raise TypeError(f"unexpected keyword arguments: {', '.join(sorted(unknown))}")
        resolved = dataclasses.replace(config or PoolConfig(), **kwargs)
        if log_level is not None:
            logging.getLogger("quotapool").setLevel(log_level)
        super().__init__(keys, resolved)
        self._lock = threading.Lock()
        self._logger.info(f"Loaded {len(self._keys)} API keys for parallel usage")

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def quota_aware(self) -> bool:
        return self.config.capacity is not None

    @property
    def exclusive(self) -> bool:
        return self.config.exclusive

    @property
    def keys(self) -> list[KeyState]:
        """Copies of the per-key state; mutating them does not affect the pool."""
        with self._lock:
            return [dataclasses.replace(k) for k in self._keys]

    # ---------- job assignment ----------
    def assign_key_to_job(self, job_id: int) -> KeyAssignment:
        with self._lock:
            return self._assign(job_id)

    def get_key_for_job(self, job_id: int) -> KeyAssignment:
        with self._lock:
            return self._resolve(job_id)

    def reassign_job(self, job_id: int, index: int) -> None:
        with self._lock:
            self._reassign(job_id, index)

    def complete_job(self, job_id: int) -> None:
        with self._lock:
            self._assignments.pop(job_id, None)
            self._orphaned.discard(job_id)

    # ---------- failover / locking ----------
    def get_next_available_key(self, exclude_index: Union[int, None] = None) -> KeyAssignment:
        with self._lock:
            return self._pick_next(exclude_index)

    def release_key(self, index: int) -> None:
        with self._lock:
            self._state(index).locked = False

    def lease(self, exclude_index: Union[int, None] = None):
        return _KeyLease(self, exclude_index)

    def mark_key_failed(self, index: int, error: Union[BaseException, str, None] = None) -> None:
        with self._lock:
            self._mark_failed(index, error)

    def increment_usage(self, index: int) -> None:
        with self._lock:
            self._state(index).usage += 1

    # ---------- quota-aware variant ----------
    def reset_window_if_needed(self, index: int) -> None:
        with self._lock:
            self._reset_window_if_needed(self._state(index), self._now())

    def can_handle(self, index: int, cost: int) -> bool:
        with self._lock:
            return self._can_handle(self._state(index), cost, self._now())

    def get_best_key_for_cost(
        self, cost: int, exclude_index: Union[int, None] = None
    ) -> KeyAssignment:
        with self._lock:
            return self._best_for_cost(cost, exclude_index)

    def track_usage(self, index: int, cost: int) -> None:
        with self._lock:
            self._track(self._state(index), cost)

    def exhaust_window(self, index: int) -> None:
        """Treat the key's current window as used up; it recovers when the window rolls."""
        with self._lock:
            capacity = self._require_capacity()
            ks = self._state(index)
            self._reset_window_if_needed(ks, self._now())
            ks.window_usage = max(ks.window_usage, capacity)
            self._logger.info(f"API {ks.label()} exhausted until its window resets")

    def seconds_until_reset(self, index: int) -> float:
        with self._lock:
            ks = self._state(index)
            return max(0.0, ks.window_ends_at(self.config.window_seconds) - self._now())

    # ---------- reporting ----------
    def stats(self) -> UsageStats:
        with self._lock:
            return self._snapshot()

    # ---------- convenience: build keys from env / file ----------
    @classmethod
    def from_env(
        cls,
        names=None,
        prefix: Union[str, None] = None,
        env_path: Union[str, None] = None,
        **kwargs,
    ):
        """Create a KeyPool from environment variables (and an optional .env file).

        Loader flags (to_lower_names, split_commas, strip_prefix) are forwarded to
        load_keyconfigs_from_env; everything else goes to the KeyPool constructor.
        """
        loader_keys = {
            k: kwargs.pop(k)
            for k in list(kwargs.keys())
            if k in {"to_lower_names", "split_commas", "strip_prefix"}
        }
        keys = load_keyconfigs_from_env(
            names=names, prefix=prefix, env_path=env_path, **loader_keys
        )
        return cls(keys, **kwargs)

    @classmethod
    def from_file(cls, path: str, **kwargs):
        return cls(load_keyconfigs_from_file(path), **kwargs)


# ---------- Key lease (lock released on exit, whatever happened) ----------


class _KeyLease:
    def __init__(self, pool: KeyPool, exclude_index: Union[int, None]):
        self.pool = pool
        self.exclude_index = exclude_index
        self.assignment: Union[KeyAssignment, None] = None

    def __enter__(self) -> KeyAssignment:
        self.assignment = self.pool.get_next_available_key(self.exclude_index)
        return self.assignment

    def __exit__(self, exc_type, exc, tb):
        if self.assignment is not None:
            self.pool.release_key(self.assignment.index)
        return False
