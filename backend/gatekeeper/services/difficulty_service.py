"""
Adaptive difficulty.

Load signals are aggregated over a sliding window of time buckets. On each
recalibration the controller turns them into a pressure value in [0, 1] and
publishes a new immutable :class:`DifficultyPolicy` snapshot. Readers only
ever see whole snapshots.
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum

import structlog

from gatekeeper.errors import PolicyError

logger = structlog.get_logger()

WINDOW_BUCKETS = 20


class SignalKind(str, Enum):
    ATTEMPT_RATE = "attempt_rate"  # connection attempts per second
    FAILURE_RATE = "failure_rate"  # failed fraction of verifications
    DOWNSTREAM_LOAD = "downstream_load"  # 0.0 idle .. 1.0 saturated


@dataclass(frozen=True)
class LoadSignal:
    kind: SignalKind
    value: float


@dataclass(frozen=True)
class DifficultyPolicy:
    base_difficulty: int
    max_difficulty: int
    adjustment_window: float
    load_signal: float
    current_difficulty: int

    def __post_init__(self):
        if not 1 <= self.base_difficulty <= self.current_difficulty <= self.max_difficulty:
            raise PolicyError(
                "Require 1 <= base_difficulty <= current_difficulty <= max_difficulty"
            )
        if self.adjustment_window <= 0:
            raise PolicyError("adjustment_window must be positive")


@dataclass
class _Bucket:
    attempts: int = 0
    verifications: int = 0
    failures: int = 0
    gauges: dict[SignalKind, list[float]] = field(default_factory=dict)

    def add_gauge(self, kind: SignalKind, value: float) -> None:
        total = self.gauges.setdefault(kind, [0.0, 0])
        total[0] += value
        total[1] += 1


class DifficultyController:
    """Thread-safe owner of the process-wide difficulty policy."""

    def __init__(
        self,
        base_difficulty: int,
        max_difficulty: int,
        adjustment_window: float = 60.0,
        attempt_rate_ceiling: float = 200.0,
        failure_rate_ceiling: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        if attempt_rate_ceiling <= 0 or failure_rate_ceiling <= 0:
            raise PolicyError("Signal ceilings must be positive")
        self._policy = DifficultyPolicy(
            base_difficulty=base_difficulty,
            max_difficulty=max_difficulty,
            adjustment_window=adjustment_window,
            load_signal=0.0,
            current_difficulty=base_difficulty,
        )
        self._attempt_ceiling = attempt_rate_ceiling
        self._failure_ceiling = failure_rate_ceiling
        self._clock = clock
        self._bucket_width = adjustment_window / WINDOW_BUCKETS
        self._buckets: dict[int, _Bucket] = {}
        self._lock = threading.Lock()

    @property
    def policy(self) -> DifficultyPolicy:
        return self._policy

    def current_difficulty(self) -> int:
        return self._policy.current_difficulty

    def observe(self, signal: LoadSignal) -> None:
        """Record an externally measured signal value."""
        if not math.isfinite(signal.value) or signal.value < 0:
            raise ValueError(f"Invalid {signal.kind.value} signal: {signal.value}")
        with self._lock:
            self._bucket().add_gauge(signal.kind, signal.value)

    def record_attempt(self) -> None:
        with self._lock:
            self._bucket().attempts += 1

    def record_verification(self, accepted: bool) -> None:
        with self._lock:
            bucket = self._bucket()
            bucket.verifications += 1
            if not accepted:
                bucket.failures += 1

    def recalibrate(self) -> DifficultyPolicy:
        """Recompute difficulty from the current window and publish it."""
        with self._lock:
            self._evict(self._current_key())
            pressure = self._pressure()
            previous = self._policy
            span = previous.max_difficulty - previous.base_difficulty
            difficulty = min(
                previous.base_difficulty + round(span * pressure),
                previous.max_difficulty,
            )
            policy = replace(previous, load_signal=pressure, current_difficulty=difficulty)
            self._policy = policy

        if policy.current_difficulty != previous.current_difficulty:
            logger.info(
                "difficulty_recalibrated",
                previous=previous.current_difficulty,
                difficulty=policy.current_difficulty,
                pressure=round(pressure, 4),
            )
        return policy

    def _current_key(self) -> int:
        return int(self._clock() // self._bucket_width)

    def _bucket(self) -> _Bucket:
        key = self._current_key()
        bucket = self._buckets.get(key)
        if bucket is None:
            self._evict(key)
            bucket = self._buckets[key] = _Bucket()
        return bucket

    def _evict(self, current_key: int) -> None:
        oldest = current_key - WINDOW_BUCKETS + 1
        for key in [k for k in self._buckets if k < oldest]:
            del self._buckets[key]

    def _gauge_mean(self, kind: SignalKind) -> float:
        total, count = 0.0, 0
        for bucket in self._buckets.values():
            if kind in bucket.gauges:
                total += bucket.gauges[kind][0]
                count += bucket.gauges[kind][1]
        return total / count if count else 0.0

    def _pressure(self) -> float:
        buckets = self._buckets.values()
        attempts = sum(b.attempts for b in buckets)
        verifications = sum(b.verifications for b in buckets)
        failures = sum(b.failures for b in buckets)

        attempt_rate = max(
            attempts / self._policy.adjustment_window,
            self._gauge_mean(SignalKind.ATTEMPT_RATE),
        )
        failure_rate = max(
            failures / verifications if verifications else 0.0,
            self._gauge_mean(SignalKind.FAILURE_RATE),
        )
        pressure = max(
            attempt_rate / self._attempt_ceiling,
            failure_rate / self._failure_ceiling,
            self._gauge_mean(SignalKind.DOWNSTREAM_LOAD),
        )
        return min(max(pressure, 0.0), 1.0)
