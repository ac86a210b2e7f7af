"""Per-router resilience state: circuit breakers, rate windows, response cache.

All transitions are plain synchronous methods. A coroutine that calls
`try_acquire` gets its answer without yielding to the event loop, so the
check and the reservation can never interleave with another request. The
per-key locks additionally make the state safe to share with worker threads.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from rag_router.config import RouterConfig

if TYPE_CHECKING:
    from rag_router.routing.models import RouterResponse

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def now(self) -> float:
        """Seconds on a monotonic timeline."""


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to; used to test time-based rules."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        self._now += seconds


class _KeyedLocks:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


class _StripedLocks:
    """Fixed pool of locks; a key always maps to the same stripe."""

    def __init__(self, stripes: int = 64) -> None:
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._locks[hash(key) % len(self._locks)]:
            yield


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitState:
    consecutive_failures: int = 0
    open_until: float | None = None
    probe_in_flight: bool = False


class CircuitBreaker:
    """Consecutive-failure circuit breaker, one circuit per backend.

    CLOSED admits every attempt. `failure_threshold` consecutive failures
    open the circuit for `cooldown_seconds`. Once the cool-down elapses the
    circuit is HALF_OPEN and admits a single probe; the probe's outcome
    either closes the circuit or re-opens it with a fresh cool-down.
    """

    def __init__(self, failure_threshold: int, cooldown_seconds: float, clock: Clock) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, CircuitState] = {}
        self._locks = _KeyedLocks()

    def status(self, backend: str) -> CircuitStatus:
        with self._locks.hold(backend):
            return self._status(self._states.get(backend))

    def state(self, backend: str) -> CircuitState:
        with self._locks.hold(backend):
            current = self._states.get(backend) or CircuitState()
            return replace(current)

    def try_acquire(self, backend: str) -> bool:
        """Return True when an attempt on `backend` may start now."""
        with self._locks.hold(backend):
            state = self._states.setdefault(backend, CircuitState())
            status = self._status(state)
            if status is CircuitStatus.CLOSED:
                return True
            if status is CircuitStatus.HALF_OPEN and not state.probe_in_flight:
                state.probe_in_flight = True
                logger.info("Circuit half-open for %s, admitting probe", backend)
                return True
            return False

    def release(self, backend: str) -> None:
        """Undo `try_acquire` for an attempt that never produced an outcome."""
        with self._locks.hold(backend):
            state = self._states.get(backend)
            if state is not None:
                state.probe_in_flight = False

    def record_success(self, backend: str) -> None:
        with self._locks.hold(backend):
            self._states[backend] = CircuitState()

    def record_failure(self, backend: str) -> None:
        with self._locks.hold(backend):
            state = self._states.setdefault(backend, CircuitState())
            now = self._clock.now()
            was_probe = state.probe_in_flight
            state.probe_in_flight = False
            state.consecutive_failures += 1
            # Attempts admitted before the circuit opened do not extend the cool-down.
            already_open = state.open_until is not None and now < state.open_until
            if was_probe or (not already_open and state.consecutive_failures >= self.failure_threshold):
                state.open_until = now + self.cooldown_seconds
                logger.error(
                    "Circuit opened for %s after %s consecutive failures",
                    backend,
                    state.consecutive_failures,
                )

    def reset(self) -> None:
        self._states.clear()
        self._locks.clear()

    def _status(self, state: CircuitState | None) -> CircuitStatus:
        if state is None or state.open_until is None:
            return CircuitStatus.CLOSED
        if self._clock.now() < state.open_until:
            return CircuitStatus.OPEN
        return CircuitStatus.HALF_OPEN


@dataclass(slots=True)
class RateWindow:
    count: int = 0
    window_reset_at: float = 0.0


class RateLimiter:
    """Fixed-window request counter per backend.

    A window opens at the first admitted request and lasts
    `window_seconds`; at most `limit` requests are admitted within it.
    """

    def __init__(self, window_seconds: float, clock: Clock) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._locks = _KeyedLocks()

    def try_acquire(self, backend: str, limit: int) -> bool:
        now = self._clock.now()
        with self._locks.hold(backend):
            window = self._windows.get(backend)
            if window is None or now >= window.window_reset_at:
                self._windows[backend] = RateWindow(count=1, window_reset_at=now + self.window_seconds)
                return True
            if window.count >= limit:
                return False
            window.count += 1
            return True

    def release(self, backend: str) -> None:
        """Refund a slot taken by an attempt that was cancelled."""
        now = self._clock.now()
        with self._locks.hold(backend):
            window = self._windows.get(backend)
            if window is not None and now < window.window_reset_at and window.count > 0:
                window.count -= 1

    def window(self, backend: str) -> RateWindow | None:
        with self._locks.hold(backend):
            current = self._windows.get(backend)
            return replace(current) if current is not None else None

    def reset(self) -> None:
        self._windows.clear()
        self._locks.clear()


@dataclass(slots=True)
class CacheEntry:
    response: RouterResponse
    created_at: float
    expires_at: float


class ResponseCache:
    """TTL cache of successful responses keyed by task type and prompt prefix.

    Expired entries are dropped when read and swept every `sweep_every`
    writes, so keys that are never read again do not accumulate.
    """

    def __init__(
        self,
        ttl_seconds: float,
        key_chars: int,
        clock: Clock,
        *,
        sweep_every: int = 256,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.key_chars = key_chars
        self.sweep_every = sweep_every
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._locks = _StripedLocks()
        self._writes = 0

    def __len__(self) -> int:
        return len(self._entries)

    def key_for(self, task_type: str, prompt: str) -> str:
        raw = f"{task_type}:{prompt[: self.key_chars]}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> RouterResponse | None:
        with self._locks.hold(key):
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock.now() >= entry.expires_at:
                del self._entries[key]
                return None
            return replace(
                entry.response,
                from_cache=True,
                context_chunk_ids=list(entry.response.context_chunk_ids),
            )

    def set(self, key: str, response: RouterResponse) -> None:
        now = self._clock.now()
        with self._locks.hold(key):
            self._entries[key] = CacheEntry(
                response=replace(response, context_chunk_ids=list(response.context_chunk_ids)),
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
        self._writes += 1
        if self._writes % self.sweep_every == 0:
            self.purge_expired()

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock.now()
        removed = 0
        for key, entry in list(self._entries.items()):
            if now < entry.expires_at:
                continue
            with self._locks.hold(key):
                current = self._entries.get(key)
                if current is not None and now >= current.expires_at:
                    del self._entries[key]
                    removed += 1
        if removed:
            logger.debug("Purged %s expired cache entries", removed)
        return removed

    def clear(self) -> None:
        self._entries.clear()


class RoutingState:
    """Resilience state owned by one router instance."""

    def __init__(self, config: RouterConfig | None = None, clock: Clock | None = None) -> None:
        self.config = config or RouterConfig()
        self.clock = clock or MonotonicClock()
        self.breaker = CircuitBreaker(self.config.failure_threshold, self.config.cooldown_seconds, self.clock)
        self.limiter = RateLimiter(self.config.rate_window_seconds, self.clock)
        self.cache = ResponseCache(self.config.cache_ttl_seconds, self.config.cache_key_chars, self.clock)

    def reset(self) -> None:
        self.breaker.reset()
        self.limiter.reset()
        self.cache.clear()
