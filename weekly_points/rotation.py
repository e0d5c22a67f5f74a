"""
rotation.py — retry / backoff / endpoint rotation around rpc_call.

One RotationPolicy object owns every delay and attempt constant; call sites
never pick their own.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from .rpc import (
    CLIENT_ERROR,
    NETWORK_OR_TIMEOUT,
    RANGE_REJECTED,
    RATE_LIMITED,
    SERVER_ERROR,
    EndpointRejected,
    rpc_call,
)

logger = logging.getLogger(__name__)


class AllEndpointsExhausted(RuntimeError):
    def __init__(self, attempts: int, last_error: Exception | None):
        super().__init__(f"RPC failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RangeTooWide(RuntimeError):
    """Endpoints refused the request's block span or result count."""
    def __init__(self, last_error: EndpointRejected):
        super().__init__(str(last_error))
        self.last_error = last_error


class DeadlineExceeded(RuntimeError):
    pass


@dataclass(frozen=True)
class RotationPolicy:
    min_attempts: int = 6
    max_attempts: int = 14
    attempts_per_endpoint: int = 3
    # delay = base + attempt * step, in seconds
    rate_limit_base: float = 0.35
    rate_limit_step: float = 0.15
    server_error_base: float = 0.25
    server_error_step: float = 0.12
    network_base: float = 0.2
    network_step: float = 0.1
    # distinct endpoints that must refuse a span before it is split
    range_rejections_before_split: int = 2

    def attempts_for(self, pool_size: int) -> int:
        return max(self.min_attempts, min(self.max_attempts, pool_size * self.attempts_per_endpoint))

    def backoff(self, kind: str, attempt: int) -> float:
        if kind == RATE_LIMITED:
            return self.rate_limit_base + attempt * self.rate_limit_step
        if kind == SERVER_ERROR:
            return self.server_error_base + attempt * self.server_error_step
        if kind == NETWORK_OR_TIMEOUT:
            return self.network_base + attempt * self.network_step
        return 0.0


class EndpointPool:
    """Equivalent endpoints, handed out round-robin from a random start."""

    def __init__(self, endpoints: Sequence[str], rng: random.Random | None = None):
        if not endpoints:
            raise ValueError("EndpointPool needs at least one endpoint")
        self.endpoints = list(endpoints)
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._cursor = self._rng.randrange(len(self.endpoints))

    def __len__(self) -> int:
        return len(self.endpoints)

    def start(self) -> int:
        with self._lock:
            idx = self._cursor
            self._cursor = (self._cursor + 1) % len(self.endpoints)
            return idx

    def at(self, index: int) -> str:
        return self.endpoints[index % len(self.endpoints)]


Caller = Callable[[str, str, list, float], object]


class Rotator:
    def __init__(
        self,
        pool: EndpointPool,
        policy: RotationPolicy | None = None,
        caller: Caller = rpc_call,
        timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.policy = policy or RotationPolicy()
        self.caller = caller
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def with_rotation(self, fn: Callable[[str], object], deadline: float | None = None):
        """
        Run fn(endpoint) until it succeeds, rotating endpoints and backing off per policy.
        """
        attempts = self.policy.attempts_for(len(self.pool))
        split_after = min(self.policy.range_rejections_before_split, len(self.pool))
        offset = self.pool.start()
        range_rejections = 0
        last_err: Exception | None = None

        for attempt in range(attempts):
            if deadline is not None and self._clock() >= deadline:
                raise DeadlineExceeded(f"deadline passed after {attempt} attempts (last: {last_err})")

            endpoint = self.pool.at(offset + attempt)
            try:
                return fn(endpoint)
            except EndpointRejected as e:
                last_err = e
                if e.kind == CLIENT_ERROR:
                    raise
                if e.kind == RANGE_REJECTED:
                    range_rejections += 1
                    if range_rejections >= split_after:
                        raise RangeTooWide(e) from e
                    logger.debug("range rejected by %s, rotating", endpoint)
                    continue

                delay = self.policy.backoff(e.kind, attempt)
                if deadline is not None:
                    delay = min(delay, max(0.0, deadline - self._clock()))
                logger.warning("RPC %s on %s (attempt %d/%d), retrying in %.2fs",
                               e.kind, endpoint, attempt + 1, attempts, delay)
                if delay > 0:
                    self._sleep(delay)

        raise AllEndpointsExhausted(attempts, last_err)

    def call(
        self,
        method: str,
        params: list,
        deadline: float | None = None,
        validate: Callable[[str, object], object] | None = None,
    ):
        """
        `validate(endpoint, result)` may normalize the result or raise EndpointRejected,
        which is then handled like any other failure of that endpoint.
        """
        def attempt(endpoint: str):
            timeout = self.timeout
            if deadline is not None:
                timeout = max(0.5, min(timeout, deadline - self._clock()))
            result = self.caller(endpoint, method, params, timeout)
            if validate is not None:
                return validate(endpoint, result)
            return result

        return self.with_rotation(attempt, deadline=deadline)
