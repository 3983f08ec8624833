"""
Adaptive rate governor for provider requests.

Approximates AIMD congestion control over request concurrency, using HTTP 429
responses as the loss signal:

- enough consecutive successes (outside the post-429 cooldown) raise the
  concurrency ceiling by one step and shrink the backoff delay
- enough consecutive rate limits lower the ceiling and grow the backoff

The governor is a plain object injected into every component that talks to
a provider, so independent pipelines never share counters.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable

from screener.logging import get_logger

logger = get_logger(__name__)


class SustainedRateLimitPolicy(str, Enum):
    """What to do when 429s keep coming.

    DEGRADE keeps retrying with the governor's (growing) backoff until the
    per-request retry budget runs out. FAIL_FAST opens a circuit once the
    unbroken 429 streak reaches the configured threshold.
    """

    DEGRADE = "degrade"
    FAIL_FAST = "fail_fast"


@dataclass
class GovernorConfig:
    """Tunable defaults for the control loop. Times are in seconds."""

    initial_concurrency: int = 5
    min_concurrency: int = 1
    max_concurrency: int = 15
    concurrency_step: int = 1

    initial_backoff: float = 0.3
    min_backoff: float = 0.3
    max_backoff: float = 5.0
    backoff_factor: float = 1.5

    success_threshold: int = 20
    rate_limit_threshold: int = 5
    adaptive_window: float = 60.0

    request_spacing: float = 0.1

    sustained_policy: SustainedRateLimitPolicy = SustainedRateLimitPolicy.DEGRADE
    circuit_threshold: int = 50

    def __post_init__(self) -> None:
        if not 1 <= self.min_concurrency <= self.max_concurrency:
            raise ValueError("concurrency bounds must satisfy 1 <= min <= max")
        if not self.min_backoff <= self.max_backoff:
            raise ValueError("backoff bounds must satisfy min <= max")
        if self.backoff_factor <= 1.0:
            raise ValueError("backoff_factor must be greater than 1")
        self.initial_concurrency = min(
            max(self.initial_concurrency, self.min_concurrency), self.max_concurrency
        )
        self.initial_backoff = min(max(self.initial_backoff, self.min_backoff), self.max_backoff)

    @property
    def cooldown(self) -> float:
        """Quiet period after a 429 during which the ceiling may not grow."""
        return self.adaptive_window / 2


@dataclass
class GovernorState:
    """Snapshot of the governor's mutable state."""

    concurrency: int
    backoff: float
    consecutive_successes: int = 0
    consecutive_rate_limits: int = 0
    rate_limit_streak: int = 0
    last_rate_limit_at: float | None = None
    window_started_at: float = 0.0
    requests_in_window: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rate_limited_requests: int = 0


class RateGovernor:
    """Process-local AIMD controller for concurrency and backoff.

    Updates happen synchronously on the event loop after each completed
    request, so no lock is needed around the counters.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or GovernorConfig()
        self._clock = clock
        self._state = GovernorState(
            concurrency=self.config.initial_concurrency,
            backoff=self.config.initial_backoff,
            window_started_at=clock(),
        )
        self._spacing_lock = asyncio.Lock()
        self._last_request_at: float | None = None

    @property
    def concurrency(self) -> int:
        """Current concurrency ceiling."""
        return self._state.concurrency

    @property
    def backoff(self) -> float:
        """Current backoff delay in seconds."""
        return self._state.backoff

    @property
    def state(self) -> GovernorState:
        """A copy of the current state."""
        return GovernorState(**asdict(self._state))

    @property
    def circuit_open(self) -> bool:
        """True when the fail-fast policy has tripped on a 429 streak."""
        return (
            self.config.sustained_policy is SustainedRateLimitPolicy.FAIL_FAST
            and self._state.rate_limit_streak >= self.config.circuit_threshold
        )

    async def pace(self) -> None:
        """Wait until the minimum spacing since the previous request elapsed."""
        spacing = self.config.request_spacing
        if spacing <= 0:
            return
        async with self._spacing_lock:
            now = self._clock()
            if self._last_request_at is not None:
                wait = spacing - (now - self._last_request_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = self._clock()

    def _roll_window(self, now: float) -> None:
        if now - self._state.window_started_at > self.config.adaptive_window:
            self._state.window_started_at = now
            self._state.requests_in_window = 0
            logger.debug("New rate window started", concurrency=self._state.concurrency)

    def record_success(self) -> None:
        """Account for a successful request and maybe raise the ceiling."""
        cfg = self.config
        state = self._state
        now = self._clock()
        self._roll_window(now)

        state.total_requests += 1
        state.successful_requests += 1
        state.requests_in_window += 1
        state.consecutive_rate_limits = 0
        state.rate_limit_streak = 0
        state.consecutive_successes += 1

        cooling = (
            state.last_rate_limit_at is not None
            and now - state.last_rate_limit_at <= cfg.cooldown
        )
        if cooling or state.consecutive_successes < cfg.success_threshold:
            return

        state.concurrency = min(cfg.max_concurrency, state.concurrency + cfg.concurrency_step)
        state.backoff = max(cfg.min_backoff, state.backoff / cfg.backoff_factor)
        state.consecutive_successes = 0
        logger.debug(
            "Increased concurrency",
            concurrency=state.concurrency,
            backoff=round(state.backoff, 3),
        )

    def record_rate_limit(self) -> None:
        """Account for a 429 and maybe lower the ceiling."""
        cfg = self.config
        state = self._state
        now = self._clock()
        self._roll_window(now)

        state.total_requests += 1
        state.rate_limited_requests += 1
        state.requests_in_window += 1
        state.consecutive_successes = 0
        state.consecutive_rate_limits += 1
        state.rate_limit_streak += 1
        state.last_rate_limit_at = now

        if state.consecutive_rate_limits < cfg.rate_limit_threshold:
            return

        state.concurrency = max(cfg.min_concurrency, state.concurrency - cfg.concurrency_step)
        state.backoff = min(cfg.max_backoff, state.backoff * cfg.backoff_factor)
        state.consecutive_rate_limits = 0
        logger.info(
            "Decreased concurrency after rate limits",
            concurrency=state.concurrency,
            backoff=round(state.backoff, 3),
        )

    def record_failure(self) -> None:
        """Account for a request that failed for reasons other than 429."""
        now = self._clock()
        self._roll_window(now)
        self._state.total_requests += 1
        self._state.failed_requests += 1
        self._state.requests_in_window += 1

    def stats(self) -> dict[str, Any]:
        """Counters for the status document."""
        s = self._state
        return {
            "totalRequests": s.total_requests,
            "successfulRequests": s.successful_requests,
            "failedRequests": s.failed_requests,
            "rateLimitedRequests": s.rate_limited_requests,
            "requestsInWindow": s.requests_in_window,
            "currentConcurrency": s.concurrency,
            "currentBackoffMs": round(s.backoff * 1000),
            "consecutiveSuccesses": s.consecutive_successes,
            "consecutiveRateLimits": s.consecutive_rate_limits,
        }
