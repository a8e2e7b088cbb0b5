"""Discrete-window rate limiter with adaptive backoff.

Live measurement of the SleepMe API showed that its quota resets on
wall-clock-aligned windows rather than refilling continuously, and that
bursts inside a window are punished even when the count is within budget.
The limiter therefore combines three gates:

- a per-window request counter reset at aligned boundaries,
- a minimum gap between any two admitted requests,
- an adaptive backoff that grows with consecutive 429 responses.

CRITICAL requests may jump a full window or an active backoff a bounded
number of times per window. The limiter performs no I/O and never sleeps:
callers receive a wait time and decide how to retry.
"""

import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from sleepme_sync.config import settings
from sleepme_sync.lib.consts import REQUEST_HISTORY_MS, DecisionReason, RequestPriority
from sleepme_sync.lib.logger import VERBOSE, get_logger
from sleepme_sync.lib.types import RateLimitDecision, RateLimiterState, RequestRecord

logger = get_logger(__name__)


def wall_clock_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class RateWindowLimiter:
    """Admission control for every outbound API call.

    State is mutated only through decide() and record().
    """

    def __init__(
        self,
        window_ms: int | None = None,
        requests_per_window: int | None = None,
        min_gap_ms: int | None = None,
        safety_margin: float | None = None,
        allow_critical_bypass: bool | None = None,
        critical_bypass_limit: int | None = None,
        backoff_multiplier: float | None = None,
        max_backoff_ms: int | None = None,
        bypass_window_ms: int | None = None,
        clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        """Initialize the limiter.

        Unset arguments fall back to the configured settings. The safety
        margin widens both the window and the minimum gap.

        Args:
            window_ms: Measured window length
            requests_per_window: Requests admitted per window
            min_gap_ms: Measured minimum spacing between requests
            safety_margin: Multiplicative widening (0.1 = 10% wider)
            allow_critical_bypass: Whether CRITICAL requests may bypass
            critical_bypass_limit: Bypasses allowed per bypass window
            backoff_multiplier: Backoff growth per consecutive rate limit
            max_backoff_ms: Backoff ceiling
            bypass_window_ms: Period of the bypass allowance (defaults to
                the effective window)
            clock: Millisecond clock
        """
        margin = settings.rate_safety_margin if safety_margin is None else safety_margin
        base_window = settings.rate_window_ms if window_ms is None else window_ms
        base_gap = settings.rate_min_gap_ms if min_gap_ms is None else min_gap_ms

        self._window_ms = int(base_window * (1 + margin))
        self._min_gap_ms = int(base_gap * (1 + margin))
        self._requests_per_window = (
            settings.rate_requests_per_window if requests_per_window is None else requests_per_window
        )
        self._allow_critical_bypass = (
            settings.rate_allow_critical_bypass
            if allow_critical_bypass is None
            else allow_critical_bypass
        )
        self._critical_bypass_limit = (
            settings.rate_critical_bypass_limit
            if critical_bypass_limit is None
            else critical_bypass_limit
        )
        self._backoff_multiplier = (
            settings.rate_backoff_multiplier if backoff_multiplier is None else backoff_multiplier
        )
        self._max_backoff_ms = (
            settings.rate_max_backoff_ms if max_backoff_ms is None else max_backoff_ms
        )
        self._bypass_window_ms = bypass_window_ms or self._window_ms
        self._clock = clock

        now = self._clock()
        self._state = RateLimiterState(
            current_window_start=self._align(now, self._window_ms),
            critical_bypass_reset_time=self._align(now, self._bypass_window_ms),
        )
        self._history: list[RequestRecord] = []

    @property
    def window_ms(self) -> int:
        """Effective window length."""
        return self._window_ms

    @property
    def min_gap_ms(self) -> int:
        """Effective minimum gap."""
        return self._min_gap_ms

    @property
    def state(self) -> RateLimiterState:
        """Snapshot of the internal state (read only)."""
        return replace(self._state)

    @staticmethod
    def _align(timestamp: int, period: int) -> int:
        return (timestamp // period) * period

    # ========== Admission ==========

    def decide(self, priority: RequestPriority = RequestPriority.NORMAL) -> RateLimitDecision:
        """Decide whether a request may be sent now.

        An allowed decision reserves its slot immediately so two close
        decisions cannot both see a free slot.

        Args:
            priority: Priority of the request

        Returns:
            Decision with the wait time when denied
        """
        now = self._clock()
        self._roll_window(now)
        self._roll_bypass_window(now)
        state = self._state

        if state.adaptive_backoff_until > now:
            if self._try_critical_bypass(priority, now):
                return RateLimitDecision(True, 0, DecisionReason.CRITICAL_BYPASS_BACKOFF)
            return self._deny(
                priority, state.adaptive_backoff_until - now, DecisionReason.ADAPTIVE_BACKOFF
            )

        if state.last_request_time is not None:
            elapsed = now - state.last_request_time
            if elapsed < self._min_gap_ms:
                return self._deny(priority, self._min_gap_ms - elapsed, DecisionReason.MIN_GAP)

        if state.requests_in_current_window < self._requests_per_window:
            state.requests_in_current_window += 1
            state.last_request_time = now
            logger.log(
                VERBOSE,
                f"Admitted {priority} request "
                f"({state.requests_in_current_window}/{self._requests_per_window} in window)",
            )
            return RateLimitDecision(True, 0, DecisionReason.SLOT_RESERVED)

        if self._try_critical_bypass(priority, now):
            return RateLimitDecision(True, 0, DecisionReason.CRITICAL_BYPASS_WINDOW_FULL)

        wait_ms = max(0, state.current_window_start + self._window_ms - now)
        return self._deny(priority, wait_ms, DecisionReason.WINDOW_FULL)

    def _deny(self, priority: RequestPriority, wait_ms: int, reason: DecisionReason) -> RateLimitDecision:
        logger.debug(f"Denied {priority} request: {reason} (wait {wait_ms}ms)")
        return RateLimitDecision(False, wait_ms, reason)

    def _try_critical_bypass(self, priority: RequestPriority, now: int) -> bool:
        if priority != RequestPriority.CRITICAL or not self._allow_critical_bypass:
            return False
        if self._state.critical_bypasses_used >= self._critical_bypass_limit:
            return False

        self._state.critical_bypasses_used += 1
        self._state.last_request_time = now
        logger.debug(
            f"Critical bypass {self._state.critical_bypasses_used}/{self._critical_bypass_limit} used"
        )
        return True

    def _roll_window(self, now: int) -> None:
        # Only move forward: a backoff may have pushed the window start ahead
        window_start = self._align(now, self._window_ms)
        if window_start > self._state.current_window_start:
            self._state.current_window_start = window_start
            self._state.requests_in_current_window = 0

    def _roll_bypass_window(self, now: int) -> None:
        bypass_start = self._align(now, self._bypass_window_ms)
        if bypass_start > self._state.critical_bypass_reset_time:
            self._state.critical_bypass_reset_time = bypass_start
            self._state.critical_bypasses_used = 0

    # ========== Feedback ==========

    def record(
        self,
        priority: RequestPriority,
        allowed: bool,
        was_rate_limited: bool = False,
    ) -> None:
        """Record the outcome of a request.

        Args:
            priority: Priority the request was sent with
            allowed: Whether the request had been admitted
            was_rate_limited: Whether the API answered 429
        """
        now = self._clock()
        self._history.append(RequestRecord(now, priority, allowed, was_rate_limited))
        self._history = [r for r in self._history if r.timestamp > now - REQUEST_HISTORY_MS]

        if was_rate_limited:
            self._handle_rate_limit(now)
        else:
            # Backoff already in force is left to expire on its own
            self._state.consecutive_rate_limits = 0

    def _handle_rate_limit(self, now: int) -> None:
        state = self._state
        state.consecutive_rate_limits += 1
        state.last_rate_limit_time = now
        state.requests_in_current_window = max(
            state.requests_in_current_window, self._requests_per_window
        )

        backoff_ms = int(
            min(
                self._window_ms * self._backoff_multiplier ** (state.consecutive_rate_limits - 1),
                self._max_backoff_ms,
            )
        )
        state.adaptive_backoff_until = now + backoff_ms

        # The window holding the end of the backoff stays full, so the quota
        # cannot reopen underneath the backoff. Aligned to keep the boundary
        # arithmetic intact.
        state.current_window_start = max(
            state.current_window_start, self._align(now + backoff_ms, self._window_ms)
        )

        logger.warning(
            f"Rate limited by API ({state.consecutive_rate_limits} consecutive), "
            f"backing off {backoff_ms / 1000:.0f}s"
        )

    # ========== Statistics ==========

    def get_stats(self) -> dict[str, Any]:
        """Get limiter statistics."""
        now = self._clock()
        self._roll_window(now)
        self._roll_bypass_window(now)

        recent = [r for r in self._history if r.timestamp > now - 60000]
        rate_limited = sum(1 for r in recent if r.rate_limited)
        succeeded = sum(1 for r in recent if r.allowed and not r.rate_limited)

        return {
            "requests_in_window": self._state.requests_in_current_window,
            "requests_per_window": self._requests_per_window,
            "window_ms": self._window_ms,
            "min_gap_ms": self._min_gap_ms,
            "adaptive_backoff_active": self._state.adaptive_backoff_until > now,
            "backoff_remaining_ms": max(0, self._state.adaptive_backoff_until - now),
            "consecutive_rate_limits": self._state.consecutive_rate_limits,
            "critical_bypasses_used": self._state.critical_bypasses_used,
            "critical_bypasses_remaining": max(
                0, self._critical_bypass_limit - self._state.critical_bypasses_used
            ),
            "recent_requests": len(recent),
            "recent_rate_limits": rate_limited,
            "success_rate": (succeeded / len(recent) * 100) if recent else 100.0,
        }

    def get_recommendations(self) -> list[str]:
        """Get human-readable hints about the current request pattern."""
        stats = self.get_stats()
        recommendations: list[str] = []

        if stats["adaptive_backoff_active"]:
            recommendations.append(
                f"Adaptive backoff active - wait {stats['backoff_remaining_ms'] // 1000 + 1}s"
            )

        if stats["consecutive_rate_limits"] > 0:
            recommendations.append(
                f"{stats['consecutive_rate_limits']} consecutive rate limits - "
                "requests are being spaced out"
            )

        if stats["requests_in_window"] >= stats["requests_per_window"]:
            recommendations.append("Window full - delay non-critical requests")

        if stats["critical_bypasses_used"] > 0:
            recommendations.append(
                f"{stats['critical_bypasses_used']}/{self._critical_bypass_limit} "
                "critical bypasses used this window"
            )

        if stats["success_rate"] < 80:
            recommendations.append(
                f"Low success rate ({stats['success_rate']:.1f}%) - requests too frequent"
            )

        return recommendations
