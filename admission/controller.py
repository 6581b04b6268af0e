"""
admission/controller.py -- AdmissionController: per-client request budgets.

Built on the `limits` library (the counter engine slowapi wraps), used
directly rather than through route decorators:

  FixedWindowRateLimiter.hit() is an atomic increment-and-compare against
  the storage backend (a lock in memory://, INCR in redis://). Concurrent
  requests on the same key can never be admitted past the budget; at worst
  the counter overshoots with requests that are then denied.

Each (endpoint class, client key) pair gets its own window. Budgets come
from Settings as limit strings ("10 per 15 minutes").

The AUTH class also carries an escalating delay: once a client has used more
than `slowdown_after` attempts in the current window, each further admitted
attempt is told to wait `step` seconds longer than the previous one, capped
at `max_delay`. The controller only computes the delay; the caller sleeps.

Counters live in memory:// by default and are lost on restart. This is an
accepted limitation: the worst case is a fresh budget after a deploy.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from limits import RateLimitItem, parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from core.config import Settings

logger = logging.getLogger("gatekeeper.admission")


class EndpointClass(str, Enum):
    GENERAL = "general"
    AUTH = "auth"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Budget:
    """Request budget for one endpoint class. Delays are in seconds."""

    limit: str
    slowdown_after: int | None = None
    slowdown_step: float = 0.0
    slowdown_max: float = 0.0


@dataclass(frozen=True)
class Decision:
    """Outcome of one admission check.

    allowed=False carries a positive retry_after (whole seconds).
    allowed=True may carry a delay the caller must wait before proceeding.
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    delay: float = 0.0


class AdmissionController:
    """Admit or deny requests per (client key, endpoint class).

    Usage:
        admission = AdmissionController.from_settings(settings)
        decision = admission.admit("203.0.113.7", EndpointClass.AUTH)
        if not decision.allowed:
            ...  # 429 with Retry-After: decision.retry_after
    """

    def __init__(
        self,
        budgets: Mapping[EndpointClass, Budget],
        *,
        storage_uri: str = "memory://",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._budgets = dict(budgets)
        self._items: dict[EndpointClass, RateLimitItem] = {
            endpoint_class: parse(budget.limit) for endpoint_class, budget in self._budgets.items()
        }
        self._storage = storage_from_string(storage_uri)
        self._limiter = FixedWindowRateLimiter(self._storage)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdmissionController":
        budgets = {
            EndpointClass.GENERAL: Budget(settings.general_rate_limit),
            EndpointClass.AUTH: Budget(
                settings.auth_rate_limit,
                slowdown_after=settings.auth_slowdown_after,
                slowdown_step=settings.auth_slowdown_step_ms / 1000,
                slowdown_max=settings.auth_slowdown_max_ms / 1000,
            ),
            EndpointClass.OPERATOR: Budget(settings.operator_rate_limit),
        }
        return cls(budgets, storage_uri=settings.rate_limit_storage_uri)

    def admit(self, client_key: str, endpoint_class: EndpointClass) -> Decision:
        """Count one request against the client's window and decide."""
        item = self._items[endpoint_class]
        allowed = self._limiter.hit(item, endpoint_class.value, client_key)
        reset_time, remaining = self._limiter.get_window_stats(item, endpoint_class.value, client_key)

        if not allowed:
            retry_after = max(1, math.ceil(reset_time - self._clock()))
            logger.warning(
                "Admission denied: class=%s client=%s retry_after=%ds",
                endpoint_class.value,
                client_key,
                retry_after,
            )
            return Decision(allowed=False, limit=item.amount, remaining=0, retry_after=retry_after)

        used = item.amount - remaining
        delay = self._slowdown(self._budgets[endpoint_class], used)
        if delay:
            logger.info(
                "Admission slowdown: class=%s client=%s attempt=%d delay=%.2fs",
                endpoint_class.value,
                client_key,
                used,
                delay,
            )
        return Decision(allowed=True, limit=item.amount, remaining=remaining, delay=delay)

    @staticmethod
    def _slowdown(budget: Budget, used: int) -> float:
        if budget.slowdown_after is None or used <= budget.slowdown_after:
            return 0.0
        return min((used - budget.slowdown_after) * budget.slowdown_step, budget.slowdown_max)

    def reset(self) -> None:
        """Forget every counter (tests, operator-triggered unlock)."""
        self._storage.reset()
