"""Per-organization exponential backoff.

This module provides:
- OrganizationBackoff: Tracks transport failures and the delay before the
  next dispatch attempt of each organization
- backoff_delay: The delay formula on its own

Delays grow as base * multiplier ** (failures - 1), capped at max_delay,
then spread by +/- jitter so that many tenants failing at once do not all
retry at the same moment.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from possync.core.config import BackoffConfig

logger = logging.getLogger(__name__)


def backoff_delay(failures: int, config: BackoffConfig) -> float:
    """Delay after the given number of consecutive failures, without jitter."""
    if failures <= 0:
        return 0.0
    delay = config.base_delay * config.multiplier ** (failures - 1)
    return min(delay, config.max_delay)


@dataclass
class _OrganizationState:
    failures: int = 0
    retry_at: float = 0.0


class OrganizationBackoff:
    """Backoff bookkeeping, independent per organization.

    Thread-safe: dispatch cycles of different organizations run in
    parallel and report here concurrently.
    """

    def __init__(
        self,
        config: BackoffConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the tracker.

        Args:
            config: Delay parameters (defaults when omitted).
            clock: Monotonic time source in seconds.
            rng: Random source for jitter.
        """
        self._config = config or BackoffConfig()
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._states: dict[str, _OrganizationState] = {}

    @property
    def config(self) -> BackoffConfig:
        return self._config

    def record_failure(self, organization_id: str) -> float:
        """Register a transport failure and schedule the next attempt.

        Returns:
            Seconds to wait before the organization may dispatch again.
        """
        with self._lock:
            state = self._states.setdefault(organization_id, _OrganizationState())
            state.failures += 1
            delay = backoff_delay(state.failures, self._config)
            if self._config.jitter:
                spread = delay * self._config.jitter
                delay = max(0.0, delay + self._rng.uniform(-spread, spread))
            state.retry_at = self._clock() + delay
            failures = state.failures

        logger.warning(
            "Organization %s: transport failure #%d, next attempt in %.1fs",
            organization_id,
            failures,
            delay,
        )
        return delay

    def record_success(self, organization_id: str) -> None:
        """Reset the backoff of an organization."""
        with self._lock:
            state = self._states.pop(organization_id, None)
        if state is not None and state.failures:
            logger.info(
                "Organization %s: remote reachable again after %d failures",
                organization_id,
                state.failures,
            )

    def remaining(self, organization_id: str) -> float:
        """Seconds left before the organization may dispatch again (0 if none)."""
        with self._lock:
            state = self._states.get(organization_id)
            if state is None:
                return 0.0
            return max(0.0, state.retry_at - self._clock())

    def failures(self, organization_id: str) -> int:
        """Consecutive failures of an organization."""
        with self._lock:
            state = self._states.get(organization_id)
            return state.failures if state else 0
