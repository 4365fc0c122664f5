"""Tests for per-organization backoff."""

from __future__ import annotations

import random

import pytest

from possync.client.sync import OrganizationBackoff, backoff_delay
from possync.core.config import BackoffConfig


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestBackoffDelay:
    """Tests for the delay formula."""

    def test_exponential_growth(self) -> None:
        config = BackoffConfig(base_delay=1.0, max_delay=300.0, multiplier=2.0)
        assert [backoff_delay(n, config) for n in range(0, 5)] == [0.0, 1.0, 2.0, 4.0, 8.0]

    def test_capped(self) -> None:
        config = BackoffConfig(base_delay=1.0, max_delay=10.0, multiplier=3.0)
        assert backoff_delay(10, config) == 10.0


class TestOrganizationBackoff:
    """Tests for OrganizationBackoff."""

    def test_failure_schedules_retry(self) -> None:
        clock = FakeClock()
        backoff = OrganizationBackoff(BackoffConfig(jitter=0), clock=clock)

        assert backoff.record_failure("org-1") == 1.0
        assert backoff.remaining("org-1") == 1.0
        clock.now += 0.4
        assert backoff.remaining("org-1") == pytest.approx(0.6)
        clock.now += 1
        assert backoff.remaining("org-1") == 0.0

    def test_consecutive_failures_grow(self) -> None:
        backoff = OrganizationBackoff(BackoffConfig(jitter=0), clock=FakeClock())
        delays = [backoff.record_failure("org-1") for _ in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]
        assert backoff.failures("org-1") == 4

    def test_success_resets(self) -> None:
        backoff = OrganizationBackoff(BackoffConfig(jitter=0), clock=FakeClock())
        backoff.record_failure("org-1")
        backoff.record_failure("org-1")
        backoff.record_success("org-1")
        assert backoff.failures("org-1") == 0
        assert backoff.remaining("org-1") == 0.0
        assert backoff.record_failure("org-1") == 1.0

    def test_organizations_independent(self) -> None:
        """One tenant backing off never delays another."""
        backoff = OrganizationBackoff(BackoffConfig(jitter=0), clock=FakeClock())
        backoff.record_failure("org-1")
        backoff.record_failure("org-1")
        assert backoff.remaining("org-2") == 0.0
        assert backoff.failures("org-2") == 0

    def test_jitter_bounds(self) -> None:
        config = BackoffConfig(base_delay=10.0, max_delay=100.0, jitter=0.2)
        backoff = OrganizationBackoff(config, clock=FakeClock(), rng=random.Random(42))
        for organization in range(50):
            delay = backoff.record_failure(f"org-{organization}")
            assert 8.0 <= delay <= 12.0

    def test_default_config(self) -> None:
        backoff = OrganizationBackoff()
        assert backoff.config.base_delay == 1.0
        assert backoff.config.max_delay == 300.0
