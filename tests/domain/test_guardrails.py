"""Tests for retry policy and pipeline counters."""

import threading

import pytest

from src.domain.guardrails import AuditMetrics, RetryPolicy


class TestRetryPolicy:
    """Test linear backoff schedule."""

    def test_linear_delays(self):
        policy = RetryPolicy(max_retries=3, backoff_seconds=0.5)
        assert list(policy.delays()) == [0.5, 1.0, 1.5]
        assert policy.total_attempts == 4

    def test_zero_retries(self):
        policy = RetryPolicy(max_retries=0)
        assert list(policy.delays()) == []
        assert policy.total_attempts == 1

    def test_negative_values_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_seconds=-0.1)


class TestAuditMetrics:
    """Test thread-safe counters."""

    def test_all_counters_start_at_zero(self):
        stats = AuditMetrics().get_statistics()
        assert set(stats) == set(AuditMetrics.COUNTERS)
        assert all(value == 0 for value in stats.values())

    def test_increment_and_reset(self):
        metrics = AuditMetrics()
        metrics.increment("records_written", 3)
        metrics.increment("records_written")
        assert metrics.get("records_written") == 4

        metrics.reset()
        assert metrics.get("records_written") == 0

    def test_concurrent_increments(self):
        metrics = AuditMetrics()

        def work():
            for _ in range(1000):
                metrics.increment("records_buffered")

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert metrics.get("records_buffered") == 8000
