"""Tests for the resource gate and external-call rate limiter."""

import random
import threading

import pytest

from canvasflow.core.config import RateLimitConfig, ResourceAmounts, ResourceLimits
from canvasflow.core.models import ExecutionPriority
from canvasflow.core.resources import (
    RateLimiter,
    ResourceGate,
    ResourceLimitError,
)

HIGH, NORMAL, LOW = ExecutionPriority.HIGH, ExecutionPriority.NORMAL, ExecutionPriority.LOW


def amounts(memory=0, cpu=0, connections=0) -> ResourceAmounts:
    return ResourceAmounts(memory=memory, cpu=cpu, connections=connections)


class TestAdmission:
    """Tests for request_resources() and release()."""

    def test_grant_within_limits(self, gate):
        result = gate.request_resources("a", amounts(memory=100, cpu=10, connections=1))
        assert result.granted and not result.queued
        assert result.allocation.execution_id == "a"
        assert gate.usage().memory == 100
        assert gate.is_allocated("a")

    def test_queue_when_memory_would_overflow(self, gate):
        gate.request_resources("a", amounts(memory=400))
        result = gate.request_resources("b", amounts(memory=200))
        assert result.queued
        assert not gate.is_allocated("b")
        assert gate.is_queued("b")
        assert gate.usage().memory == 400

    def test_concurrent_execution_ceiling(self, gate):
        for name in "abc":
            assert gate.request_resources(name).granted
        assert gate.request_resources("d").queued

    def test_request_larger_than_ceiling_raises(self, gate):
        """A request that could never fit is a configuration error, not a queue state."""
        with pytest.raises(ResourceLimitError, match="memory"):
            gate.request_resources("huge", amounts(memory=513))
        assert gate.queue_status().length == 0

    def test_repeat_request_is_idempotent(self, gate):
        first = gate.request_resources("a", amounts(memory=10))
        second = gate.request_resources("a", amounts(memory=10))
        assert second.granted
        assert second.allocation == first.allocation
        assert gate.usage().memory == 10

    def test_release_grants_queued_request(self, gate):
        gate.request_resources("a", amounts(memory=400))
        gate.request_resources("b", amounts(memory=200))
        granted = gate.release("a")
        assert [a.execution_id for a in granted] == ["b"]
        assert gate.is_allocated("b")
        assert gate.usage().memory == 200

    def test_release_unknown_is_noop(self, gate):
        assert gate.release("nobody") == []

    def test_release_withdraws_queued_entry(self, gate):
        gate.request_resources("a", amounts(memory=500))
        gate.request_resources("b", amounts(memory=100))
        gate.release("b")
        assert not gate.is_queued("b")
        gate.release("a")
        assert not gate.is_allocated("b")

    def test_queue_order_priority_then_fifo(self, gate, clock):
        gate.request_resources("blocker", amounts(memory=512))
        for name, priority in (("low", LOW), ("n1", NORMAL), ("high", HIGH), ("n2", NORMAL)):
            clock.advance(1)
            gate.request_resources(name, amounts(memory=512), priority)
        assert [e.execution_id for e in gate.queued_entries()] == ["high", "n1", "n2", "low"]

        assert [a.execution_id for a in gate.release("blocker")] == ["high"]
        assert [a.execution_id for a in gate.release("high")] == ["n1"]

    def test_blocked_band_keeps_fifo_but_lower_band_may_fit(self, clock):
        """A later normal request never overtakes an earlier one in its band."""
        gate = ResourceGate(ResourceLimits(max_memory=512, max_concurrent_executions=2), clock=clock)
        gate.request_resources("blocker", amounts(memory=400))
        gate.request_resources("other", amounts(memory=50))
        clock.advance(1)
        gate.request_resources("n-large", amounts(memory=300))
        clock.advance(1)
        gate.request_resources("n-small", amounts(memory=10))
        gate.request_resources("low-small", amounts(memory=10), LOW)

        granted = gate.release("other")
        assert [a.execution_id for a in granted] == ["low-small"]
        assert gate.is_queued("n-large")
        assert gate.is_queued("n-small")

    def test_totals_never_exceed_ceilings(self, clock):
        """Random grant/release sequences keep every total within its ceiling."""
        limits = ResourceLimits(max_memory=300, max_cpu=50, max_connections=4, max_concurrent_executions=3)
        gate = ResourceGate(limits, clock=clock)
        rng = random.Random(7)
        ids = []
        for step in range(500):
            clock.advance(0.1)
            if ids and rng.random() < 0.4:
                gate.release(ids.pop(rng.randrange(len(ids))))
            else:
                name = f"e{step}"
                gate.request_resources(
                    name,
                    amounts(memory=rng.randint(0, 200), cpu=rng.randint(0, 40), connections=rng.randint(0, 2)),
                    rng.choice(list(ExecutionPriority)),
                )
                ids.append(name)
            usage = gate.usage()
            assert usage.memory <= limits.max_memory
            assert usage.cpu <= limits.max_cpu
            assert usage.connections <= limits.max_connections
            util = gate.utilization()
            for value in (util.memory, util.cpu, util.connections, util.executions):
                assert 0 <= value <= 100

    def test_thread_safety(self):
        """Concurrent requests never over-commit the gate."""
        gate = ResourceGate(ResourceLimits(max_memory=100, max_concurrent_executions=50))

        def worker(n):
            for i in range(20):
                gate.request_resources(f"{n}-{i}", amounts(memory=10))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert gate.usage().memory == 100
        assert gate.queue_status().length == 8 * 20 - 10


class TestForceAllocation:
    """Tests for the high-priority eviction path."""

    def test_evicts_lowest_priority_first(self, gate, clock):
        gate.request_resources("normal", amounts(memory=200), NORMAL)
        clock.advance(1)
        gate.request_resources("low", amounts(memory=200), LOW)
        result = gate.force_allocation("urgent", amounts(memory=200))
        assert result.granted
        assert result.evicted == ("low",)
        assert gate.is_allocated("normal")
        assert gate.is_queued("low")

    def test_evicts_oldest_within_band(self, gate, clock):
        gate.request_resources("old", amounts(memory=250), LOW)
        clock.advance(1)
        gate.request_resources("new", amounts(memory=250), LOW)
        result = gate.force_allocation("urgent", amounts(memory=100))
        assert result.evicted == ("old",)

    def test_evicted_work_requeued_at_head_of_band(self, gate, clock):
        gate.request_resources("victim", amounts(memory=300), LOW)
        clock.advance(1)
        gate.request_resources("waiting", amounts(memory=300), LOW)
        gate.force_allocation("urgent", amounts(memory=300))
        low_band = [e.execution_id for e in gate.queued_entries() if e.priority == LOW]
        assert low_band == ["victim", "waiting"]

    def test_never_evicts_high_priority(self, gate):
        gate.request_resources("h1", amounts(memory=300), HIGH)
        gate.request_resources("n1", amounts(memory=100), NORMAL)
        result = gate.force_allocation("urgent", amounts(memory=400))
        assert result.queued
        assert result.evicted == ()
        assert gate.is_allocated("h1")
        assert gate.is_allocated("n1")
        assert gate.is_queued("urgent")

    def test_no_eviction_when_it_fits(self, gate):
        gate.request_resources("n1", amounts(memory=100))
        result = gate.force_allocation("urgent", amounts(memory=100))
        assert result.granted and result.evicted == ()
        assert gate.allocation_for("urgent").priority == HIGH


class TestReporting:
    def test_utilization_percentages(self, gate):
        gate.request_resources("a", amounts(memory=256, cpu=40, connections=5))
        util = gate.utilization()
        assert util.memory == 50.0
        assert util.cpu == 50.0
        assert util.connections == 50.0
        assert util.executions == pytest.approx(100 / 3)

    def test_utilization_with_zero_ceiling(self, clock):
        gate = ResourceGate(ResourceLimits(max_connections=0), clock=clock)
        assert gate.utilization().connections == 0.0

    def test_queue_status(self, gate, clock):
        gate.request_resources("blocker", amounts(memory=512))
        gate.request_resources("h", amounts(memory=100), HIGH)
        clock.advance(2)
        gate.request_resources("n", amounts(memory=100))
        clock.advance(2)
        status = gate.queue_status()
        assert status.length == 2
        assert status.high_priority_count == 1
        assert status.average_wait == pytest.approx(3.0)

    def test_recommendations(self, gate):
        assert not gate.recommendations().should_pause_new_executions
        gate.request_resources("a", amounts(memory=480, cpu=75, connections=9))
        rec = gate.recommendations()
        assert rec.should_reduce_concurrency  # memory 93.75%
        assert rec.should_increase_delay
        assert rec.recommended_delay == 2.0
        assert rec.should_pause_new_executions

    def test_high_utilization_logs_warning(self, gate, caplog):
        gate.request_resources("a", amounts(memory=500))
        assert "High memory utilization" in caplog.text

    def test_update_limits_drains_queue(self, gate):
        gate.request_resources("a", amounts(memory=400))
        gate.request_resources("b", amounts(memory=200))
        granted = gate.update_limits(max_memory=1024)
        assert [a.execution_id for a in granted] == ["b"]
        assert gate.limits.max_memory == 1024

    def test_reset(self, gate):
        gate.request_resources("a", amounts(memory=500))
        gate.request_resources("b", amounts(memory=100))
        gate.record_external_call()
        gate.reset()
        assert gate.usage().memory == 0
        assert gate.queue_status().length == 0
        assert gate.rate_limiter.calls_in_window == 0


class TestRateLimiter:
    """Fixed-window limit on external calls."""

    def test_blocks_after_max_calls(self, clock):
        limiter = RateLimiter(RateLimitConfig(window_seconds=60, max_calls=3), clock)
        for _ in range(3):
            assert limiter.can_call()
            limiter.record()
        assert not limiter.can_call()
        assert limiter.delay() == 60

    def test_window_resets_from_elapsed_time(self, clock):
        limiter = RateLimiter(RateLimitConfig(window_seconds=60, max_calls=1), clock)
        limiter.record()
        clock.advance(59)
        assert not limiter.can_call()
        assert limiter.delay() == pytest.approx(1)
        clock.advance(1)
        assert limiter.can_call()
        assert limiter.delay() == 0

    def test_long_suspension_resets_window(self, clock):
        limiter = RateLimiter(RateLimitConfig(window_seconds=60, max_calls=1), clock)
        limiter.record()
        clock.advance(3600)
        assert limiter.can_call()
        assert limiter.calls_in_window == 0

    def test_try_record_claims_or_reports_wait(self, clock):
        limiter = RateLimiter(RateLimitConfig(window_seconds=60, max_calls=1), clock)
        assert limiter.try_record() == 0
        clock.advance(20)
        assert limiter.try_record() == pytest.approx(40)
        assert limiter.calls_in_window == 1
        clock.advance(40)
        assert limiter.try_record() == 0

    def test_concurrent_callers_never_exceed_window(self, clock):
        """Check-and-record is one step, so racing runs cannot overshoot the cap."""
        gate = ResourceGate(rate_limit=RateLimitConfig(window_seconds=60, max_calls=60), clock=clock)
        claimed = []

        def worker():
            for _ in range(50):
                if gate.try_record_external_call() == 0:
                    claimed.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(claimed) == 60
        assert gate.rate_limiter.calls_in_window == 60

    def test_gate_delegates(self, clock):
        gate = ResourceGate(rate_limit=RateLimitConfig(window_seconds=10, max_calls=2), clock=clock)
        gate.record_external_call()
        gate.record_external_call()
        assert not gate.can_make_external_call()
        assert gate.rate_limit_delay() == 10
