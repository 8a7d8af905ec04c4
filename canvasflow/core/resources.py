"""Resource admission control shared by concurrent workflow runs.

Two independent mechanisms:

- Allocation gate: running totals of memory, CPU and connections (plus a cap on
  concurrent allocations) checked against configured ceilings. Requests that do
  not fit wait in a priority queue and are granted when capacity is released.
- Rate limiter: a fixed window on calls to the external generation API. The
  window resets from elapsed wall-clock time, so a suspended process does not
  come back to stale state.

Both are guarded by locks so several runs can share one gate.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from canvasflow.core.config import RateLimitConfig, ResourceAmounts, ResourceLimits
from canvasflow.core.models import ExecutionPriority

logger = logging.getLogger(__name__)


class ResourceError(Exception):
    """Error in resource admission."""

    pass


class ResourceLimitError(ResourceError):
    """A single request exceeds a ceiling and could never be granted."""

    pass


@dataclass(frozen=True)
class ResourceUsage:
    """Totals currently granted."""

    memory: float = 0.0
    cpu: float = 0.0
    connections: int = 0


@dataclass(frozen=True)
class ResourceAllocation:
    """Resources granted to one execution. Owned by the gate."""

    execution_id: str
    resources: ResourceAmounts
    priority: ExecutionPriority
    granted_at: float


@dataclass(frozen=True)
class QueueEntry:
    """A request waiting for capacity."""

    execution_id: str
    requested: ResourceAmounts
    priority: ExecutionPriority
    enqueued_at: float
    sequence: int

    @property
    def sort_key(self) -> tuple[int, float, int]:
        # high > normal > low, then FIFO
        return (-self.priority.rank, self.enqueued_at, self.sequence)


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a resource request: granted now, or queued."""

    granted: bool
    allocation: ResourceAllocation | None = None
    evicted: tuple[str, ...] = ()

    @property
    def queued(self) -> bool:
        return not self.granted


@dataclass(frozen=True)
class Utilization:
    """Percentages of each ceiling in use, always within [0, 100]."""

    memory: float
    cpu: float
    connections: float
    executions: float


@dataclass(frozen=True)
class QueueStatus:
    length: int
    high_priority_count: int
    average_wait: float  # seconds


@dataclass(frozen=True)
class ResourceRecommendations:
    """Advice derived from current utilization."""

    should_reduce_concurrency: bool
    should_increase_delay: bool
    recommended_delay: float  # seconds
    should_pause_new_executions: bool


def _percent(used: float, ceiling: float) -> float:
    if ceiling <= 0:
        return 0.0 if used <= 0 else 100.0
    return min(100.0, max(0.0, used / ceiling * 100))


class RateLimiter:
    """Fixed-window call counter.

    The window opens with the first call recorded after a reset and closes
    ``window_seconds`` later, measured on the injected clock.
    """

    def __init__(self, config: RateLimitConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start: float | None = None
        self._count = 0

    def _roll(self, now: float) -> None:
        """Reset the window if it has elapsed (call within lock)."""
        if self._window_start is None:
            return
        elapsed = now - self._window_start
        # A clock that went backwards also invalidates the window
        if elapsed >= self.config.window_seconds or elapsed < 0:
            self._window_start = None
            self._count = 0

    def can_call(self) -> bool:
        with self._lock:
            self._roll(self._clock())
            return self._count < self.config.max_calls

    def record(self) -> None:
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._window_start is None:
                self._window_start = now
            self._count += 1

    def delay(self) -> float:
        """Seconds until a call is allowed again (0 if allowed now)."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self.config.max_calls or self._window_start is None:
                return 0.0
            return max(0.0, self._window_start + self.config.window_seconds - now)

    def try_record(self) -> float:
        """Record a call if the window allows it.

        Returns:
            0.0 if the call was recorded, else the seconds until the window resets
        """
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self.config.max_calls:
                if self._window_start is None:
                    self._window_start = now
                self._count += 1
                return 0.0
            return max(0.0, self._window_start + self.config.window_seconds - now)

    @property
    def calls_in_window(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self._count

    def reset(self) -> None:
        with self._lock:
            self._window_start = None
            self._count = 0


class ResourceGate:
    """Admit or queue execution requests against resource ceilings.

    USAGE:
        gate = ResourceGate()
        result = gate.request_resources("run-1:A01", ResourceAmounts(memory=64))
        if result.queued:
            # poll gate.is_allocated("run-1:A01") until granted
            ...
        gate.release("run-1:A01")

    Thread-safe: every check-and-grant happens under a single lock.
    """

    HIGH_UTILIZATION_WARNING = 90.0

    def __init__(
        self,
        limits: ResourceLimits | None = None,
        rate_limit: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.limits = limits or ResourceLimits()
        self._clock = clock
        self._lock = threading.RLock()
        self._allocations: dict[str, ResourceAllocation] = {}
        self._queue: list[QueueEntry] = []
        self._sequence = itertools.count()
        self._usage = ResourceUsage()
        self.rate_limiter = RateLimiter(rate_limit, clock)

    # ========== Allocation ==========

    def request_resources(
        self,
        execution_id: str,
        amounts: ResourceAmounts | None = None,
        priority: ExecutionPriority = ExecutionPriority.NORMAL,
    ) -> GrantResult:
        """Grant resources now if every ceiling still holds, else queue.

        A repeated request for an id that is already granted or queued returns
        the existing state without adding anything.

        Raises:
            ResourceLimitError: If the request alone exceeds a ceiling
        """
        amounts = amounts or ResourceAmounts()
        self._check_request_size(execution_id, amounts)

        with self._lock:
            existing = self._allocations.get(execution_id)
            if existing is not None:
                return GrantResult(granted=True, allocation=existing)
            if self._is_queued(execution_id):
                return GrantResult(granted=False)

            if self._fits(amounts):
                allocation = self._grant(execution_id, amounts, priority)
                return GrantResult(granted=True, allocation=allocation)

            self._enqueue(execution_id, amounts, priority)
            logger.info(
                f"Queued resource request '{execution_id}' ({priority.value}), "
                f"queue length {len(self._queue)}"
            )
            return GrantResult(granted=False)

    def force_allocation(self, execution_id: str, amounts: ResourceAmounts | None = None) -> GrantResult:
        """High-priority admission that may evict lower-priority allocations.

        Non-high allocations are evicted lowest priority first, then oldest
        first, until the request fits; evicted work goes back to the head of its
        queue band. High-priority allocations are never evicted. If eviction
        cannot make room nothing is evicted and the request is queued as high.

        Raises:
            ResourceLimitError: If the request alone exceeds a ceiling
        """
        amounts = amounts or ResourceAmounts()
        self._check_request_size(execution_id, amounts)

        with self._lock:
            existing = self._allocations.get(execution_id)
            if existing is not None:
                return GrantResult(granted=True, allocation=existing)
            self._withdraw(execution_id)

            candidates = sorted(
                (a for a in self._allocations.values() if a.priority != ExecutionPriority.HIGH),
                key=lambda a: (a.priority.rank, a.granted_at),
            )
            victims: list[ResourceAllocation] = []
            remaining = dict(self._allocations)
            for candidate in candidates:
                if self._fits(amounts, remaining.values()):
                    break
                victims.append(candidate)
                del remaining[candidate.execution_id]

            if not self._fits(amounts, remaining.values()):
                self._enqueue(execution_id, amounts, ExecutionPriority.HIGH)
                logger.warning(
                    f"Forced allocation for '{execution_id}' cannot fit without evicting "
                    f"high-priority work; queued"
                )
                return GrantResult(granted=False)

            for victim in victims:
                del self._allocations[victim.execution_id]
                self._requeue_at_head(victim)
                logger.warning(
                    f"Evicted '{victim.execution_id}' ({victim.priority.value}) "
                    f"for high-priority '{execution_id}'"
                )
            self._recompute_usage()

            allocation = self._grant(execution_id, amounts, ExecutionPriority.HIGH)
            return GrantResult(
                granted=True,
                allocation=allocation,
                evicted=tuple(v.execution_id for v in victims),
            )

    def release(self, execution_id: str) -> list[ResourceAllocation]:
        """Return an execution's resources and grant what now fits from the queue.

        Also withdraws any queued request for the id. Releasing an unknown id is
        a no-op.

        Returns:
            Allocations granted from the queue as a result of this release
        """
        with self._lock:
            self._withdraw(execution_id)
            if self._allocations.pop(execution_id, None) is None:
                return []
            self._recompute_usage()
            return self._drain_queue()

    def is_allocated(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._allocations

    def is_queued(self, execution_id: str) -> bool:
        with self._lock:
            return self._is_queued(execution_id)

    def allocation_for(self, execution_id: str) -> ResourceAllocation | None:
        with self._lock:
            return self._allocations.get(execution_id)

    # ========== Reporting ==========

    def usage(self) -> ResourceUsage:
        with self._lock:
            return self._usage

    def utilization(self) -> Utilization:
        with self._lock:
            return Utilization(
                memory=_percent(self._usage.memory, self.limits.max_memory),
                cpu=_percent(self._usage.cpu, self.limits.max_cpu),
                connections=_percent(self._usage.connections, self.limits.max_connections),
                executions=_percent(len(self._allocations), self.limits.max_concurrent_executions),
            )

    def queue_status(self) -> QueueStatus:
        with self._lock:
            now = self._clock()
            waits = [max(0.0, now - e.enqueued_at) for e in self._queue]
            return QueueStatus(
                length=len(self._queue),
                high_priority_count=sum(
                    1 for e in self._queue if e.priority == ExecutionPriority.HIGH
                ),
                average_wait=sum(waits) / len(waits) if waits else 0.0,
            )

    def queued_entries(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._queue)

    def recommendations(self) -> ResourceRecommendations:
        u = self.utilization()
        return ResourceRecommendations(
            should_reduce_concurrency=u.cpu > 90 or u.memory > 90,
            should_increase_delay=u.connections > 80,
            recommended_delay=2.0 if u.connections > 80 else 1.0,
            should_pause_new_executions=u.memory > 80 or u.cpu > 80 or u.connections > 90,
        )

    def update_limits(self, **changes) -> list[ResourceAllocation]:
        """Change ceilings and grant whatever now fits from the queue."""
        with self._lock:
            self.limits = self.limits.model_copy(update=changes)
            return self._drain_queue()

    def reset(self) -> None:
        """Drop every allocation, queued request and rate-limit count."""
        with self._lock:
            self._allocations.clear()
            self._queue.clear()
            self._usage = ResourceUsage()
        self.rate_limiter.reset()

    # ========== Rate Limiting ==========

    def can_make_external_call(self) -> bool:
        return self.rate_limiter.can_call()

    def record_external_call(self) -> None:
        self.rate_limiter.record()

    def rate_limit_delay(self) -> float:
        """Seconds the caller should wait before the next external call."""
        return self.rate_limiter.delay()

    def try_record_external_call(self) -> float:
        """Check and record an external call in one step. Returns 0.0 when recorded."""
        return self.rate_limiter.try_record()

    # ========== Internals (call within lock) ==========

    def _check_request_size(self, execution_id: str, amounts: ResourceAmounts) -> None:
        limits = self.limits
        for name, requested, ceiling in (
            ("memory", amounts.memory, limits.max_memory),
            ("cpu", amounts.cpu, limits.max_cpu),
            ("connections", amounts.connections, limits.max_connections),
        ):
            if requested > ceiling:
                raise ResourceLimitError(
                    f"Request '{execution_id}' asks for {requested} {name}, "
                    f"above the ceiling of {ceiling}"
                )

    def _fits(self, amounts: ResourceAmounts, allocations=None) -> bool:
        if allocations is None:
            usage, count = self._usage, len(self._allocations)
        else:
            allocations = list(allocations)
            usage, count = self._sum(allocations), len(allocations)
        return (
            count < self.limits.max_concurrent_executions
            and usage.memory + amounts.memory <= self.limits.max_memory
            and usage.cpu + amounts.cpu <= self.limits.max_cpu
            and usage.connections + amounts.connections <= self.limits.max_connections
        )

    @staticmethod
    def _sum(allocations) -> ResourceUsage:
        memory = cpu = 0.0
        connections = 0
        for a in allocations:
            memory += a.resources.memory
            cpu += a.resources.cpu
            connections += a.resources.connections
        return ResourceUsage(memory=memory, cpu=cpu, connections=connections)

    def _recompute_usage(self) -> None:
        self._usage = self._sum(self._allocations.values())

    def _grant(
        self, execution_id: str, amounts: ResourceAmounts, priority: ExecutionPriority
    ) -> ResourceAllocation:
        allocation = ResourceAllocation(
            execution_id=execution_id,
            resources=amounts,
            priority=priority,
            granted_at=self._clock(),
        )
        self._allocations[execution_id] = allocation
        self._recompute_usage()

        u = self.utilization()
        if u.memory > self.HIGH_UTILIZATION_WARNING:
            logger.warning(f"High memory utilization: {u.memory:.1f}%")
        if u.cpu > self.HIGH_UTILIZATION_WARNING:
            logger.warning(f"High CPU utilization: {u.cpu:.1f}%")
        return allocation

    def _enqueue(self, execution_id: str, amounts: ResourceAmounts, priority: ExecutionPriority) -> None:
        self._queue.append(
            QueueEntry(
                execution_id=execution_id,
                requested=amounts,
                priority=priority,
                enqueued_at=self._clock(),
                sequence=next(self._sequence),
            )
        )
        self._queue.sort(key=lambda e: e.sort_key)

    def _requeue_at_head(self, allocation: ResourceAllocation) -> None:
        band = [e for e in self._queue if e.priority == allocation.priority]
        enqueued_at = min([allocation.granted_at] + [e.enqueued_at for e in band])
        first_sequence = min([0] + [e.sequence for e in band])
        self._queue.append(
            QueueEntry(
                execution_id=allocation.execution_id,
                requested=allocation.resources,
                priority=allocation.priority,
                enqueued_at=enqueued_at,
                sequence=first_sequence - 1,
            )
        )
        self._queue.sort(key=lambda e: e.sort_key)

    def _is_queued(self, execution_id: str) -> bool:
        return any(e.execution_id == execution_id for e in self._queue)

    def _withdraw(self, execution_id: str) -> None:
        self._queue = [e for e in self._queue if e.execution_id != execution_id]

    def _drain_queue(self) -> list[ResourceAllocation]:
        """Grant queued requests that fit, head to tail.

        Once an entry in a priority band does not fit, later entries of the same
        band wait behind it; other bands are still scanned.
        """
        granted: list[ResourceAllocation] = []
        blocked: set[ExecutionPriority] = set()
        for entry in list(self._queue):
            if entry.priority in blocked:
                continue
            if not self._fits(entry.requested):
                blocked.add(entry.priority)
                continue
            self._queue.remove(entry)
            granted.append(self._grant(entry.execution_id, entry.requested, entry.priority))
            logger.info(f"Resources allocated for queued execution: {entry.execution_id}")
        return granted
