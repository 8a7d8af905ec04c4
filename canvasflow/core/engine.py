"""Execution scheduler for canvas workflows.

Runs a plan one node at a time:

- Single-shot: each node is dispatched with its current content as the prompt,
  then the scheduler waits a paced interval before the next node.
- Batch: the whole plan runs once per dataset item. Prompts are resolved from
  upstream outputs and batch tokens, and after each dispatch the scheduler waits
  for the collaborator's completion signal (or a timeout) before moving on.

Every dispatch goes through the shared ResourceGate: admission first, then the
external-call rate limit. Progress is published as immutable snapshots.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import threading
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from canvasflow.core.completion import (
    CompletionRegistry,
    ExecutionCancelledError,
)
from canvasflow.core.config import (
    ADAPTIVE_BUFFER_SECONDS,
    ADAPTIVE_MAX_MULTIPLIER,
    DEFAULT_INTERVALS,
    MIN_SAFE_INTERVALS,
    ExecutionConfig,
    ExecutionMode,
)
from canvasflow.core.history import ExecutionHistory, RunStatus
from canvasflow.core.models import (
    CanvasEdge,
    CanvasNode,
    ExecutionPriority,
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    NodeExecutionContext,
    NodeKind,
    OutputUnit,
    ResultHandling,
    utc_now,
)
from canvasflow.core.resources import ResourceGate, ResourceLimitError
from canvasflow.core.scheduler import ExecutionPlan, PlanNode, build_plan
from canvasflow.core.variables import BatchContext, prepare_prompt

logger = logging.getLogger(__name__)

ExecuteCallback = Callable[[str, str, NodeExecutionContext], Awaitable[Any] | Any]
ProgressCallback = Callable[[ExecutionProgress], Any]
OutputCallback = Callable[[OutputUnit], Awaitable[Any] | Any]


class SchedulerError(Exception):
    """Error controlling a workflow run."""

    pass


class SchedulerBusyError(SchedulerError):
    """A run is already in progress on this scheduler."""

    pass


class _RunPaused(Exception):
    """The run was paused before the current node could be dispatched."""

    pass


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 4
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries + 1,
            initial_delay=config.retry_initial_delay,
            backoff_multiplier=config.retry_backoff_multiplier,
            max_delay=config.retry_max_delay,
        )

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)


def base_interval(config: ExecutionConfig, kind: NodeKind) -> float:
    """Mode interval for a kind; custom mode uses ``custom_interval`` when set."""
    if config.mode == ExecutionMode.CUSTOM and config.custom_interval:
        return config.custom_interval
    return DEFAULT_INTERVALS[config.mode].for_kind(kind)


def calculate_wait_time(
    config: ExecutionConfig, kind: NodeKind, actual_duration: float | None = None
) -> float:
    """Seconds to wait after a node before dispatching the next one.

    With adaptive pacing and a measured duration the wait is
    ``max(base, duration + 30)`` capped at three times the base. Otherwise the
    base interval is raised to the kind's safe minimum.
    """
    base = base_interval(config, kind)
    if config.adaptive_interval and actual_duration:
        adaptive = max(base, actual_duration + ADAPTIVE_BUFFER_SECONDS)
        return min(adaptive, base * ADAPTIVE_MAX_MULTIPLIER)
    return max(base, MIN_SAFE_INTERVALS.for_kind(kind))


def suggested_filename(batch_index: int, label: str, kind: NodeKind, content: str) -> str:
    """Numbered export filename, e.g. ``001_A03_image.png``.

    Media nodes whose content is not a URL or data URI are exported as text.
    """
    prefix = f"{batch_index + 1:03d}_{label}"
    if kind == NodeKind.IMAGE:
        if content.startswith(("http://", "https://", "data:image/")):
            return f"{prefix}_image.png"
        return f"{prefix}_image_info.txt"
    if kind == NodeKind.VIDEO:
        if content.startswith(("http://", "https://", "data:video/")):
            return f"{prefix}_video.mp4"
        return f"{prefix}_video_info.txt"
    return f"{prefix}_text.txt"


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    """Call a collaborator that may be sync or async."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass
class _RunState:
    """Everything a run needs that is not part of the progress snapshot."""

    run_id: str
    plan: ExecutionPlan
    nodes: dict[str, CanvasNode]
    execute: ExecuteCallback
    batch_data: list[str] | None = None
    on_progress: ProgressCallback | None = None
    result_handling: ResultHandling = ResultHandling.NONE
    create_output_unit: OutputCallback | None = None
    export_output: OutputCallback | None = None
    final_output_ids: frozenset[str] = frozenset()
    # node_id -> output produced in the current batch pass
    pass_outputs: dict[str, str] = field(default_factory=dict)


class ExecutionScheduler:
    """Drive one workflow run at a time through the resource gate.

    USAGE:
        scheduler = ExecutionScheduler(config, gate=shared_gate)
        progress = await scheduler.start(nodes, edges, execute, batch_data=items)

    ``start`` returns when the run completes, errors, pauses or is stopped.
    ``pause``, ``stop`` and ``notify_node_completion`` may be called from other
    tasks or threads while it is running.
    """

    # Batch-mode buffers (seconds, multiplied by interval_scale)
    NODE_SETTLE_BUFFER = 0.5
    BETWEEN_NODES_BUFFER = 1.0
    OUTPUT_UNIT_BUFFER = 1.0
    BETWEEN_ITEMS_BUFFER = 2.0

    def __init__(
        self,
        config: ExecutionConfig | None = None,
        gate: ResourceGate | None = None,
        history: ExecutionHistory | None = None,
    ):
        self.config = config or ExecutionConfig()
        self.gate = gate or ResourceGate()
        self.history = history
        self.retry_policy = RetryPolicy.from_config(self.config)

        self._progress = ExecutionProgress()
        self._progress_lock = threading.Lock()
        self._run: _RunState | None = None
        self._completions = CompletionRegistry()
        self._loop_active = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None

    # ========== Public API ==========

    @property
    def progress(self) -> ExecutionProgress:
        """Current snapshot. Snapshots are immutable; a new one replaces it on change."""
        with self._progress_lock:
            return self._progress

    @property
    def plan(self) -> ExecutionPlan | None:
        run = self._run
        return run.plan if run else None

    async def start(
        self,
        nodes: Sequence[CanvasNode],
        edges: Iterable[CanvasEdge],
        execute: ExecuteCallback,
        *,
        batch_data: Sequence[str] | None = None,
        on_progress: ProgressCallback | None = None,
        result_handling: ResultHandling = ResultHandling.NONE,
        create_output_unit: OutputCallback | None = None,
        export_output: OutputCallback | None = None,
        final_output_labels: Sequence[str] | None = None,
        workflow_name: str | None = None,
    ) -> ExecutionProgress:
        """Build a plan and run it.

        Args:
            nodes: Canvas nodes; their ``content`` is read live during the run
            edges: Dependencies between nodes
            execute: ``execute(node_id, prompt, context)``, sync or async
            batch_data: One pass of the plan per item; None for single-shot
            on_progress: Called with every new progress snapshot
            result_handling: What to do with each batch pass's results
            create_output_unit: Persists a pass result (CANVAS handling)
            export_output: Exports a final-output node result (DOWNLOAD handling)
            final_output_labels: Labels exported in DOWNLOAD handling; defaults
                to nodes with no downstream edges
            workflow_name: Name recorded in the execution history

        Returns:
            The progress snapshot at the moment the run stopped advancing

        Raises:
            SchedulerBusyError: If a run is already running or paused
            PlanError: If the graph cannot be planned (nothing is started)
        """
        if self._loop_active or self.progress.status in (
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
        ):
            raise SchedulerBusyError("A workflow run is already in progress")

        plan = build_plan(nodes, edges)
        batch = list(batch_data) if batch_data is not None else None
        if batch is not None and not batch:
            raise SchedulerError("Batch dataset is empty")

        if final_output_labels:
            wanted = set(final_output_labels)
            final_ids = frozenset(n.node_id for n in plan if n.label in wanted)
        else:
            final_ids = frozenset(n.node_id for n in plan.final_output_nodes())

        run = _RunState(
            run_id=uuid.uuid4().hex[:12],
            plan=plan,
            nodes={n.id: n for n in nodes},
            execute=execute,
            batch_data=batch,
            on_progress=on_progress,
            result_handling=result_handling,
            create_output_unit=create_output_unit,
            export_output=export_output,
            final_output_ids=final_ids,
        )
        self._completions = CompletionRegistry()

        passes = len(batch) if batch else 1
        started = utc_now()
        estimate = self.estimate_total_duration(plan, passes)
        initial = ExecutionProgress(
            current_index=0,
            total_units=len(plan) * passes,
            status=ExecutionStatus.RUNNING,
            started_at=started,
            estimated_end_at=started + timedelta(seconds=estimate),
            batch_index=0 if batch else None,
            batch_total=len(batch) if batch else None,
        )
        with self._progress_lock:
            self._run = run
            self._progress = initial
        self._notify(run, initial)
        if self.history is not None:
            self.history.begin_run(
                run.run_id,
                workflow_name=workflow_name,
                batch_size=len(batch) if batch else None,
                config=self.config.model_dump(mode="json"),
            )

        mode = f"batch of {len(batch)}" if batch else "single-shot"
        logger.info(f"Starting run {run.run_id}: {len(plan)} nodes, {mode}")
        return await self._run_loop(run)

    def pause(self) -> bool:
        """Stop advancing after the in-flight node. Returns False if not running."""
        run = self._run
        if run is None or not self._update(
            run, only_if=ExecutionStatus.RUNNING, status=ExecutionStatus.PAUSED
        ):
            return False
        self._interrupt()
        logger.info(f"Paused run {run.run_id} at unit {self.progress.current_index}")
        return True

    async def resume(self) -> ExecutionProgress:
        """Continue a paused run from where it stopped.

        Raises:
            SchedulerError: If there is no paused run
            SchedulerBusyError: If the paused run is still finishing its node
        """
        run = self._run
        if run is None or self.progress.status != ExecutionStatus.PAUSED:
            raise SchedulerError("No paused run to resume")
        if self._loop_active:
            raise SchedulerBusyError("Run is still finishing its current node")

        if not self._update(
            run, only_if=ExecutionStatus.PAUSED, status=ExecutionStatus.RUNNING, error_message=None
        ):
            raise SchedulerError("No paused run to resume")
        logger.info(f"Resuming run {run.run_id} at unit {self.progress.current_index}")
        return await self._run_loop(run)

    def stop(self) -> None:
        """Discard the run and reset progress. Safe to call repeatedly."""
        idle = ExecutionProgress()
        with self._progress_lock:
            run = self._run
            if run is None:
                return
            self._run = None
            previous = self._progress.status
            self._progress = idle
        cancelled = self._completions.cancel_all()
        self._interrupt()

        if self.history is not None and previous in (
            ExecutionStatus.RUNNING,
            ExecutionStatus.PAUSED,
        ):
            self.history.complete_run(run.run_id, RunStatus.CANCELLED)

        self._notify(run, idle)
        logger.info(f"Stopped run {run.run_id} ({cancelled} pending waits cancelled)")

    def notify_node_completion(
        self,
        node_id: str,
        success: bool = True,
        error: str | BaseException | None = None,
        output: str | None = None,
    ) -> bool:
        """Report that a dispatched node has really finished. Thread-safe.

        Returns:
            True if a waiting dispatch was resolved; False if the signal was
            recorded for a later wait.
        """
        message = str(error) if error is not None else None
        return self._completions.signal(node_id, success=success, error=message, output=output)

    def calculate_wait_time(self, kind: NodeKind, actual_duration: float | None = None) -> float:
        return calculate_wait_time(self.config, kind, actual_duration)

    def estimate_total_duration(self, plan: ExecutionPlan, passes: int = 1) -> float:
        """Estimated seconds for ``passes`` runs of the plan, pacing included."""
        per_pass = sum(
            node.estimated_duration + base_interval(self.config, node.kind) for node in plan
        )
        return per_pass * max(1, passes)

    def update_config(self, **changes: Any) -> ExecutionConfig:
        """Replace configuration fields; applies from the next node onwards."""
        self.config = ExecutionConfig.model_validate({**self.config.model_dump(), **changes})
        self.retry_policy = RetryPolicy.from_config(self.config)
        return self.config

    # ========== Run Loop ==========

    async def _run_loop(self, run: _RunState) -> ExecutionProgress:
        self._loop_active = True
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        try:
            if run.batch_data is not None:
                await self._run_batch(run)
            else:
                await self._run_single(run)
        except ExecutionCancelledError:
            logger.info(f"Run {run.run_id} cancelled")
        finally:
            self._loop_active = False
        return self.progress

    def _active(self, run: _RunState) -> bool:
        return self._run is run and self.progress.status == ExecutionStatus.RUNNING

    async def _run_single(self, run: _RunState) -> None:
        plan = run.plan
        while self._active(run):
            index = self.progress.current_index
            if index >= len(plan):
                self._complete(run)
                return

            pnode = plan[index]
            self._update(run, current_node_id=pnode.node_id)
            prompt = run.nodes[pnode.node_id].content

            result = await self._execute_node(run, pnode, prompt, pass_index=0)
            if result is None or self._run is not run:
                return
            record, _ = result
            self._record(run, record, current_index=index + 1)

            if not record.success and self.config.pause_on_error:
                self._fail(run, pnode, record.error)
                return
            if index + 1 >= len(plan):
                continue

            actual = record.duration if record.success else None
            wait = self.calculate_wait_time(pnode.kind, actual)
            logger.info(f"Waiting {wait:.0f}s before next node")
            await self._sleep(wait * self.config.interval_scale)

    async def _run_batch(self, run: _RunState) -> None:
        plan, batch = run.plan, run.batch_data or []
        size = len(plan)
        while self._active(run):
            index = self.progress.current_index
            if index >= size * len(batch):
                self._complete(run)
                return

            item_index, position = divmod(index, size)
            if position == 0:
                run.pass_outputs.clear()
                logger.info(f"Batch item {item_index + 1}/{len(batch)}")
            pnode = plan[position]
            node = run.nodes[pnode.node_id]

            context = BatchContext.now(batch[item_index], item_index, len(batch))
            prompt = prepare_prompt(node.template, self._upstream_outputs(run, pnode), context)
            self._update(run, current_node_id=pnode.node_id, batch_index=item_index)

            result = await self._execute_node(
                run, pnode, prompt, pass_index=item_index, batch=context
            )
            if result is None or self._run is not run:
                return
            record, output = result
            if record.success:
                run.pass_outputs[pnode.node_id] = output or ""
            self._record(run, record, current_index=index + 1)

            if not record.success and self.config.pause_on_error:
                self._fail(run, pnode, record.error)
                return

            if (
                record.success
                and run.result_handling == ResultHandling.DOWNLOAD
                and pnode.node_id in run.final_output_ids
            ):
                await self._export(run, pnode, item_index)

            await self._sleep(self.NODE_SETTLE_BUFFER * self.config.interval_scale)
            if position < size - 1:
                await self._sleep(self.BETWEEN_NODES_BUFFER * self.config.interval_scale)
                continue

            if run.result_handling == ResultHandling.CANVAS:
                await self._materialize(run, item_index)
            if item_index < len(batch) - 1:
                await self._sleep(self.BETWEEN_ITEMS_BUFFER * self.config.interval_scale)

    def _upstream_outputs(self, run: _RunState, pnode: PlanNode) -> dict[str, str]:
        """Label -> output of each dependency in the current pass."""
        outputs = {}
        for dep_id in pnode.dependencies:
            dep = run.plan.get(dep_id)
            content = run.pass_outputs.get(dep_id)
            if content is None:
                content = run.nodes[dep_id].content
            if not content.strip():
                logger.warning(
                    f"Upstream block [{dep.label}] is empty, output of {pnode.label} may suffer"
                )
            outputs[dep.label] = content
        return outputs

    # ========== Node Execution ==========

    async def _execute_node(
        self,
        run: _RunState,
        pnode: PlanNode,
        prompt: str,
        pass_index: int,
        batch: BatchContext | None = None,
    ) -> tuple[ExecutionRecord, str | None] | None:
        """Dispatch a node with retries.

        Returns:
            One record covering every attempt, and the node's output on success.
            None if the run was paused before the node could be dispatched; the
            node runs again from its first attempt on resume.

        Raises:
            ExecutionCancelledError: If the run is stopped meanwhile
        """
        started_at = utc_now()
        t0 = time.monotonic()
        error: str | None = None
        output: str | None = None
        attempts = 0

        for attempt in range(1, self.retry_policy.max_attempts + 1):
            attempts = attempt
            try:
                self._check_active(run)
                output = await self._dispatch(run, pnode, prompt, pass_index, attempt, batch)
                error = None
                break
            except ExecutionCancelledError:
                raise
            except _RunPaused:
                logger.info(f"Node {pnode.label} deferred until the run resumes")
                return None
            except ResourceLimitError as e:
                error = str(e)
                logger.error(f"Node {pnode.label} can never be admitted: {error}")
                break
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning(
                    f"Node {pnode.label} attempt {attempt}/{self.retry_policy.max_attempts} "
                    f"failed: {error}"
                )
                if attempt < self.retry_policy.max_attempts:
                    delay = self.retry_policy.get_delay(attempt - 1)
                    await self._sleep(delay * self.config.interval_scale)

        duration = time.monotonic() - t0
        record = ExecutionRecord(
            node_id=pnode.node_id,
            label=pnode.label,
            batch_index=batch.index if batch else None,
            started_at=started_at,
            ended_at=utc_now(),
            duration=duration,
            success=error is None,
            error=error,
            attempts=attempts,
        )
        if record.success:
            logger.info(f"Node {pnode.label} completed in {duration:.1f}s")
        else:
            logger.error(f"Node {pnode.label} failed after {attempts} attempt(s): {error}")
        return record, output

    async def _dispatch(
        self,
        run: _RunState,
        pnode: PlanNode,
        prompt: str,
        pass_index: int,
        attempt: int,
        batch: BatchContext | None,
    ) -> str:
        """Admission, rate limit, execute, and (batch) wait for completion."""
        execution_id = f"{run.run_id}:{pnode.node_id}:{pass_index}"
        try:
            await self._acquire(run, execution_id, pnode)
            await self._respect_rate_limit(run)
            node = run.nodes[pnode.node_id]
            context = NodeExecutionContext(
                run_id=run.run_id,
                resolved_prompt=prompt,
                original_prompt=node.template,
                batch_index=batch.index if batch else None,
                batch_total=batch.total if batch else None,
                attempt=attempt,
            )
            if batch is not None:
                self._completions.arm(pnode.node_id)

            logger.debug(f"Dispatching {pnode.label} ({pnode.kind.value}): {prompt[:100]}")
            await _call(run.execute, pnode.node_id, prompt, context)

            if batch is None:
                return node.content
            signal = await self._completions.wait(pnode.node_id, self.config.completion_timeout)
            return signal.output if signal.output is not None else node.content
        finally:
            self.gate.release(execution_id)

    async def _acquire(self, run: _RunState, execution_id: str, pnode: PlanNode) -> None:
        """Wait until the gate grants resources for this dispatch.

        The caller releases ``execution_id`` whether or not it was granted.
        """
        requirement = self.config.requirement_for(pnode.kind)
        result = self.gate.request_resources(execution_id, requirement, ExecutionPriority.NORMAL)
        if result.granted:
            return
        logger.info(f"Waiting for resources for {pnode.label}")
        while not self.gate.is_allocated(execution_id):
            self._check_active(run)
            await self._sleep(self.config.admission_poll_interval)

    async def _respect_rate_limit(self, run: _RunState) -> None:
        """Wait for a slot in the external-call window and claim it."""
        while True:
            delay = self.gate.try_record_external_call()
            if delay <= 0:
                return
            logger.info(f"External call limit reached, waiting {delay:.1f}s")
            await self._sleep(delay)
            self._check_active(run)

    def _check_active(self, run: _RunState) -> None:
        """Raise if the run was stopped or paused since the last step."""
        if self._run is not run:
            raise ExecutionCancelledError("Run was stopped")
        if self.progress.status == ExecutionStatus.PAUSED:
            raise _RunPaused()

    # ========== Result Handling ==========

    async def _materialize(self, run: _RunState, batch_index: int) -> None:
        """Hand the last node's pass output to the persistence collaborator."""
        if run.create_output_unit is None:
            logger.warning("Canvas result handling requested without create_output_unit")
            return
        last = run.plan[-1]
        content = run.pass_outputs.get(last.node_id) or run.nodes[last.node_id].content
        if not content:
            logger.warning(f"No output from {last.label} for batch item {batch_index + 1}")
            return
        unit = OutputUnit(
            source_node_id=last.node_id,
            label=last.label,
            kind=last.kind,
            content=content,
            batch_index=batch_index,
        )
        try:
            await _call(run.create_output_unit, unit)
        except Exception as e:
            logger.error(f"Failed to create output unit for batch item {batch_index + 1}: {e}")
            return
        await self._sleep(self.OUTPUT_UNIT_BUFFER * self.config.interval_scale)

    async def _export(self, run: _RunState, pnode: PlanNode, batch_index: int) -> None:
        if run.export_output is None:
            logger.warning("Download result handling requested without export_output")
            return
        content = run.pass_outputs.get(pnode.node_id) or ""
        if not content.strip():
            logger.warning(f"Nothing to export from {pnode.label} for item {batch_index + 1}")
            return
        unit = OutputUnit(
            source_node_id=pnode.node_id,
            label=pnode.label,
            kind=pnode.kind,
            content=content,
            batch_index=batch_index,
            filename=suggested_filename(batch_index, pnode.label, pnode.kind, content),
        )
        try:
            await _call(run.export_output, unit)
        except Exception as e:
            logger.error(f"Failed to export {unit.filename}: {e}")

    # ========== Progress ==========

    def _notify(self, run: _RunState, progress: ExecutionProgress) -> None:
        if run.on_progress is not None:
            try:
                run.on_progress(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _update(
        self,
        run: _RunState,
        *,
        only_if: ExecutionStatus | None = None,
        record: ExecutionRecord | None = None,
        **changes: Any,
    ) -> bool:
        """Copy the current snapshot with ``changes`` and publish it.

        The read and the swap happen under one lock so updates from other
        threads (pause, stop) are never overwritten. Nothing is published for a
        run that has been stopped, or when the status is not ``only_if``.

        Returns:
            True if a new snapshot was published
        """
        with self._progress_lock:
            if self._run is not run:
                return False
            if only_if is not None and self._progress.status != only_if:
                return False
            if record is not None:
                changes["history"] = self._progress.history + (record,)
            progress = self._progress.model_copy(update=changes)
            self._progress = progress
        self._notify(run, progress)
        return True

    def _record(self, run: _RunState, record: ExecutionRecord, **changes: Any) -> None:
        if self._update(run, record=record, **changes) and self.history is not None:
            self.history.add_node_record(run.run_id, record)

    def _complete(self, run: _RunState) -> None:
        if not self._update(run, status=ExecutionStatus.COMPLETED, current_node_id=""):
            return
        if self.history is not None:
            self.history.complete_run(run.run_id, RunStatus.COMPLETED)
        p = self.progress
        logger.info(f"Run {run.run_id} completed: {p.succeeded} succeeded, {p.failed} failed")

    def _fail(self, run: _RunState, pnode: PlanNode, error: str | None) -> None:
        message = f"Node {pnode.label} failed: {error}"
        if not self._update(run, status=ExecutionStatus.ERROR, error_message=message):
            return
        if self.history is not None:
            self.history.complete_run(run.run_id, RunStatus.FAILED, error=message)
        logger.error(f"Run {run.run_id} stopped on error. {message}")

    # ========== Timing ==========

    async def _sleep(self, seconds: float) -> None:
        """Sleep, returning early if the run is paused or stopped."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if self._wake is None:
            await asyncio.sleep(seconds)
            return
        if self.progress.status != ExecutionStatus.RUNNING:
            return
        self._wake.clear()
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            pass

    def _interrupt(self) -> None:
        """Wake an interruptible sleep, from any thread."""
        loop, wake = self._loop, self._wake
        if loop is None or wake is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wake.set()
            return
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            # Loop closed after the check above; nothing is sleeping on it
            logger.debug("Event loop already closed, no sleep to interrupt")
