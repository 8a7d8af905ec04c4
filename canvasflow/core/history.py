"""Cross-run execution history.

Keeps one RunRecord per workflow run (newest first) with its node records, and
derives statistics from them. Storage is in memory; ``export_json`` and
``import_json`` let the caller persist it wherever it likes.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from canvasflow.core.models import ExecutionRecord, utc_now

logger = logging.getLogger(__name__)


class HistoryError(Exception):
    """Error reading or updating execution history."""

    pass


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunRecord(BaseModel):
    """One workflow run and the nodes it executed."""

    run_id: str
    workflow_name: str = "untitled"
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: datetime | None = None
    batch_size: int | None = None
    node_records: list[ExecutionRecord] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def completed_nodes(self) -> int:
        return sum(1 for r in self.node_records if r.success)

    @property
    def failed_nodes(self) -> int:
        return sum(1 for r in self.node_records if not r.success)


@dataclass
class HistoryFilter:
    workflow_name: str | None = None  # case-insensitive substring
    status: RunStatus | None = None
    started_after: datetime | None = None
    started_before: datetime | None = None
    offset: int = 0
    limit: int | None = None

    def matches(self, record: RunRecord) -> bool:
        if self.workflow_name and self.workflow_name.lower() not in record.workflow_name.lower():
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.started_after is not None and record.started_at < self.started_after:
            return False
        if self.started_before is not None and record.started_at > self.started_before:
            return False
        return True


@dataclass
class HistoryStatistics:
    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    cancelled_runs: int = 0
    success_rate: float = 0.0  # percent of runs that completed
    average_duration: float = 0.0  # seconds, completed runs only
    total_nodes_processed: int = 0
    most_failing_nodes: list[tuple[str, int]] = field(default_factory=list)
    most_used_workflows: list[tuple[str, int]] = field(default_factory=list)
    runs_by_day: dict[str, int] = field(default_factory=dict)


class ExecutionHistory:
    """Thread-safe store of run records, newest first."""

    def __init__(self, max_records: int = 1000):
        self.max_records = max_records
        self._records: list[RunRecord] = []
        self._lock = threading.RLock()

    # --- Recording ---

    def begin_run(
        self,
        run_id: str,
        workflow_name: str | None = None,
        batch_size: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> RunRecord:
        record = RunRecord(
            run_id=run_id,
            workflow_name=workflow_name or "untitled",
            batch_size=batch_size,
            config=config or {},
        )
        with self._lock:
            self._records = [r for r in self._records if r.run_id != run_id]
            self._records.insert(0, record)
            self._trim()
        return record

    def add_node_record(self, run_id: str, node_record: ExecutionRecord) -> None:
        with self._lock:
            self._require(run_id).node_records.append(node_record)

    def complete_run(self, run_id: str, status: RunStatus, error: str | None = None) -> RunRecord:
        with self._lock:
            record = self._require(run_id)
            record.status = status
            record.ended_at = utc_now()
            record.error = error
        logger.debug(f"Run {run_id} recorded as {status.value}")
        return record

    # --- Queries ---

    def get_run(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return next((r for r in self._records if r.run_id == run_id), None)

    def list_runs(self, filter: HistoryFilter | None = None) -> list[RunRecord]:
        with self._lock:
            records = list(self._records)
        if filter is None:
            return records
        records = [r for r in records if filter.matches(r)]
        end = filter.offset + filter.limit if filter.limit is not None else None
        return records[filter.offset : end]

    def running_runs(self) -> list[RunRecord]:
        return self.list_runs(HistoryFilter(status=RunStatus.RUNNING))

    def statistics(self, filter: HistoryFilter | None = None) -> HistoryStatistics:
        records = self.list_runs(filter)
        if not records:
            return HistoryStatistics()

        by_status = Counter(r.status for r in records)
        durations = [r.duration for r in records if r.status == RunStatus.COMPLETED and r.duration]
        failing = Counter(n.label for r in records for n in r.node_records if not n.success)
        workflows = Counter(r.workflow_name for r in records)
        days = Counter(r.started_at.date().isoformat() for r in records)

        return HistoryStatistics(
            total_runs=len(records),
            completed_runs=by_status[RunStatus.COMPLETED],
            failed_runs=by_status[RunStatus.FAILED],
            cancelled_runs=by_status[RunStatus.CANCELLED],
            success_rate=by_status[RunStatus.COMPLETED] / len(records) * 100,
            average_duration=sum(durations) / len(durations) if durations else 0.0,
            total_nodes_processed=sum(r.completed_nodes for r in records),
            most_failing_nodes=failing.most_common(10),
            most_used_workflows=workflows.most_common(10),
            runs_by_day=dict(sorted(days.items())),
        )

    # --- Maintenance ---

    def delete_run(self, run_id: str) -> bool:
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.run_id != run_id]
            return len(self._records) < before

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def prune(self, older_than_days: int = 30, now: datetime | None = None) -> int:
        """Drop runs started more than ``older_than_days`` ago. Returns the count."""
        cutoff = (now or utc_now()) - timedelta(days=older_than_days)
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.started_at >= cutoff]
            removed = before - len(self._records)
        if removed:
            logger.info(f"Pruned {removed} run(s) older than {older_than_days} days")
        return removed

    # --- Import / Export ---

    def export_json(self, filter: HistoryFilter | None = None) -> str:
        records = self.list_runs(filter)
        payload = {
            "exported_at": utc_now().isoformat(),
            "record_count": len(records),
            "records": [r.model_dump(mode="json") for r in records],
        }
        return json.dumps(payload, indent=2)

    def import_json(self, data: str, merge: bool = True) -> int:
        """Load runs from ``export_json`` output.

        Invalid records are skipped. With ``merge`` existing run ids are kept and
        only new runs are added; otherwise the store is replaced.

        Returns:
            Number of valid records in the payload

        Raises:
            HistoryError: If the payload is not JSON or has no ``records`` list
        """
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            raise HistoryError(f"Failed to import history: {e}")
        if not isinstance(payload, dict) or not isinstance(payload.get("records"), list):
            raise HistoryError("Failed to import history: invalid import data format")

        valid: list[RunRecord] = []
        for raw in payload["records"]:
            try:
                valid.append(RunRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping invalid history record: {e.error_count()} error(s)")

        with self._lock:
            if merge:
                existing = {r.run_id for r in self._records}
                self._records.extend(r for r in valid if r.run_id not in existing)
            else:
                self._records = list(valid)
            self._records.sort(key=lambda r: r.started_at, reverse=True)
            self._trim()
        return len(valid)

    def _require(self, run_id: str) -> RunRecord:
        record = next((r for r in self._records if r.run_id == run_id), None)
        if record is None:
            raise HistoryError(f"Unknown run: {run_id}")
        return record

    def _trim(self) -> None:
        if len(self._records) > self.max_records:
            del self._records[self.max_records :]
