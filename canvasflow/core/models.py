"""Data models for the canvasflow execution engine.

Uses Pydantic for the canvas graph, progress snapshots and collaborator payloads.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class NodeKind(str, Enum):
    """Kind of content a canvas node generates."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class ExecutionStatus(str, Enum):
    """Lifecycle status of a workflow run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class ExecutionPriority(str, Enum):
    """Priority band for resource requests."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Numeric rank, higher runs first."""
        return {"high": 3, "normal": 2, "low": 1}[self.value]


class ResultHandling(str, Enum):
    """What happens to batch pass results once they are produced."""

    NONE = "none"
    CANVAS = "canvas"  # Materialize the last node's output as a new unit per pass
    DOWNLOAD = "download"  # Hand every final-output node to the export collaborator


# --- Canvas Graph Models ---


class CanvasNode(BaseModel):
    """A generation node as it exists on the canvas.

    ``content`` is owned by the generation collaborator and may be rewritten while
    a run is in progress; the scheduler only reads it.
    """

    id: str
    label: str | None = None  # Ordinal label such as "A01"
    kind: str | None = NodeKind.TEXT.value  # Raw value, normalized by the plan builder
    content: str = ""
    original_prompt: str | None = None

    @property
    def template(self) -> str:
        """Prompt template: the original prompt if one was kept, else the content."""
        return self.original_prompt or self.content or ""


class CanvasEdge(BaseModel):
    """Directed data-flow dependency: ``to_id`` consumes ``from_id``'s output."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_id: str = Field(alias="from")
    to_id: str = Field(alias="to")


# --- Execution State Models ---


class ExecutionRecord(BaseModel):
    """Outcome of one attempted node (retries folded into ``attempts``)."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    label: str
    batch_index: int | None = None
    started_at: datetime
    ended_at: datetime
    duration: float  # seconds
    success: bool
    error: str | None = None
    attempts: int = 1


class ExecutionProgress(BaseModel):
    """Immutable snapshot of a run's progress.

    The scheduler is the only writer and swaps in a new snapshot on every change,
    so a reference handed to a subscriber never changes underneath it.
    """

    model_config = ConfigDict(frozen=True)

    current_index: int = 0
    total_units: int = 0
    current_node_id: str = ""
    status: ExecutionStatus = ExecutionStatus.IDLE
    started_at: datetime | None = None
    estimated_end_at: datetime | None = None
    history: tuple[ExecutionRecord, ...] = ()
    error_message: str | None = None
    batch_index: int | None = None
    batch_total: int | None = None

    @property
    def percent_complete(self) -> float:
        if self.total_units <= 0:
            return 0.0
        return min(100.0, self.current_index / self.total_units * 100)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.history if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.history if not r.success)


# --- Collaborator Payloads ---


class OutputUnit(BaseModel):
    """A finished pass result handed to the persistence or export collaborator."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source_node_id: str
    label: str
    kind: NodeKind
    content: str
    batch_index: int
    filename: str | None = None


class NodeExecutionContext(BaseModel):
    """Explicit execution context passed to the execute callback.

    Carries what the collaborator needs to know about an automated dispatch
    instead of relying on process-wide flags.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    automation: bool = True
    resolved_prompt: str
    original_prompt: str
    batch_index: int | None = None
    batch_total: int | None = None
    attempt: int = 1


class WorkflowDefinition(BaseModel):
    """A canvas workflow as stored in a YAML file."""

    name: str = "untitled"
    nodes: list[CanvasNode] = Field(default_factory=list)
    edges: list[CanvasEdge] = Field(default_factory=list)
    final_outputs: list[str] | None = None  # Labels to export in download handling
