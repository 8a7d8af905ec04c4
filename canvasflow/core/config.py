"""Engine configuration: execution pacing, resource ceilings and rate limits.

Every default is explicit. Configuration can be loaded from a YAML file such as
the one written by ``canvasflow init``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from canvasflow.core.models import NodeKind, WorkflowDefinition

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Invalid or unreadable engine configuration."""

    pass


class ExecutionMode(str, Enum):
    """Pacing mode for single-shot runs."""

    CONSERVATIVE = "conservative"
    STANDARD = "standard"
    FAST = "fast"
    CUSTOM = "custom"


@dataclass(frozen=True)
class KindTable:
    """Per-kind lookup of seconds. One field per NodeKind member."""

    text: float
    image: float
    video: float

    def for_kind(self, kind: NodeKind) -> float:
        return getattr(self, NodeKind(kind).value)


# Base interval between nodes, by pacing mode
DEFAULT_INTERVALS: dict[ExecutionMode, KindTable] = {
    ExecutionMode.CONSERVATIVE: KindTable(text=120, image=180, video=300),
    ExecutionMode.STANDARD: KindTable(text=60, image=120, video=180),
    ExecutionMode.FAST: KindTable(text=30, image=60, video=90),
    ExecutionMode.CUSTOM: KindTable(text=60, image=60, video=60),
}

# Floors applied when the adaptive interval is off
MIN_SAFE_INTERVALS = KindTable(text=45, image=90, video=180)

# Rough generation time used for plan estimates
ESTIMATED_DURATIONS = KindTable(text=30, image=60, video=180)

ADAPTIVE_BUFFER_SECONDS = 30.0
ADAPTIVE_MAX_MULTIPLIER = 3.0


class ResourceAmounts(BaseModel):
    """Memory (MB), CPU (%) and connection count for one request."""

    memory: float = Field(default=0, ge=0)
    cpu: float = Field(default=0, ge=0)
    connections: int = Field(default=0, ge=0)


def _default_requirements() -> dict[NodeKind, ResourceAmounts]:
    return {
        NodeKind.TEXT: ResourceAmounts(memory=32, cpu=5, connections=1),
        NodeKind.IMAGE: ResourceAmounts(memory=64, cpu=10, connections=1),
        NodeKind.VIDEO: ResourceAmounts(memory=128, cpu=15, connections=1),
    }


class ExecutionConfig(BaseModel):
    """How a run is paced and how failures are handled."""

    mode: ExecutionMode = ExecutionMode.STANDARD
    custom_interval: float | None = Field(default=None, ge=0)
    max_retries: int = Field(default=3, ge=0)
    pause_on_error: bool = True
    adaptive_interval: bool = True
    # Multiplies every delay the scheduler sleeps for (0 disables waiting)
    interval_scale: float = Field(default=1.0, ge=0)
    completion_timeout: float = Field(default=600.0, gt=0)
    admission_poll_interval: float = Field(default=1.0, gt=0)
    retry_initial_delay: float = Field(default=2.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=60.0, ge=0)
    resource_requirements: dict[NodeKind, ResourceAmounts] = Field(
        default_factory=_default_requirements
    )

    @field_validator("mode", mode="before")
    @classmethod
    def degrade_unknown_mode(cls, v: Any) -> Any:
        """Unknown modes fall back to standard instead of failing the run."""
        valid = {m.value for m in ExecutionMode}
        if isinstance(v, ExecutionMode):
            return v
        if isinstance(v, str) and v.lower() in valid:
            return v.lower()
        logger.warning(f"Unknown execution mode {v!r}, using 'standard'")
        return ExecutionMode.STANDARD

    def requirement_for(self, kind: NodeKind) -> ResourceAmounts:
        return self.resource_requirements.get(kind) or _default_requirements()[kind]


class ResourceLimits(BaseModel):
    """Ceilings enforced by the resource gate."""

    max_memory: float = Field(default=512, ge=0)  # MB
    max_cpu: float = Field(default=80, ge=0)  # percent
    max_connections: int = Field(default=10, ge=0)
    max_concurrent_executions: int = Field(default=3, ge=1)


class RateLimitConfig(BaseModel):
    """Fixed-window limit on calls to the external generation API."""

    window_seconds: float = Field(default=60.0, gt=0)
    max_calls: int = Field(default=60, ge=1)


class EngineConfig(BaseModel):
    """Top-level configuration document."""

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    def to_yaml(self) -> str:
        """Render as YAML (enum keys and values as plain strings)."""
        return yaml.safe_dump(self.model_dump(mode="json"), sort_keys=False)


def load_config(path: str | Path) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Missing sections take their defaults. An empty file yields the default config.

    Raises:
        ConfigError: If the file cannot be read, is not valid YAML, is not a
            mapping, or fails validation.
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__} in {path}")

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config in {path}: {details}")


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition (``nodes:`` and ``edges:``) from YAML.

    Raises:
        ConfigError: If the file cannot be read or does not describe a workflow
    """
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read workflow file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Workflow file {path} must contain a mapping with 'nodes'")
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid workflow in {path}: {details}")
