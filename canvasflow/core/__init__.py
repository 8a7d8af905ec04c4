"""Core modules for the canvasflow execution engine."""

from canvasflow.core.config import EngineConfig, ExecutionConfig, ExecutionMode, load_config
from canvasflow.core.engine import ExecutionScheduler
from canvasflow.core.models import (
    CanvasEdge,
    CanvasNode,
    ExecutionProgress,
    ExecutionStatus,
    NodeKind,
    ResultHandling,
)
from canvasflow.core.resources import ResourceGate
from canvasflow.core.scheduler import ExecutionPlan, build_plan

__all__ = [
    "CanvasEdge",
    "CanvasNode",
    "EngineConfig",
    "ExecutionConfig",
    "ExecutionMode",
    "ExecutionPlan",
    "ExecutionProgress",
    "ExecutionScheduler",
    "ExecutionStatus",
    "NodeKind",
    "ResourceGate",
    "ResultHandling",
    "build_plan",
    "load_config",
]
