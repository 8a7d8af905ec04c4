# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the canvasflow test suite.

Provides:
- Canvas node/edge builders and small sample workflows
- A manually advanced clock for resource gate and rate limit tests
- Execution configs with pacing disabled so scheduler tests run instantly
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from canvasflow.core.config import ExecutionConfig, RateLimitConfig, ResourceLimits
from canvasflow.core.models import CanvasEdge, CanvasNode
from canvasflow.core.resources import ResourceGate


# =============================================================================
# Canvas Builders
# =============================================================================


def make_node(node_id: str, label: str | None = None, kind: str | None = "text", **kwargs) -> CanvasNode:
    """Create a canvas node; label defaults to the id."""
    return CanvasNode(id=node_id, label=label or node_id, kind=kind, **kwargs)


def make_edge(src: str, dst: str) -> CanvasEdge:
    return CanvasEdge(from_id=src, to_id=dst)


@pytest.fixture
def chain_workflow() -> tuple[list[CanvasNode], list[CanvasEdge]]:
    """A01 -> A02 -> A03, each referencing its upstream block."""
    nodes = [
        make_node("A01", content="Write a headline about cats"),
        make_node("A02", content="Summarize [A01]"),
        make_node("A03", content="Translate [A02]"),
    ]
    edges = [make_edge("A01", "A02"), make_edge("A02", "A03")]
    return nodes, edges


@pytest.fixture
def diamond_workflow() -> tuple[list[CanvasNode], list[CanvasEdge]]:
    """A01 feeds B01 and B02, which both feed C01."""
    nodes = [
        make_node("C01", content="Combine [B01] and [B02]"),
        make_node("B01", content="Expand [A01]"),
        make_node("B02", kind="image", content="Illustrate [A01]"),
        make_node("A01", content="Topic"),
    ]
    edges = [
        make_edge("A01", "B01"),
        make_edge("A01", "B02"),
        make_edge("B01", "C01"),
        make_edge("B02", "C01"),
    ]
    return nodes, edges


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    """A two-node workflow YAML file."""
    path = tmp_path / "workflow.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "name": "poster",
                "nodes": [
                    {"id": "n1", "label": "A01", "kind": "text", "content": "Slogan for {data}"},
                    {"id": "n2", "label": "A02", "kind": "image", "content": "Poster of [A01]"},
                ],
                "edges": [{"from": "n1", "to": "n2"}],
            }
        )
    )
    return path


# =============================================================================
# Time and Configuration
# =============================================================================


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gate(clock: FakeClock) -> ResourceGate:
    """Gate with default ceilings (512 MB, 80% CPU, 10 connections, 3 executions)."""
    return ResourceGate(ResourceLimits(), RateLimitConfig(), clock=clock)


@pytest.fixture
def fast_config() -> ExecutionConfig:
    """No pacing, no retries, short completion timeout."""
    return ExecutionConfig(
        interval_scale=0.0,
        max_retries=0,
        completion_timeout=2.0,
        admission_poll_interval=0.01,
    )
