"""Rich terminal rendering for plans and run progress."""

from canvasflow.cli_ui.progress import PlanRenderer, ProgressRenderer

__all__ = [
    "PlanRenderer",
    "ProgressRenderer",
]
