"""Terminal rendering for execution plans and run progress.

All user-controlled strings (labels, prompts, error text) are escaped before
they reach Rich markup.
"""

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from canvasflow.core.models import ExecutionProgress, ExecutionStatus, NodeKind
from canvasflow.core.scheduler import ExecutionPlan


class PlanRenderer:
    """Renders an execution plan as a table plus its independent levels."""

    KIND_STYLES = {
        NodeKind.TEXT: ("[T]", "cyan"),
        NodeKind.IMAGE: ("[I]", "magenta"),
        NodeKind.VIDEO: ("[V]", "yellow"),
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_plan_table(self, plan: ExecutionPlan, title: str = "Execution plan") -> Table:
        table = Table(title=escape(title))
        table.add_column("#", justify="right", style="dim")
        table.add_column("Label", style="cyan")
        table.add_column("Kind")
        table.add_column("Depends on")
        table.add_column("Estimate", justify="right")

        for position, node in enumerate(plan, start=1):
            symbol, color = self.KIND_STYLES.get(node.kind, ("[ ]", "white"))
            deps = ", ".join(escape(plan.get(d).label) for d in node.dependencies) or "-"
            table.add_row(
                str(position),
                escape(node.label),
                f"[{color}]{symbol} {node.kind.value}[/]",
                deps,
                f"{node.estimated_duration:.0f}s",
            )
        return table

    def render_levels(self, plan: ExecutionPlan) -> str:
        """One line per topological level, top to bottom."""
        lines = []
        levels = plan.parallel_levels()
        for level_idx, level in enumerate(levels):
            labels = [escape(plan.get(node_id).label) for node_id in level]
            lines.append("  |  ".join(labels))
            if level_idx < len(levels) - 1:
                lines.append("  v")
        return "\n".join(lines)


class ProgressRenderer:
    """Renders progress snapshots."""

    STATUS_STYLES = {
        ExecutionStatus.IDLE: "dim",
        ExecutionStatus.RUNNING: "blue bold",
        ExecutionStatus.PAUSED: "yellow",
        ExecutionStatus.COMPLETED: "green",
        ExecutionStatus.ERROR: "red bold",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_line(self, progress: ExecutionProgress) -> str:
        """Single status line, e.g. ``[running] 3/8 (37%) item 2/4``."""
        style = self.STATUS_STYLES.get(progress.status, "white")
        line = (
            f"[{style}]{progress.status.value}[/] "
            f"{progress.current_index}/{progress.total_units} "
            f"({progress.percent_complete:.0f}%)"
        )
        if progress.batch_total:
            line += f" item {(progress.batch_index or 0) + 1}/{progress.batch_total}"
        if progress.error_message:
            line += f" [red]{escape(progress.error_message)}[/]"
        return line

    def render_history_table(self, progress: ExecutionProgress) -> Table:
        table = Table(title="Node executions")
        table.add_column("Label", style="cyan")
        table.add_column("Item", justify="right")
        table.add_column("Result", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error", max_width=40)

        for record in progress.history:
            item = str(record.batch_index + 1) if record.batch_index is not None else "-"
            result = "[green]✓[/]" if record.success else "[red]✗[/]"
            error = escape(record.error or "")
            if len(error) > 40:
                error = error[:37] + "..."
            table.add_row(
                escape(record.label),
                item,
                result,
                str(record.attempts),
                f"{record.duration:.2f}s",
                error,
            )
        return table
