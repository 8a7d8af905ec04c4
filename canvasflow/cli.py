"""CLI entry point for canvasflow.

Commands:
- canvasflow init: Write a default engine config
- canvasflow plan: Show the execution order of a workflow
- canvasflow validate: Check a workflow for graph and reference problems
- canvasflow run: Run a workflow against the echo collaborator (--dry-run)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from canvasflow import __version__
from canvasflow.cli_ui.progress import PlanRenderer, ProgressRenderer
from canvasflow.core.config import (
    ConfigError,
    EngineConfig,
    ExecutionMode,
    load_config,
    load_workflow,
)
from canvasflow.core.engine import ExecutionScheduler
from canvasflow.core.models import (
    ExecutionProgress,
    ExecutionStatus,
    NodeExecutionContext,
    OutputUnit,
    ResultHandling,
    WorkflowDefinition,
)
from canvasflow.core.resources import ResourceGate
from canvasflow.core.scheduler import ExecutionPlan, PlanError, build_plan
from canvasflow.core.variables import validate_references

console = Console()

CONFIG_DIR = ".canvasflow"
CONFIG_FILE = "config.yaml"


def get_project_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_workflow_or_exit(workflow_file: str) -> WorkflowDefinition:
    try:
        return load_workflow(workflow_file)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _build_plan_or_exit(workflow: WorkflowDefinition) -> ExecutionPlan:
    try:
        return build_plan(workflow.nodes, workflow.edges)
    except PlanError as e:
        console.print(f"[red]Invalid workflow:[/red] {escape(str(e))}")
        sys.exit(1)


def _read_batch_file(path: str) -> list[str]:
    """One item per non-blank line; YAML files may hold a list instead."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise click.BadParameter(f"Cannot read batch file: {e}", param_hint="--batch")
    if path.endswith((".yaml", ".yml")):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise click.BadParameter(f"Invalid YAML in batch file: {e}", param_hint="--batch")
        if not isinstance(data, list):
            raise click.BadParameter("Batch YAML must be a list of items", param_hint="--batch")
        return [str(item) for item in data]
    return [line.strip() for line in text.splitlines() if line.strip()]


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show engine log output")
def main(verbose: bool) -> None:
    """canvasflow - workflow execution engine for AI content canvases.

    Plans node graphs, resolves [A01]-style references between nodes and
    paces generation calls against shared resource limits.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@main.command()
def init() -> None:
    """Write a default engine config to .canvasflow/config.yaml."""
    config_dir = get_project_path() / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        "# canvasflow engine configuration\n"
        "# execution.mode: conservative | standard | fast | custom\n"
        + EngineConfig().to_yaml(),
        encoding="utf-8",
    )
    console.print(
        Panel(
            f"[green]Initialized canvasflow[/green]\nConfig: {escape(str(config_path))}",
            title="canvasflow init",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--batch-size", type=int, default=1, help="Number of batch items to estimate for")
def plan(workflow_file: str, batch_size: int) -> None:
    """Show the execution order of a workflow."""
    workflow = _load_workflow_or_exit(workflow_file)
    execution_plan = _build_plan_or_exit(workflow)

    renderer = PlanRenderer(console)
    console.print(renderer.render_plan_table(execution_plan, title=workflow.name))
    console.print()
    console.print("[bold]Levels:[/bold]")
    console.print(renderer.render_levels(execution_plan))

    critical = [execution_plan.get(node_id).label for node_id in execution_plan.critical_path()]
    estimate = ExecutionScheduler().estimate_total_duration(execution_plan, batch_size)
    console.print()
    console.print(f"[bold]Critical path:[/bold] {escape(' -> '.join(critical))}")
    console.print(f"[bold]Estimated duration:[/bold] {estimate / 60:.1f} min")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
def validate(workflow_file: str) -> None:
    """Check graph structure and [XNN] references. Exits 1 on problems."""
    workflow = _load_workflow_or_exit(workflow_file)
    execution_plan = _build_plan_or_exit(workflow)

    problems = 0
    by_id = {n.id: n for n in workflow.nodes}
    for pnode in execution_plan:
        upstream = [execution_plan.get(d).label for d in pnode.dependencies]
        for diagnostic in validate_references(by_id[pnode.node_id].template, upstream):
            problems += 1
            console.print(f"  [red]• {escape(pnode.label)}: {escape(diagnostic.message)}[/]")

    if problems:
        console.print(f"\n[red bold]{problems} problem(s) found[/]")
        sys.exit(1)
    console.print(f"[green]✓ Workflow is valid[/green] ({len(execution_plan)} nodes)")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True))
@click.option("--batch", "batch_file", type=click.Path(exists=True), help="Batch items file")
@click.option("--config", "config_file", type=click.Path(exists=True), help="Engine config file")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExecutionMode]),
    help="Override the execution mode",
)
@click.option(
    "--results",
    type=click.Choice([r.value for r in ResultHandling]),
    default=ResultHandling.NONE.value,
    help="What to do with each batch pass's results",
)
@click.option("--dry-run", is_flag=True, help="Echo resolved prompts instead of generating")
def run(
    workflow_file: str,
    batch_file: str | None,
    config_file: str | None,
    mode: str | None,
    results: str,
    dry_run: bool,
) -> None:
    """Run a workflow.

    With --dry-run every node "generates" its resolved prompt, which shows how
    references and batch tokens flow through the graph without calling a
    provider. Pacing delays are skipped.
    """
    if not dry_run:
        console.print(
            "[yellow]No generation backend is configured; use --dry-run to run "
            "against the echo collaborator[/yellow]"
        )
        sys.exit(1)

    workflow = _load_workflow_or_exit(workflow_file)
    _build_plan_or_exit(workflow)

    try:
        engine_config = load_config(config_file) if config_file else _default_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    overrides: dict = {"interval_scale": 0.0}
    if mode:
        overrides["mode"] = ExecutionMode(mode)
    execution_config = engine_config.execution.model_copy(update=overrides)

    batch = _read_batch_file(batch_file) if batch_file else None
    gate = ResourceGate(engine_config.resources, engine_config.rate_limit)
    scheduler = ExecutionScheduler(execution_config, gate=gate)
    nodes = {n.id: n for n in workflow.nodes}
    renderer = ProgressRenderer(console)

    def echo(node_id: str, prompt: str, context: NodeExecutionContext) -> None:
        nodes[node_id].content = prompt
        console.print(f"[cyan]{escape(node_id)}[/cyan] <- {escape(prompt)}")
        if context.batch_index is not None:
            scheduler.notify_node_completion(node_id, output=prompt)

    def show_unit(unit: OutputUnit) -> None:
        name = unit.filename or f"item {unit.batch_index + 1}"
        console.print(f"[green]Output {escape(name)}:[/green] {escape(unit.content)}")

    def on_progress(progress: ExecutionProgress) -> None:
        if progress.status != ExecutionStatus.RUNNING:
            console.print(renderer.render_line(progress))

    final = asyncio.run(
        scheduler.start(
            workflow.nodes,
            workflow.edges,
            echo,
            batch_data=batch,
            on_progress=on_progress,
            result_handling=ResultHandling(results),
            create_output_unit=show_unit,
            export_output=show_unit,
            final_output_labels=workflow.final_outputs,
            workflow_name=workflow.name,
        )
    )

    console.print(renderer.render_history_table(final))
    if final.status != ExecutionStatus.COMPLETED:
        sys.exit(1)


def _default_config() -> EngineConfig:
    """Project config if ``canvasflow init`` was run here, else defaults."""
    path = get_project_path() / CONFIG_DIR / CONFIG_FILE
    return load_config(path) if path.exists() else EngineConfig()


if __name__ == "__main__":
    main()
