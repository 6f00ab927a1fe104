"""
BUILDCREW CLI — The Interface

Two ways to hand work to the crew:
  1. buildcrew run "<description>" --kind code-generation --repo <path>
  2. buildcrew run --task-file tasks.yaml --repo <path>   (a dependency graph)

Plus utilities:
  - buildcrew status   (check config + API keys)
  - buildcrew tools    (registered tools and their schemas)
  - buildcrew models   (registered models and their costs, or ranked for --prompt)
"""

from __future__ import annotations

import platform
import shutil
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from buildcrew.config_loader import BuildCrewConfig, load_config, validate_api_keys
from buildcrew.errors import BuildCrewError
from buildcrew.event_bus import TaskEvent, TaskEventType
from buildcrew.identity import BANNER, __codename__, __tagline__, __version__
from buildcrew.indexer import LANGUAGE_BY_EXTENSION
from buildcrew.models import EnvironmentContext, FileContext, ModelRequest, TaskContext, TaskKind, TaskStatus
from buildcrew.orchestrator import Orchestrator
from buildcrew.router import ModelRouter
from buildcrew.tooling import ToolRegistry

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".buildcrew" / ".env")

app = typer.Typer(
    name="buildcrew",
    help=f"{__codename__} — {__tagline__}\nTask orchestration for a crew of build agents.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Task input
# ---------------------------------------------------------------------------

def _language_of(path: Path) -> str:
    return LANGUAGE_BY_EXTENSION.get(path.suffix, "text")


def _build_context(repo: Path, files: list[Path], config: BuildCrewConfig) -> TaskContext:
    file_contexts = []
    for f in files:
        path = f if f.is_absolute() else repo / f
        if not path.exists():
            console.print(f"[yellow]Skipping missing file: {f}[/]")
            continue
        file_contexts.append(FileContext(
            path=str(path.relative_to(repo)) if path.is_relative_to(repo) else str(path),
            content=path.read_text(encoding="utf-8", errors="replace"),
            language=_language_of(path),
        ))
    return TaskContext(
        files=file_contexts,
        environment=EnvironmentContext(
            os=platform.system().lower(),
            working_directory=str(repo),
            available_tools=sorted({t for a in config.agents for t in a.tools}),
            python_version=platform.python_version(),
        ),
    )


def _load_task_file(path: Path) -> list[dict[str, Any]]:
    """
    A task file is a YAML list (or a mapping with a `tasks` list) of:
      {id, description, kind, priority, depends_on, files}
    Entries are submitted in order, so dependencies come first.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise typer.BadParameter(f"{path} must contain a list of tasks")
    return data


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    description: Optional[str] = typer.Argument(None, help="What the crew should do"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    kind: str = typer.Option(TaskKind.CODE_GENERATION.value, "--kind", "-k", help="Task kind"),
    priority: str = typer.Option("medium", "--priority", "-p", help="low, medium, high or critical"),
    files: list[Path] = typer.Option([], "--file", "-f", help="File to include in the task context"),
    task_file: Optional[Path] = typer.Option(None, "--task-file", "-t", help="YAML list of tasks"),
    wait: float = typer.Option(900.0, "--wait", help="Seconds to wait for all tasks"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Submit one task (or a task file) and wait for the crew to finish."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    if not description and not task_file:
        console.print("[red]Give a description or --task-file[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    orchestrator = Orchestrator(config)
    orchestrator.subscribe(_print_event)

    ids: list[str] = []
    try:
        if task_file:
            for entry in _load_task_file(task_file):
                ids.append(orchestrator.submit(
                    entry.get("description", ""),
                    entry.get("kind", kind),
                    priority=entry.get("priority", priority),
                    dependencies=entry.get("depends_on") or [],
                    context=_build_context(repo, [Path(p) for p in entry.get("files", [])], config),
                    task_id=entry.get("id"),
                ))
        else:
            ids.append(orchestrator.submit(
                description, kind, priority=priority,
                context=_build_context(repo, files, config),
            ))

        for task_id in ids:
            orchestrator.wait_for(task_id, timeout=wait)
    except BuildCrewError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/]")
        orchestrator.shutdown(wait=False)
        raise typer.Exit(1)

    tasks = [orchestrator.get_task(t) for t in ids]
    metrics = orchestrator.router.get_metrics()
    orchestrator.shutdown()

    table = Table(title="Tasks", border_style="cyan")
    table.add_column("Task")
    table.add_column("Kind")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for task in tasks:
        color = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(task.status.value, "white")
        detail = task.error or ""
        if task.result and task.result.artifacts:
            detail = ", ".join(a.path for a in task.result.artifacts)
        table.add_row(task.id, task.kind.value, task.assigned_to or "-",
                      f"[{color}]{task.status.value}[/]", str(task.attempts), detail[:80])
    console.print(table)

    console.print(Panel(
        f"Tokens: {metrics.tokens_used:,} / "
        f"Cost: ${metrics.cost:.4f} / "
        f"Calls: {metrics.requests}",
        title="💸 Budget",
        border_style="green",
    ))

    if any(t.status != TaskStatus.COMPLETED for t in tasks):
        raise typer.Exit(1)


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check BUILDCREW configuration and readiness."""
    _print_banner()

    # API Keys
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    # Config
    config = load_config(repo.resolve() if repo else None)
    orch = config.orchestrator
    console.print(f"\n[bold]Orchestrator:[/]")
    console.print(f"  Max concurrent tasks: {orch.max_concurrent_tasks}")
    console.print(f"  Task timeout:         {orch.task_timeout:g}s")
    console.print(f"  Attempts per task:    {orch.max_retries if orch.enable_retry else 1}")
    console.print(f"  Audit log:            {orch.audit_log_path or 'memory only'}")

    console.print(f"\n[bold]Router:[/]")
    console.print(f"  Default model:   {config.router.default_model}")
    console.print(f"  Fallback models: {', '.join(config.router.fallback_models) or 'none'}")
    console.print(f"  Rate limit:      {config.router.rate_limit.requests} / {config.router.rate_limit.window:g}s")

    console.print(f"\n[bold]Agents:[/]")
    for agent in config.agents:
        console.print(f"  {agent.name:<18} {agent.kind:<11} tools: {', '.join(agent.tools) or '-'}")

    # Tools
    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["git", "python3", "node", "npm", "docker", "ruff", "pytest"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)


@app.command()
def tools(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """List the tools agents can call."""
    config = load_config(repo.resolve() if repo else None)
    registry = ToolRegistry(working_directory=Path(config.workspace.root), register_defaults=True)
    for tool_config in config.tools:
        registry.register_tool(tool_config)

    table = Table(title="Tools", border_style="cyan")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Category")
    table.add_column("Timeout", justify="right")
    table.add_column("Parameters")
    for tc in sorted(registry.get_tool_configs(), key=lambda c: c.name):
        params = ", ".join(f"{p.name}{'*' if p.required else ''}: {p.type}" for p in tc.parameters)
        table.add_row(tc.name, tc.kind.value, tc.category, f"{tc.timeout:g}s", params or "-")
    console.print(table)
    registry.shutdown()


@app.command()
def models(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Rank the models for this prompt"),
):
    """List the configured models, or rank them for a prompt."""
    config = load_config(repo.resolve() if repo else None)

    if prompt:
        router = ModelRouter(config.router, config.models)
        request = ModelRequest(messages=[{"role": "user", "content": prompt}])
        ranked = Table(title="Recommendations", border_style="magenta")
        ranked.add_column("Model")
        ranked.add_column("Score", justify="right")
        ranked.add_column("Est. cost", justify="right")
        ranked.add_column("Reasons")
        for rec in router.get_model_recommendations(request):
            ranked.add_row(rec.model, f"{rec.score:g}", f"${rec.estimated_cost:.4f}", ", ".join(rec.reasons))
        console.print(ranked)
        return

    table = Table(title="Models", border_style="magenta")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Context", justify="right")
    table.add_column("$/token", justify="right")
    table.add_column("Provider model")
    for m in config.models:
        default = " [green](default)[/]" if m.name == config.router.default_model else ""
        table.add_row(m.name + default, m.type, f"{m.max_tokens:,}", f"{m.cost_per_token:g}",
                      m.provider_model or m.name)
    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _print_event(event: TaskEvent) -> None:
    if event.event_type == TaskEventType.PROGRESS:
        console.print(f"  [dim]{event.task_id} {event.payload.get('percent', 0):>3}% {event.payload.get('message', '')}[/]")
    elif event.event_type == TaskEventType.COMPLETED:
        console.print(f"[green]✓ {event.task_id} completed[/]")
    elif event.event_type == TaskEventType.FAILED:
        console.print(f"[red]✗ {event.task_id} failed: {str(event.payload.get('error', ''))[:200]}[/]")
    elif event.event_type == TaskEventType.CANCELLED:
        console.print(f"[yellow]⊘ {event.task_id} cancelled: {event.payload.get('reason', '')}[/]")
    elif event.event_type == TaskEventType.STARTED:
        console.print(f"[cyan]▶ {event.task_id} started[/]")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
