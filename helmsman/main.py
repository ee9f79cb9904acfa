"""Main entry point for Helmsman."""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from helmsman.cli import ConsoleSurface
from helmsman.config import Config, set_config
from helmsman.controller import TaskController
from helmsman.exceptions import HelmsmanError
from helmsman.logging import configure_logging, log
from helmsman.storage import TaskStore, TaskSummary
from helmsman.task import Task

app = typer.Typer(help="Helmsman - an approval-gated console coding agent")


def _load_config(config_path: str, model: str, provider: str, verbose: bool, auto_read: bool) -> Config:
    cfg = Config.from_yaml(config_path or None)
    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    if auto_read:
        cfg.task.always_allow_read_only = True
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


async def _drive(
    cfg: Config,
    cwd: Path,
    begin: Callable[[TaskController], Awaitable[Task]],
    console: Console,
) -> None:
    surface = ConsoleSurface(console)
    controller = TaskController(surface=surface, config=cfg, cwd=cwd)
    surface.bind(controller.respond)
    try:
        task = await begin(controller)
        console.print(f"[dim]Task {task.id}[/dim]")
        status = await controller.wait()
        console.print(f"[bold]Task finished:[/bold] {status.value if status else 'aborted'}")
    finally:
        await controller.close()


def _execute(cfg: Config, cwd: str, begin: Callable[[TaskController], Awaitable[Task]]) -> None:
    console = Console()
    workdir = Path(cwd or Path.cwd()).expanduser().resolve()
    try:
        asyncio.run(_drive(cfg, workdir, begin, console))
    except HelmsmanError as e:
        log.error("Task could not run", error=str(e))
        console.print(f"[bold red]{e}[/bold red]")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(code=130)


def _with_store(cfg: Config, action: Callable[[TaskStore], Awaitable[Any]]) -> Any:
    async def _go() -> Any:
        store = TaskStore(cfg.storage.path)
        try:
            return await action(store)
        finally:
            await store.close()

    return asyncio.run(_go())


@app.command()
def run(
    task: str = typer.Argument(..., help="What the agent should do"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    cwd: str = typer.Option("", "--cwd", help="Working directory for the task"),
    auto_read: bool = typer.Option(False, "--auto-approve-reads", help="Run read-only tools without asking"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start a new task."""
    cfg = _load_config(config, model, provider, verbose, auto_read)
    _execute(cfg, cwd, lambda controller: controller.start_task(task))


@app.command()
def resume(
    task_id: str = typer.Argument(..., help="Id of a stored task"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    cwd: str = typer.Option("", "--cwd", help="Working directory for the task"),
    auto_read: bool = typer.Option(False, "--auto-approve-reads", help="Run read-only tools without asking"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Resume a stored task."""
    cfg = _load_config(config, model, provider, verbose, auto_read)
    _execute(cfg, cwd, lambda controller: controller.resume_task(task_id))


@app.command("list")
def list_tasks(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    limit: int = typer.Option(20, "-n", "--limit", help="How many tasks to show"),
) -> None:
    """List stored tasks, most recently updated first."""
    cfg = _load_config(config, "", "", False, False)

    async def _list(store: TaskStore) -> list[TaskSummary]:
        return await store.list_tasks(limit=limit)

    summaries = _with_store(cfg, _list)
    console = Console()
    if not summaries:
        console.print("[dim]No stored tasks.[/dim]")
        return

    table = Table(title="Stored Tasks", show_header=True, header_style="bold cyan")
    table.add_column("Id", no_wrap=True)
    table.add_column("Status")
    table.add_column("Updated")
    table.add_column("Task")
    for summary in summaries:
        table.add_row(summary.id, summary.status, summary.updated_at[:19], escape(summary.title))
    console.print(table)


@app.command()
def delete(
    task_id: str = typer.Argument(..., help="Id of a stored task"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Delete a stored task."""
    cfg = _load_config(config, "", "", False, False)

    async def _delete(store: TaskStore) -> bool:
        return await store.delete_task(task_id)

    if not _with_store(cfg, _delete):
        typer.echo(f"No stored task with id {task_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deleted task {task_id}")


@app.command()
def version() -> None:
    """Show version information."""
    from helmsman import __version__

    typer.echo(f"Helmsman v{__version__}")


if __name__ == "__main__":
    app()
