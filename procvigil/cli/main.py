"""procvigil CLI — look at a process, or supervise it until interrupted.

`procvigil sample PID` shows one probe read.
`procvigil children PID` lists immediate children.
`procvigil watch PID --memory-below 500MB --children` runs the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from procvigil.config import settings
from procvigil.events.bus import Event
from procvigil.exceptions import ConfigError, NoSuchProcessError, VigilError
from procvigil.probe.reader import MetricReader
from procvigil.probe.strategies import select_strategy
from procvigil.supervisor import Supervisor

app = typer.Typer(
    name="procvigil",
    help="procvigil -- watch processes and their children, act on sustained breaches.",
    no_args_is_help=True,
)
console = Console()

_EVENT_STYLE = {
    "process.schedule": "bold red",
    "process.exited": "yellow",
    "notify.deliver": "magenta",
    "child.attached": "green",
    "child.removed": "dim",
    "child.attach_failed": "red",
}


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
):
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _make_reader(proc_root: Optional[Path]) -> MetricReader:
    try:
        return MetricReader(select_strategy(proc_root=proc_root))
    except VigilError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=2)


@app.command("sample")
def sample(
    pid: int = typer.Argument(help="Process ID to probe"),
    interval: float = typer.Option(0.5, "--interval", "-i", help="Seconds between the two CPU reads"),
    proc_root: Optional[Path] = typer.Option(None, "--proc-root", help="Alternative procfs root"),
):
    """Show memory, CPU and arguments of one process."""
    reader = _make_reader(proc_root)
    try:
        reader.cpu(pid)
        if interval > 0:
            time.sleep(interval)
        result = reader.sample(pid)
    except NoSuchProcessError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    started = datetime.fromtimestamp(result.cpu_start_time_ms / 1000)
    table = Table(title=f"Process {pid} ({reader.strategy.name})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Resident", f"{result.resident_bytes / 1024 / 1024:.1f} MB")
    table.add_row("CPU", f"{result.cpu_percent * 100:.1f}%")
    table.add_row("CPU time", f"{result.cpu_total_ms / 1000:.2f}s "
                  f"(user {result.cpu_user_ms / 1000:.2f}s, sys {result.cpu_sys_ms / 1000:.2f}s)")
    table.add_row("Started", started.isoformat(sep=" ", timespec="seconds"))
    table.add_row("Args", " ".join(result.args) or "[dim]<none>[/dim]")
    console.print(table)


@app.command("children")
def children(
    pid: int = typer.Argument(help="Parent process ID"),
    proc_root: Optional[Path] = typer.Option(None, "--proc-root", help="Alternative procfs root"),
):
    """List the immediate children of a process."""
    reader = _make_reader(proc_root)
    found = sorted(reader.children(pid))
    if not found:
        console.print(f"[dim]No children of {pid}.[/dim]")
        return

    table = Table(title=f"Children of {pid}")
    table.add_column("PID", style="cyan", justify="right")
    table.add_column("Args", style="white")
    for child in found:
        try:
            args = " ".join(reader.args(child))
        except NoSuchProcessError:
            args = "[dim]<exited>[/dim]"
        table.add_row(str(child), args)
    console.print(table)


def build_config(
    name: str,
    memory_below: Optional[str],
    cpu_below: Optional[float],
    times: int,
    every: float,
    watch_children: bool,
    update_period: float,
    notify: list[str],
) -> dict:
    checks: dict = {}
    if memory_below:
        checks["memory"] = {"below": memory_below, "times": times, "every": every}
    if cpu_below is not None:
        checks["cpu"] = {"below": cpu_below, "times": times, "every": every}

    config: dict = {"name": name, "checks": checks, "notify": notify, "check_every": every}
    if watch_children:
        config["monitor_children"] = {
            "checks": checks,
            "children_update_period": update_period,
        }
    return config


@app.command("watch")
def watch(
    pid: int = typer.Argument(help="Process ID to supervise"),
    name: str = typer.Option("", "--name", help="Display name"),
    memory_below: Optional[str] = typer.Option(None, "--memory-below", help="e.g. 500MB"),
    cpu_below: Optional[float] = typer.Option(None, "--cpu-below", help="Percent of one core"),
    times: int = typer.Option(1, "--times", "-t", help="Consecutive breaches before firing"),
    every: float = typer.Option(settings.check_every, "--every", "-e", help="Seconds between samples"),
    watch_children: bool = typer.Option(False, "--children/--no-children", help="Apply the checks to children"),
    update_period: float = typer.Option(
        settings.children_update_period, "--update-period", help="Seconds between child scans",
    ),
    notify: list[str] = typer.Option([], "--notify", "-n", help="Contact to notify (repeatable)"),
    proc_root: Optional[Path] = typer.Option(None, "--proc-root", help="Alternative procfs root"),
):
    """Supervise a process until interrupted, printing every engine event."""
    reader = _make_reader(proc_root)
    config = build_config(name, memory_below, cpu_below, times, every,
                          watch_children, update_period, notify)

    async def _print(event: Event) -> None:
        style = _EVENT_STYLE.get(event.topic, "white")
        console.print(f"[{style}]{event.topic}[/{style}] {event.data}")

    async def _run() -> None:
        supervisor = Supervisor(reader=reader)
        supervisor.bus.subscribe("*", _print)
        try:
            monitor = await supervisor.monitor(pid, config)
            while monitor.attached:
                await asyncio.sleep(1)
        finally:
            await supervisor.shutdown()

    try:
        asyncio.run(_run())
    except (NoSuchProcessError, ConfigError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


if __name__ == "__main__":
    app()
