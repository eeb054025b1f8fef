"""CLI entry point for Perfetto Total Blocking Time."""

import asyncio
import json
import logging
import typer
from typing import Optional
from pathlib import Path
from rich.console import Console
from rich.logging import RichHandler
from perfetto_tbt.blocking import top_blocking_tasks
from perfetto_tbt.computed import ComputedContext
from perfetto_tbt.config import GatherContext, Settings
from perfetto_tbt.metrics import (
    FixedInteractiveTime,
    MetricComputationInput,
    MetricMode,
    TotalBlockingTime
)
from perfetto_tbt.trace import ProcessedTraceArtifact

app = typer.Typer(
    help="Perfetto TBT - Total Blocking Time of a recorded main thread",
    no_args_is_help=True
)
console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True
    )


async def compute_observed_tbt(
    trace: Path,
    focus_process: Optional[str],
    interactive_ms: Optional[float],
    timespan: bool,
    top_n: int
) -> dict:
    """Compute observed TBT for a trace file and shape it for JSON output."""
    context = ComputedContext()
    processed_trace = ProcessedTraceArtifact(focus_process, navigation_origin=not timespan)
    metric = TotalBlockingTime(
        interactive=FixedInteractiveTime(interactive_ms) if interactive_ms is not None else None,
        processed_trace=processed_trace
    )
    data = MetricComputationInput(
        gather_context=GatherContext("timespan" if timespan else "navigation"),
        settings=Settings.from_env(),
        trace=str(trace)
    )

    result = await metric.request(data, context, mode=MetricMode.OBSERVED)
    processed = await processed_trace.request(data.trace, context)

    return {
        "trace_path": str(trace),
        "focus_process": focus_process,
        "mode": MetricMode.OBSERVED.value,
        "timing": result.timing,
        "window": {"begin_ms": result.window.begin, "end_ms": result.window.end},
        "main_thread": processed.main_thread,
        "task_count": len(processed.main_thread_tasks),
        "top_blocking_tasks": [
            {
                "start_ms": item.task.start,
                "duration_ms": item.task.duration,
                "blocking_ms": item.blocking_ms
            }
            for item in top_blocking_tasks(result.contributions, top_n)
        ],
        "assumptions": processed.assumptions
    }


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Perfetto TBT - Total Blocking Time of a recorded main thread."""
    if ctx.invoked_subcommand is None:
        pass


@app.command()
def analyze(
    trace: Path = typer.Option(..., "--trace", help="Path to Perfetto trace file"),
    out: Path = typer.Option("tbt.json", "--out", help="Output JSON file path"),
    focus_process: Optional[str] = typer.Option(None, "--focus-process", help="Process whose main thread is measured"),
    interactive_ms: Optional[float] = typer.Option(
        None, "--interactive-ms", help="Time to interactive (ms) closing the navigation window"
    ),
    timespan: bool = typer.Option(False, "--timespan", help="Treat the trace as a timespan, not a page load"),
    top_n: int = typer.Option(5, "--top-n", help="Number of top blocking tasks to report"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
):
    """Compute observed Total Blocking Time and write it as JSON."""
    _configure_logging(verbose)

    if not trace.exists():
        console.print(f"[red]Error:[/red] Trace file not found: {trace}")
        raise typer.Exit(code=1)

    if not trace.is_file():
        console.print(f"[red]Error:[/red] Path is not a file: {trace}")
        raise typer.Exit(code=1)

    console.print(f"[blue]Analyzing trace:[/blue] {trace}")
    console.print(f"[blue]Output file:[/blue] {out}")
    console.print(f"[blue]Focus process:[/blue] {focus_process}")
    console.print(f"[blue]Gather mode:[/blue] {'timespan' if timespan else 'navigation'}")

    try:
        result = asyncio.run(
            compute_observed_tbt(trace, focus_process, interactive_ms, timespan, top_n)
        )

        with open(out, "w") as f:
            json.dump(result, f, indent=2)

        console.print(f"[green]✓[/green] Total Blocking Time: {result['timing']:.1f}ms")
        console.print(f"[green]✓[/green] Analysis complete: {out}")

    except Exception as e:
        console.print(f"[red]Error during analysis:[/red] {e}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
