"""CLI interface for dbbench."""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from dbbench.config import settings
from dbbench.controller import AgentError, BackendSpec, build_registry
from dbbench.coordinator import BenchmarkGroup, Coordinator, GroupOutcome
from dbbench.report import columns as cols
from dbbench.report.builder import DATASIZE_FILE, Report, ReportBuilder, load_samples
from dbbench.report.stats import LatencySample

# Configure logging with Rich
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)

logger = logging.getLogger(__name__)

# Create Typer app
app = typer.Typer(
    name="dbbench",
    help="Distributed database benchmark coordinator and agent",
)

console = Console()


def _set_verbose_logging(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_group(path: Path) -> BenchmarkGroup:
    try:
        return BenchmarkGroup.load(path)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Invalid benchmark group {path}: {exc}[/red]")
        raise typer.Exit(1) from exc


def _parse_options(raw: Sequence[str]) -> Dict[str, int]:
    options: Dict[str, int] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--option")
        try:
            options[key.strip()] = int(value)
        except ValueError as exc:
            raise typer.BadParameter(f"{key} must be an integer", param_hint="--option") from exc
    return options


def _print_outcome(outcome: GroupOutcome) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", width=3)
    table.add_column("Agent", style="cyan")
    table.add_column("Status", justify="center", width=10)
    table.add_column("Time", justify="right", width=8)
    table.add_column("Detail", overflow="fold")

    for item in outcome.outcomes:
        status_style = {
            "running": "green",
            "stopped": "green",
            "failed": "red",
            "exited": "yellow",
        }.get(item.status, "yellow")
        table.add_row(
            str(item.index),
            item.endpoint,
            f"[{status_style}]{item.status}[/{status_style}]",
            f"{item.elapsed:.2f}s",
            item.detail or "-",
        )
    console.print(table)


def _print_report(report: Report) -> None:
    summary = report.summary
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for label, values in cols.summary_columns(summary).items():
        table.add_row(label, values[0])
    for marker, latency in report.percentiles:
        table.add_row(cols.percentile_label(marker), f"{cols.to_ms(latency):.3f} ms")
    console.print(table)

    for endpoint, status, detail in report.agent_rows:
        color = {"ok": "green", "exited": "yellow"}.get(status, "red")
        console.print(f"  [{color}]{status:8}[/{color}] {endpoint}: {detail}")


@app.command()
def agent(
    queue: Optional[str] = typer.Option(None, "--queue", "-q", help="Redis queue to serve"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Worker name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """
    Run the agent worker that supervises this host's database.
    """
    from dbbench.worker import run_worker

    _set_verbose_logging(verbose)
    run_worker(queue, name)


@app.command()
def render(
    backend: str = typer.Argument(..., help="Backend name (zookeeper, etcd, consul)"),
    peer: List[str] = typer.Option([], "--peer", "-p", help="Peer address, in member order"),
    member_id: int = typer.Option(1, "--member-id", "-m", min=1, help="1-based member id of this agent"),
    data_dir: Path = typer.Option(Path("/home/ubuntu/data"), "--data-dir", help="Database data directory"),
    client_port: int = typer.Option(2379, "--client-port", help="Client port"),
    option: List[str] = typer.Option([], "--option", "-o", help="Engine knob as NAME=VALUE"),
):
    """Print the config file and launch command a backend would use."""
    spec = BackendSpec.build(
        backend=backend,
        data_dir=data_dir,
        client_port=client_port,
        peers=peer,
        member_id=member_id,
        options=_parse_options(option),
    )
    try:
        rendered = build_registry(settings).render(spec)
    except AgentError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    console.print(f"[bold]# {rendered.config_path}[/bold]")
    console.print(rendered.config_text, markup=False, highlight=False)
    for filename, content in rendered.identity_files.items():
        console.print(f"[bold]# {spec.data_dir / filename}[/bold]")
        console.print(content, markup=False, highlight=False)
    console.print(f"[bold]# launch (cwd: {rendered.work_dir or '.'})[/bold]")
    console.print(" ".join(rendered.launch_args), markup=False, highlight=False)


@app.command()
def start(
    group_file: Path = typer.Argument(..., help="Benchmark group JSON file", exists=True),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """Start the database on every agent of a benchmark group."""
    _set_verbose_logging(verbose)
    group = _load_group(group_file)
    console.print(f"\n[bold blue]Starting {group.backend} for {group.database_id}[/bold blue]\n")

    outcome = Coordinator.over_redis(group).start_all()
    _print_outcome(outcome)
    if not outcome.ok:
        raise typer.Exit(1)


@app.command()
def stop(
    group_file: Path = typer.Argument(..., help="Benchmark group JSON file", exists=True),
    results_dir: Path = typer.Option(settings.results_dir, "--results-dir", help="Report output directory"),
):
    """Stop every agent's database and record on-disk data sizes."""
    group = _load_group(group_file)
    console.print(f"\n[bold blue]Stopping {group.backend} for {group.database_id}[/bold blue]\n")

    outcome = Coordinator.over_redis(group).stop_all()
    _print_outcome(outcome)

    columns = cols.datasize_columns(group.database_endpoints, outcome.datasizes())
    cols.write_csv(columns, results_dir / group.database_id / DATASIZE_FILE)
    for item in outcome.anomalies:
        console.print(f"[yellow]{item.endpoint}: database exited without a stop request ({item.detail})[/yellow]")
    if not outcome.ok or outcome.anomalies:
        raise typer.Exit(1)


def _parse_sample_args(group: BenchmarkGroup, raw: Sequence[str]) -> Dict[str, Optional[List[LatencySample]]]:
    batches: Dict[str, Optional[List[LatencySample]]] = {endpoint: None for endpoint in group.agent_endpoints}
    for item in raw:
        endpoint, sep, path = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected ENDPOINT=PATH, got {item!r}", param_hint="--samples")
        if endpoint not in batches:
            raise typer.BadParameter(f"unknown agent endpoint {endpoint!r}", param_hint="--samples")
        try:
            batches[endpoint] = load_samples(Path(path))
        except OSError as exc:
            logger.error("Unable to read samples for %s from %s: %s", endpoint, path, exc)
    return batches


@app.command()
def report(
    group_file: Path = typer.Argument(..., help="Benchmark group JSON file", exists=True),
    samples: List[str] = typer.Option([], "--samples", "-s", help="Agent samples as ENDPOINT=PATH (JSON lines)"),
    results_dir: Path = typer.Option(settings.results_dir, "--results-dir", help="Report output directory"),
    total_seconds: Optional[float] = typer.Option(None, "--total-seconds", help="Measured wall time of the run"),
    window: int = typer.Option(1000, "--window", min=1, help="Requests per key window"),
    upload: bool = typer.Option(False, "--upload/--no-upload", help="Upload artifacts to object storage"),
):
    """Aggregate collected latency samples into report artifacts."""
    group = _load_group(group_file)
    batches = _parse_sample_args(group, samples)

    uploader = None
    if upload:
        from dbbench.storage import ArtifactUploader

        uploader = ArtifactUploader.from_settings(settings)

    builder = ReportBuilder(group, results_dir, uploader=uploader, key_window=window)
    result = builder.build(batches, total_seconds=total_seconds)
    paths = builder.write(result)

    console.print(f"\n[bold blue]Report for {group.database_id}[/bold blue]\n")
    _print_report(result)
    console.print(f"\n[dim]Artifacts written to {builder.results_dir}[/dim]\n")

    if upload:
        errors = {path: error for path, error in builder.upload(paths).items() if error is not None}
        for path, error in errors.items():
            console.print(f"  [red]✗ {path.name}: {error}[/red]")
        if errors:
            raise typer.Exit(1)


@app.command()
def version():
    """Show version information."""
    console.print("[cyan]dbbench[/cyan] v0.1.0")


def main():
    """Main CLI entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error: {e}[/red]")
        logger.exception("Unhandled exception")
        sys.exit(1)


if __name__ == "__main__":
    main()
