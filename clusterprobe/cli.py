"""
clusterprobe - CLI Interface

Command-line entry point: runs the probe scheduler, validates
configuration, and runs single probes on demand.
"""

import asyncio
import logging
import signal
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import (
    DEFAULT_CONFIG_PATH,
    KUBECONFIG,
    LOG_LEVEL,
    METRICS_PORT,
    Config,
    ConfigError,
    load_config,
)
from .health.models import Outcome, OutcomeStatus, ProbeSchedule
from .health.scheduler import ProbeScheduler
from .health.sink import MemoryResultSink, PrometheusResultSink
from .probes import default_registry
from .tools.kubernetes import KubeClients

logger = logging.getLogger(__name__)

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

_STATUS_STYLES = {
    OutcomeStatus.HEALTHY: "green",
    OutcomeStatus.UNHEALTHY: "red",
    OutcomeStatus.INDETERMINATE: "yellow",
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
    )
    # Client libraries log every request at INFO/DEBUG
    for name in ("urllib3", "kubernetes"):
        logging.getLogger(name).setLevel(logging.WARNING)


def _print_config_errors(e: ConfigError) -> None:
    console.print(f"[red]Invalid configuration ({len(e.errors)} problem(s)):[/red]")
    for message in e.errors:
        console.print(f"  [red]-[/red] {escape(message)}")


def _load_schedules(config_path: str, kubeconfig: Optional[str]) -> Tuple[Config, List[ProbeSchedule]]:
    """Load the config and build schedules, exiting with status 1 on errors."""
    try:
        config = load_config(config_path)
        schedules = default_registry().build_schedules(config, KubeClients(kubeconfig))
    except ConfigError as e:
        _print_config_errors(e)
        raise SystemExit(1)
    return config, schedules


async def run_until_signalled(scheduler: ProbeScheduler) -> None:
    """Run the scheduler until SIGINT or SIGTERM cancels it."""
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(scheduler.start(), name="scheduler")
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Shutdown signal received, all probe loops stopped")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


@click.group()
@click.version_option(version=__version__)
def cli():
    """clusterprobe - scheduled health probes for Kubernetes clusters."""
    pass


@cli.command()
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True, help="Probe configuration file")
@click.option("--metrics-port", "-p", default=METRICS_PORT, show_default=True, type=int, help="Port of the /metrics endpoint")
@click.option("--kubeconfig", default=KUBECONFIG, help="Kubeconfig file (default: in-cluster config, then ~/.kube/config)")
@click.option("--log-level", default=LOG_LEVEL, show_default=True, type=click.Choice(LOG_LEVELS, case_sensitive=False))
def run(config_path: str, metrics_port: int, kubeconfig: str, log_level: str):
    """Run every enabled probe on its schedule until interrupted."""
    setup_logging(log_level)

    config, schedules = _load_schedules(config_path, kubeconfig)
    if not schedules:
        console.print("[yellow]No enabled probes, nothing to run.[/yellow]")
        return

    sink = PrometheusResultSink()
    sink.serve(metrics_port)

    console.print(Panel.fit(
        "[bold blue]clusterprobe[/bold blue] - Kubernetes health probes\n"
        f"Config: [green]{escape(config_path)}[/green]\n"
        f"Probes: [cyan]{len(schedules)}[/cyan] enabled of {len(config.probes)}\n"
        f"Metrics: [cyan]:{metrics_port}/metrics[/cyan]",
        title="Starting"
    ))

    asyncio.run(run_until_signalled(ProbeScheduler(schedules, sink)))


@cli.command()
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True, help="Probe configuration file")
def validate(config_path: str):
    """Validate the configuration without contacting the cluster."""
    config, schedules = _load_schedules(config_path, None)
    built = {s.name for s in schedules}

    table = Table(title="Probes")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Interval", justify="right")
    table.add_column("Timeout", justify="right")
    table.add_column("Enabled")
    for probe in config.probes:
        table.add_row(
            probe.name,
            probe.type,
            f"{probe.interval:g}s",
            f"{probe.timeout:g}s",
            "[green]yes[/green]" if probe.name in built else "[dim]no[/dim]",
        )
    console.print(table)
    console.print(f"[green]Configuration is valid[/green] ({len(schedules)} enabled probes)")


@cli.command()
def types():
    """List the registered probe types."""
    for probe_type in default_registry().types():
        console.print(probe_type)


@cli.command()
@click.option("--config", "-c", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True, help="Probe configuration file")
@click.option("--name", "-n", required=True, help="Name of the probe to run")
@click.option("--kubeconfig", default=KUBECONFIG, help="Kubeconfig file")
@click.option("--log-level", default="WARNING", show_default=True, type=click.Choice(LOG_LEVELS, case_sensitive=False))
def once(config_path: str, name: str, kubeconfig: str, log_level: str):
    """Run one probe immediately and print its outcome."""
    setup_logging(log_level)

    _, schedules = _load_schedules(config_path, kubeconfig)
    scheduler = ProbeScheduler(schedules, MemoryResultSink())
    try:
        with console.status(f"[bold green]Running probe {escape(name)}...[/bold green]"):
            outcome: Outcome = asyncio.run(scheduler.run_now(name))
    except KeyError:
        console.print(f"[red]Error: no enabled probe named {escape(name)!r}[/red]")
        raise SystemExit(2)

    style = _STATUS_STYLES[outcome.status]
    lines = [f"Status: [{style}]{outcome.status.value}[/{style}]"]
    if outcome.code:
        lines.append(f"Code: [bold]{outcome.code}[/bold]")
    if outcome.message:
        lines.append(f"Message: {escape(outcome.message)}")
    console.print(Panel("\n".join(lines), title=f"[bold]{escape(name)}[/bold]", border_style=style))

    if not outcome.is_healthy:
        raise SystemExit(1)


def main():
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
