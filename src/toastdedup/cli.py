"""Command-line interface for toastdedup."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import structlog
import yaml
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from toastdedup import __version__
from toastdedup.config import Config, find_config_file
from toastdedup.container import DependencyContainer
from toastdedup.errors import ConfigurationError, DedupError
from toastdedup.observability import export_prometheus
from toastdedup.protocols import DeduplicationResult, Priority

console = Console()
logger = structlog.get_logger(__name__)

PRIORITY_CHOICES = [priority.value for priority in Priority]


def _load_config(config_path: Optional[Path], log_level: Optional[str]) -> Config:
    """Load the configuration and apply the CLI log level override."""
    path = config_path or find_config_file()
    config = Config.from_yaml(path) if path else Config()
    if log_level:
        monitoring = config.monitoring.model_copy(update={"log_level": log_level})
        config = config.model_copy(update={"monitoring": monitoring})
    return config


def _result_row(index: int, result: DeduplicationResult) -> List[str]:
    similarity = f"{result.similarity:.3f}" if result.similarity is not None else "-"
    return [
        str(index),
        "yes" if result.is_duplicate else "no",
        "yes" if result.should_block else "no",
        similarity,
        result.matched_hash or "-",
    ]


def _results_table(title: str, results: List[DeduplicationResult]) -> Table:
    table = Table(title=title)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Duplicate", style="magenta")
    table.add_column("Block", style="red")
    table.add_column("Similarity", justify="right")
    table.add_column("Matched", style="dim")
    for index, result in enumerate(results, start=1):
        table.add_row(*_result_row(index, result))
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """toastdedup - Notification and toast deduplication engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level.upper() if log_level else None


def _container_for(ctx: click.Context) -> DependencyContainer:
    try:
        config = _load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)
    return DependencyContainer(ctx.obj["config_path"], config=config, watch_config=False)


@cli.command()
@click.argument("title")
@click.argument("message")
@click.option("--category", default=None, help="Notification category, e.g. budget")
@click.option("--priority", default=Priority.NORMAL.value, type=click.Choice(PRIORITY_CHOICES), help="Priority level")
@click.option("--repeat", default=1, type=click.IntRange(min=1), help="Number of identical checks to run")
@click.pass_context
def check(
    ctx: click.Context,
    title: str,
    message: str,
    category: Optional[str],
    priority: str,
    repeat: int,
) -> None:
    """Run TITLE/MESSAGE through the core dedup service REPEAT times."""
    container = _container_for(ctx)

    async def run_checks() -> List[DeduplicationResult]:
        async with container.lifecycle():
            service = await container.get_service()
            policy = container.get_registry().resolve(category, priority)
            console.print(
                f"[blue]Policy: window={policy.time_window:g}s threshold={policy.similarity_threshold:g} "
                f"max_duplicates={policy.max_duplicates} enabled={policy.enabled}[/blue]"
            )
            return [service.check_duplicate(title, message, category, priority) for _ in range(repeat)]

    results = asyncio.run(run_checks())
    console.print(_results_table("Duplicate Checks", results))


@cli.command()
@click.argument("title")
@click.argument("message")
@click.option("--category", default=None, help="Notification category, e.g. budget")
@click.option("--priority", default=Priority.NORMAL.value, type=click.Choice(PRIORITY_CHOICES), help="Priority level")
@click.option("--concurrency", default=50, type=click.IntRange(min=1), help="Simultaneous identical checks")
@click.option("--export", "export_path", type=click.Path(dir_okay=False), help="Write optimizer stats JSON here")
@click.option("--prometheus", is_flag=True, help="Print Prometheus metrics after the run")
@click.pass_context
def simulate(
    ctx: click.Context,
    title: str,
    message: str,
    category: Optional[str],
    priority: str,
    concurrency: int,
    export_path: Optional[str],
    prometheus: bool,
) -> None:
    """Fire CONCURRENCY identical checks through the optimizer at once."""
    container = _container_for(ctx)

    async def run_simulation() -> Dict[str, Any]:
        async with container.lifecycle():
            optimizer = await container.get_optimizer()
            if optimizer.config.max_concurrent_requests < concurrency:
                optimizer.update_config({"max_concurrent_requests": concurrency})

            outcomes = await asyncio.gather(
                *(optimizer.check_duplicate(title, message, category, priority) for _ in range(concurrency)),
                return_exceptions=True,
            )
            if export_path:
                optimizer.export_stats(Path(export_path))
            return {"outcomes": outcomes, "details": optimizer.get_detailed_stats()}

    summary = asyncio.run(run_simulation())
    outcomes = summary["outcomes"]
    results = [outcome for outcome in outcomes if isinstance(outcome, DeduplicationResult)]
    failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    logger.info("Simulation finished", requests=len(outcomes), errors=len(failures))

    table = Table(title="Simulation Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    table.add_row("requests", str(len(outcomes)))
    table.add_row("first seen", str(sum(1 for r in results if not r.is_duplicate)))
    table.add_row("duplicates", str(sum(1 for r in results if r.is_duplicate)))
    table.add_row("blocked", str(sum(1 for r in results if r.should_block)))
    table.add_row("errors", str(len(failures)))
    details = summary["details"]
    table.add_row("cache hit rate", f"{details['hit_rate']:.2%}")
    table.add_row("avg response (ms)", f"{details['stats']['average_response_time'] * 1000:.3f}")
    console.print(table)

    if export_path:
        console.print(f"[green]Stats exported to {export_path}[/green]")
    if prometheus:
        click.echo(export_prometheus())
    if failures:
        for error in {str(failure) for failure in failures}:
            console.print(f"[red]{escape(error)}[/red]")
        sys.exit(1)


@cli.group(name="config")
def config_group() -> None:
    """Inspect and validate configuration."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as YAML."""
    try:
        config = _load_config(ctx.obj["config_path"], ctx.obj["log_level"])
    except ConfigurationError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)
    rendered = yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False, allow_unicode=True)
    console.print(Syntax(rendered, "yaml"))


@config_group.command("validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def config_validate(path: str) -> None:
    """Validate the configuration file at PATH."""
    try:
        config = Config.from_yaml(Path(path))
    except ConfigurationError as e:
        table = Table(title="Configuration Errors")
        table.add_column("Problem", style="red")
        for error in e.errors or (str(e),):
            table.add_row(error)
        console.print(table)
        console.print("[red]Configuration is invalid[/red]")
        sys.exit(1)
    except yaml.YAMLError as e:
        console.print(f"[red]Configuration is not valid YAML: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Configuration Status")
    table.add_column("Section", style="cyan")
    table.add_column("Summary", style="magenta")
    policies = config.policies
    table.add_row("global", f"enabled={policies.global_defaults.enabled}")
    table.add_row("tiers", ", ".join(tier.value for tier in policies.tiers))
    table.add_row("categories", ", ".join(sorted(policies.categories)) or "-")
    table.add_row("optimizer", f"batch_size={config.optimizer.batch_size}")
    console.print(table)
    console.print("[green]Configuration is valid[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli(obj={})
    except DedupError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
