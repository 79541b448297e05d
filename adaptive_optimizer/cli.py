"""
Command Line Interface for the Adaptive Optimizer.
"""

import json
import logging
import random
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import OptimizerConfig, collect_config_warnings
from .engine import OptimizationEngine
from .exceptions import OptimizerException
from .reports import ReportGenerator, bottlenecks_frame
from .telemetry import ReplayClock, load_access_patterns, load_system_load, load_telemetry, replay
from .utils import format_duration, to_primitive

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

console = Console()


def _load_config(config_path: Optional[str]) -> OptimizerConfig:
    if config_path:
        return OptimizerConfig.from_file(config_path)
    return OptimizerConfig()


def _replay_engine(telemetry: str, config_path: Optional[str], access_patterns: Optional[str],
                   system_load: Optional[str], seed: int) -> OptimizationEngine:
    config = _load_config(config_path)
    bundle = load_telemetry(telemetry)
    if access_patterns:
        bundle = bundle.merge(load_access_patterns(access_patterns))
    if system_load:
        bundle = bundle.merge(load_system_load(system_load))
    if not bundle.samples:
        raise click.ClickException(f"No execution samples found in {telemetry}")

    clock = ReplayClock(bundle.samples[0][1].timestamp)
    engine = OptimizationEngine(config, rng=random.Random(seed), clock=clock)
    accepted = replay(engine, bundle, clock)
    console.print(
        f"Replayed [bold]{accepted}[/bold] of {len(bundle.samples)} samples "
        f"across {len(bundle.request_types)} request types"
        + (f" ([yellow]{bundle.rejected_rows} rows rejected[/yellow])" if bundle.rejected_rows else "")
    )
    return engine


def _set_verbosity(verbose: bool):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@click.group()
@click.version_option(version=__version__, prog_name='adaptive-optimizer')
def cli():
    """Adaptive Optimizer - recommend optimizations from recorded request telemetry."""
    pass


@cli.command()
@click.option('--output', '-o', default='optimizer.config.json', help='Output configuration file path (.json or .yaml)')
def init(output: str):
    """Generate a configuration file with the default settings."""
    try:
        OptimizerConfig().save(output)
        click.echo(f"✅ Configuration file created: {output}")
        click.echo("\nNext steps:")
        click.echo("1. Adjust thresholds and register request types under 'request_types'")
        click.echo(f"2. Run: adaptive-optimizer validate {output}")
        click.echo(f"3. Run: adaptive-optimizer analyze telemetry.csv --config {output}")
    except Exception as e:
        click.echo(f"❌ Error creating configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('config-file', type=click.Path(exists=True))
def validate(config_file: str):
    """Validate a configuration file."""
    try:
        config = OptimizerConfig.from_file(config_file)
    except (OptimizerException, ValueError) as e:
        click.echo(f"❌ Invalid configuration: {e}", err=True)
        sys.exit(1)

    click.echo(f"✅ Configuration is valid: {config_file}")
    for warning in collect_config_warnings(config):
        click.echo(f"⚠️  {warning}")


@cli.command()
@click.argument('telemetry', type=click.Path(exists=True))
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='Configuration file path')
@click.option('--access-patterns', type=click.Path(exists=True), help='CSV/JSON file of cache access events')
@click.option('--system-load', type=click.Path(exists=True), help='CSV/JSON file of system load snapshots')
@click.option('--output', '-o', type=click.Path(), help='Export recommendations (.json or .csv)')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table',
              help='Console output format')
@click.option('--seed', type=int, default=0, help='Seed for the exploration policy')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
def analyze(telemetry: str, config_path: Optional[str], access_patterns: Optional[str],
            system_load: Optional[str], output: Optional[str], output_format: str, seed: int, verbose: bool):
    """Replay recorded telemetry and print recommendations."""
    _set_verbosity(verbose)
    try:
        engine = _replay_engine(telemetry, config_path, access_patterns, system_load, seed)
        recommendations = engine.current_recommendations()
        report = ReportGenerator(recommendations, statistics=engine.get_model_statistics())

        if output_format == 'json':
            click.echo(json.dumps(to_primitive(recommendations), indent=2))
        else:
            table = Table(title="Optimization Recommendations")
            table.add_column("Request type", style="cyan")
            table.add_column("Strategy", style="bold")
            table.add_column("Confidence", justify="right")
            table.add_column("Gain", justify="right")
            table.add_column("Saves", justify="right")
            table.add_column("Priority")
            table.add_column("Risk")
            table.add_column("Auto")
            for _, row in report.recommendations_frame().iterrows():
                table.add_row(
                    row["request_type"],
                    row["strategy"],
                    f"{row['confidence_score']:.2f}",
                    f"{row['estimated_gain_percentage']:.1f}%",
                    format_duration(row["estimated_improvement_ms"]),
                    row["priority"],
                    row["risk"],
                    "yes" if row["auto_apply_eligible"] else "no",
                )
            console.print(table)

            estimates = engine.estimate_connection_limits()
            console.print(
                "Estimated connections: "
                + ", ".join(f"{name}={value}" for name, value in estimates.items())
            )

        if output:
            report.save(output)
            click.echo(f"✅ Recommendations saved to: {output}")

    except click.ClickException:
        raise
    except OptimizerException as e:
        click.echo(f"❌ Optimizer error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"❌ Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@cli.command()
@click.argument('telemetry', type=click.Path(exists=True))
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='Configuration file path')
@click.option('--system-load', type=click.Path(exists=True), help='CSV/JSON file of system load snapshots')
@click.option('--window', type=float, help='Insight window in seconds (defaults to the configured window)')
@click.option('--output', '-o', type=click.Path(), help='Export the full report (.json) or bottlenecks (.csv)')
@click.option('--seed', type=int, default=0, help='Seed for the exploration policy')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
def insights(telemetry: str, config_path: Optional[str], system_load: Optional[str], window: Optional[float],
             output: Optional[str], seed: int, verbose: bool):
    """Replay recorded telemetry and print the system insight report."""
    _set_verbosity(verbose)
    try:
        engine = _replay_engine(telemetry, config_path, None, system_load, seed)
        report = engine.get_system_insights(window)
        health = report.health_score

        click.echo("\n📋 SYSTEM HEALTH")
        click.echo("=" * 50)
        click.echo(f"Overall: {health.overall:.1f} ({health.status}, grade {health.grade})")
        click.echo(f"Performance: {health.performance:.1f}")
        click.echo(f"Reliability: {health.reliability:.1f}")
        click.echo(f"Resource efficiency: {health.resource_efficiency:.1f}")
        click.echo(f"User experience: {health.user_experience:.1f}")
        click.echo("=" * 50)

        if report.bottlenecks:
            table = Table(title="Bottlenecks")
            for column in ("Component", "Metric", "Severity", "Observed", "Threshold", "Sustained"):
                table.add_column(column)
            for b in report.bottlenecks:
                table.add_row(b.component, b.metric, b.severity.value, f"{b.observed_value:.3g}",
                              f"{b.threshold:.3g}", f"{b.sustained_seconds:.0f}s")
            console.print(table)

        if report.opportunities:
            table = Table(title="Opportunities")
            for column in ("Request type", "Strategy", "Confidence", "Gain", "Priority"):
                table.add_column(column)
            for o in report.opportunities:
                table.add_row(o.request_type, o.strategy.value, f"{o.confidence:.2f}",
                              f"{o.expected_gain_percentage:.1f}%", o.priority.value)
            console.print(table)

        for pattern in report.seasonal_patterns:
            click.echo(f"🔁 {pattern.pattern_type} pattern in {pattern.metric} for {pattern.component} "
                       f"(strength {pattern.strength:.2f})")
        for issue in report.predictions.potential_issues:
            click.echo(f"⚠️  {issue}")

        if output:
            if Path(output).suffix.lower() == ".csv":
                bottlenecks_frame(report).to_csv(output, index=False)
            else:
                ReportGenerator(engine.current_recommendations(), report,
                                engine.get_model_statistics()).save_json(output)
            click.echo(f"✅ Insights saved to: {output}")

    except click.ClickException:
        raise
    except OptimizerException as e:
        click.echo(f"❌ Optimizer error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"❌ Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
