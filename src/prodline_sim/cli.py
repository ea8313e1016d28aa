"""Command-line interface for the production line simulator."""

import json
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .config import Config, ConfigurationError
from .line import LineSnapshot
from .mqtt_client import MQTTClient
from .simulator import Simulator

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_config(config_path: Optional[Path], seed: Optional[int]) -> Config:
    try:
        cfg = Config.from_yaml(config_path) if config_path else Config.from_env()
        if seed is not None:
            cfg.simulation.random_seed = seed
        cfg.validate()
    except ConfigurationError as e:
        raise click.BadParameter(str(e), param_hint="--config")
    return cfg


def _print_summary(snapshot: LineSnapshot) -> None:
    click.echo(f"Simulated time: {snapshot.global_time_ms / 1000:.1f}s "
               f"({snapshot.tick_count} ticks)")
    click.echo(f"Items created:  {snapshot.items_created}")
    click.echo(f"Finished goods: {snapshot.finished_count}")
    click.echo(f"Work in progress: {snapshot.work_in_progress}")
    click.echo()
    click.echo(f"{'Machine':<12}{'State':<16}{'Buffer':>8}{'Processed':>11}{'OEE':>8}")
    click.echo("-" * 55)
    for m in snapshot.machines:
        buffer = f"{m.buffer_length}/{m.buffer_capacity}"
        click.echo(
            f"{m.name:<12}{m.state.value:<16}{buffer:>8}"
            f"{m.metrics.processed_items:>11}{m.metrics.current_oee * 100:>7.1f}%"
        )


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose):
    """Production line simulator.

    Models a chain of machines joined by finite buffers, with random
    processing times, breakdowns, repairs and output blocking, and reports
    OEE per machine.
    """
    _setup_logging(verbose)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file (default: built-in line plus environment overrides)",
)
@click.option("--broker", "-b", default=None, help="MQTT broker address")
@click.option("--port", "-p", type=int, default=None, help="MQTT broker port")
@click.option("--seed", type=int, default=None, help="Random seed for a reproducible run")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Do not connect to a broker; log messages instead",
)
def run(config_path, broker, port, seed, dry_run):
    """Run the line in real time and publish snapshots over MQTT."""
    cfg = _load_config(config_path, seed)
    if broker:
        cfg.mqtt.broker = broker
    if port:
        cfg.mqtt.port = port

    sim = Simulator(cfg)

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        sim.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not sim.start(dry_run=dry_run):
        click.echo("Failed to start simulator", err=True)
        sys.exit(1)

    click.echo(f"Line: {' -> '.join(m.name for m in sim.line.machines)}")
    click.echo(f"MQTT: {cfg.mqtt.broker}:{cfg.mqtt.port}{' (dry run)' if dry_run else ''}")
    click.echo(f"Topics: {sim._mqtt.base_topic}/...")
    click.echo("Press Ctrl+C to stop")

    while sim.running:
        time.sleep(1)


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file",
)
@click.option(
    "--ticks",
    "-n",
    type=click.IntRange(min=0),
    default=3000,
    help="Number of ticks to simulate (default: 3000)",
)
@click.option("--seed", type=int, default=None, help="Random seed for a reproducible run")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the final snapshot as JSON")
def simulate(config_path, ticks, seed, as_json):
    """Run the line headless as fast as possible and print a summary."""
    cfg = _load_config(config_path, seed)
    # Never connected, so nothing is published
    sim = Simulator(cfg, mqtt_client=MQTTClient(cfg.mqtt, cfg.uns))
    snapshot = sim.run_ticks(ticks)

    if as_json:
        click.echo(json.dumps(snapshot.to_dict(), indent=2))
    else:
        _print_summary(snapshot)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file.

    Creates config.yaml with the reference five-machine line, MQTT settings
    and simulation parameters.
    """
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - Machines, buffer capacities and failure rates")
    click.echo("  - Tick interval, seed and injection probability")
    click.echo("  - MQTT broker settings")
    click.echo()
    click.echo(f"Run with: prodline-sim run --config {config_path}")


if __name__ == "__main__":
    main()
