"""Command line interface for sentinel-fl."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import click

from sentinel_fl.config import FederationConfig
from sentinel_fl.exceptions import FederatedError
from sentinel_fl.logging_config import configure_logging
from sentinel_fl.simulation import run_simulation


def _load_config(config_path: Optional[str]) -> FederationConfig:
    base = FederationConfig.from_file(Path(config_path)) if config_path else None
    return FederationConfig.from_env(base=base)


def _parse_layers(layers: str) -> list[list[int]]:
    try:
        sizes = [int(s) for s in layers.split(",")]
    except ValueError as e:
        msg = f"Layer sizes must be comma-separated integers, got {layers!r}"
        raise click.BadParameter(msg) from e
    if len(sizes) < 2:
        msg = "Need at least an input and an output size"
        raise click.BadParameter(msg)
    return [[a, b] for a, b in zip(sizes, sizes[1:])]


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"]),
    default=None,
    help="Override the configured log format",
)
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str], log_format: Optional[str]) -> None:
    """Byzantine-robust, differentially private federated learning."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level
    ctx.obj["log_format"] = log_format


@cli.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="JSON config file")
@click.option("--honest", type=int, default=8, show_default=True, help="Honest nodes")
@click.option("--byzantine", type=int, default=2, show_default=True, help="Byzantine nodes")
@click.option("--rounds", type=int, default=3, show_default=True, help="Rounds to run")
@click.option(
    "--method",
    type=click.Choice(["krum", "trimmed_mean", "median"]),
    default=None,
    help="Aggregation method (defaults to the configured one)",
)
@click.option(
    "--layers",
    default=None,
    help="Comma-separated layer sizes (defaults to the configured topology)",
)
@click.option("--samples", type=int, default=64, show_default=True, help="Samples per node")
@click.option(
    "--attack-norm",
    type=float,
    default=50.0,
    show_default=True,
    help="L2 norm of each Byzantine update",
)
@click.option("--seed", type=int, default=None, help="Seed for a reproducible run")
@click.option(
    "--snapshot-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Persist each node's model snapshot here",
)
@click.pass_context
def simulate(
    ctx: click.Context,
    config_path: Optional[str],
    honest: int,
    byzantine: int,
    rounds: int,
    method: Optional[str],
    layers: Optional[str],
    samples: int,
    attack_norm: float,
    seed: Optional[int],
    snapshot_dir: Optional[str],
) -> None:
    """Run an in-process federation and print each round's outcome.

    Example:
        sentinel-fl simulate --honest 8 --byzantine 2 --rounds 5 --seed 7
    """
    try:
        config = _load_config(config_path)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    if layers is not None:
        config.topology = _parse_layers(layers)
    if method is not None:
        config.aggregation.method = method
    if seed is not None:
        config.seed = seed

    configure_logging(
        log_level=ctx.obj.get("log_level") or config.logging.level,
        log_format=ctx.obj.get("log_format") or config.logging.format,
        log_file=config.logging.log_file,
    )

    try:
        config.validate()
        report = asyncio.run(
            run_simulation(
                config,
                honest=honest,
                byzantine=byzantine,
                rounds=rounds,
                samples_per_node=samples,
                attack_norm=attack_norm,
                snapshot_dir=Path(snapshot_dir) if snapshot_dir else None,
            )
        )
    except (ValueError, FederatedError) as e:
        click.echo(f"✗ Error: {e}", err=True)
        raise click.Abort() from e

    for record in report.rounds:
        click.echo(record.summary())
        if record.result is not None:
            rejected = ", ".join(
                f"{pid} ({reason})" for pid, reason in sorted(record.result.rejected.items())
            )
            click.echo(f"  Rejected: {rejected or 'none'}")
        errors = report.node_errors.get(record.round_number)
        if errors:
            click.echo(f"  Node errors: {errors}")
    click.echo(report.summary())


@cli.group()
def config() -> None:
    """Inspect and create configuration files."""
    pass


@config.command("show")
@click.option("--config", "config_path", type=click.Path(exists=True), help="JSON config file")
def config_show(config_path: Optional[str]) -> None:
    """Print the effective configuration (file, then environment overrides)."""
    try:
        effective = _load_config(config_path)
    except ValueError as e:
        click.echo(f"✗ Error: {e}", err=True)
        raise click.Abort() from e
    click.echo(json.dumps(effective.to_dict(), indent=2))


@config.command("init")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: str, force: bool) -> None:
    """Write the default configuration to PATH."""
    target = Path(path)
    if target.exists() and not force:
        click.echo(f"✗ {target} already exists (use --force to overwrite)", err=True)
        raise click.Abort()
    FederationConfig().to_file(target)
    click.echo(f"✓ Wrote default configuration to {target}")


if __name__ == "__main__":
    cli()
