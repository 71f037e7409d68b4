"""
epochsettle/cli.py

Command line entry point.

Run with: epochsettle run
          epochsettle calculate 1000 8000
          epochsettle distribute 1000 8000

All settings come from EPOCHSETTLE_* environment variables (see
epochsettle.config.SettlementConfig.from_env).
"""

import json
import logging
import sys

import click
import trio

from .analytics.metrics_view import ClickHouseMetricsView
from .api import SettlementAPI
from .blockchain.batches import EpochRange
from .blockchain.web3_gateway import Web3ChainGateway
from .config import SettlementConfig
from .errors import ConfigError, classify_error
from .metrics import SettlementMetrics
from .protocol.coordinator import DistributionCoordinator
from .protocol.status_store import StatusStore

logger = logging.getLogger("epochsettle.cli")


def build_coordinator(config: SettlementConfig) -> DistributionCoordinator:
    """Wire the web3 gateway and ClickHouse view into a coordinator."""
    store = StatusStore()
    return DistributionCoordinator.from_config(
        config,
        gateway=Web3ChainGateway(config.chain),
        metrics_view=ClickHouseMetricsView(config.clickhouse),
        store=store,
        metrics=SettlementMetrics(store),
    )


def _epoch_range(from_block: int, to_block: int) -> EpochRange:
    try:
        return EpochRange(from_block, to_block)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='INFO',
    help='Logging level',
)
@click.pass_context
def cli(ctx, log_level):
    """Worker reward settlement engine."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    )
    try:
        ctx.obj = SettlementConfig.from_env()
    except ConfigError as e:
        raise click.ClickException(str(e))


@cli.command()
@click.pass_obj
def run(config: SettlementConfig):
    """Run the commit loop, approve loop and admin API."""
    try:
        coordinator = build_coordinator(config)
    except ConfigError as e:
        raise click.ClickException(str(e))
    api = SettlementAPI(coordinator, host=config.api.host, port=config.api.port)

    async def main():
        logger.info(f"Distributor {coordinator.gateway.address} starting")
        async with trio.open_nursery() as nursery:
            nursery.start_soon(coordinator.run)
            nursery.start_soon(api.start)

    try:
        trio.run(main)
    except KeyboardInterrupt:
        logger.info("Shutting down")


@cli.command()
@click.argument('from_block', type=int)
@click.argument('to_block', type=int)
@click.pass_obj
def calculate(config: SettlementConfig, from_block: int, to_block: int):
    """Print the reward assignments for a range as JSON (no writes)."""
    epoch_range = _epoch_range(from_block, to_block)
    try:
        coordinator = build_coordinator(config)
        plan = trio.run(coordinator.calculate, epoch_range)
    except ConfigError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    except Exception as e:
        error = classify_error(e)
        raise click.ClickException(f"{type(error).__name__}: {error}")

    click.echo(json.dumps({
        "epoch_id": epoch_range.epoch_id,
        "merkle_root": plan.tree.root_hex,
        "batches": [b.to_dict() for b in plan.batches],
        **plan.result.to_dict(),
    }, indent=2))


@cli.command()
@click.argument('from_block', type=int)
@click.argument('to_block', type=int)
@click.pass_obj
def distribute(config: SettlementConfig, from_block: int, to_block: int):
    """Commit (if needed) and distribute one range, then exit."""
    epoch_range = _epoch_range(from_block, to_block)
    try:
        coordinator = build_coordinator(config)
        status = trio.run(coordinator.run_distribution, epoch_range)
    except ConfigError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}")
    except Exception as e:
        error = classify_error(e)
        raise click.ClickException(f"{type(error).__name__}: {error}")

    click.echo(json.dumps(status.to_dict(), indent=2))
    if status.error:
        sys.exit(1)


def main():
    cli(prog_name="epochsettle")


if __name__ == "__main__":
    main()
