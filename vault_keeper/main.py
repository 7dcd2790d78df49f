#!/usr/bin/env python3
"""
Vault Keeper - Main Application Entry Point

This module serves as the entry point for the Vault Keeper. It initializes
the gateways and components from configuration, wires them into a keeper
cycle and either runs the scheduler until a termination signal arrives or
executes a single operator command.

Commands:
    run      Run keeper cycles until SIGINT/SIGTERM
    cycle    Run exactly one cycle and print its report
    status   Print the vault state, keeper balance and undistributed ledger
    recover  Send recorded undistributed value to the project wallet
"""
import argparse
import asyncio
import json
import os
import signal
import sys
from typing import Any

import uvloop

from vault_keeper import __version__
from vault_keeper.config import AppConfig, Environment, get_config
from vault_keeper.core.constants import TOKEN_DECIMALS
from vault_keeper.core.errors import KeeperError
from vault_keeper.core.logger import get_logger, setup_logger
from vault_keeper.distribution import DistributionEngine
from vault_keeper.distribution.ledger import UndistributedLedger
from vault_keeper.exclusions import ExclusionSynchronizer
from vault_keeper.fees import FeeScheduleController
from vault_keeper.gateways import DiscoveryProvider, SocialSignalProvider
from vault_keeper.gateways.birdeye import BirdeyeDiscoveryProvider
from vault_keeper.gateways.jupiter import JupiterSwapRouter
from vault_keeper.gateways.solana_vault import SolanaVaultGateway
from vault_keeper.gateways.static_discovery import StaticDiscoveryProvider
from vault_keeper.gateways.twitter import StaticSignalProvider, TwitterSignalProvider
from vault_keeper.harvest import HarvestSwapOrchestrator
from vault_keeper.monitoring import KeeperMetrics, start_metrics_server
from vault_keeper.rewards import RewardAssetSelector
from vault_keeper.scheduler import KeeperCycle, KeeperScheduler

logger = get_logger(__name__)

# Gateways opened by initialize_gateways, closed on shutdown
gateways: dict[str, Any] = {}


def initialize_gateways(config: AppConfig) -> dict[str, Any]:
    """
    Initialize the vault, discovery, signal and swap gateways.

    Args:
        config: Application configuration

    Returns:
        Dictionary mapping gateway roles to gateway instances
    """
    gateway_map: dict[str, Any] = {}

    logger.info("Initializing Solana vault gateway", rpc_url=config.solana.rpc_url)
    vault = SolanaVaultGateway(config.solana)
    gateway_map["vault"] = vault

    discovery: DiscoveryProvider
    if config.birdeye.enabled:
        logger.info("Initializing Birdeye discovery provider")
        discovery = BirdeyeDiscoveryProvider(config.birdeye, token_decimals=TOKEN_DECIMALS)
    else:
        logger.info("Using static discovery provider")
        discovery = StaticDiscoveryProvider(config.static_discovery, token_decimals=TOKEN_DECIMALS)
    gateway_map["discovery"] = discovery

    signal_provider: SocialSignalProvider
    if config.twitter.enabled:
        logger.info("Initializing Twitter signal provider", account=config.twitter.account)
        signal_provider = TwitterSignalProvider(config.twitter)
    else:
        logger.info("Using static signal provider", symbol=config.twitter.static_symbol)
        signal_provider = StaticSignalProvider(config.twitter.static_symbol)
    gateway_map["signal"] = signal_provider

    logger.info("Initializing Jupiter swap router")
    gateway_map["router"] = JupiterSwapRouter(config.jupiter, vault)

    return gateway_map


def initialize_cycle(
    config: AppConfig, gateway_map: dict[str, Any], metrics: KeeperMetrics | None = None
) -> KeeperCycle:
    """
    Build the keeper components and the cycle that runs them.

    Disabled components are left out and reported as skipped by the cycle.

    Args:
        config: Application configuration
        gateway_map: Gateways returned by initialize_gateways
        metrics: Metrics updated after each cycle

    Returns:
        KeeperCycle instance
    """
    vault = gateway_map["vault"]
    dry_run = config.dry_run

    ledger = UndistributedLedger(config.distribution.ledger_path, persist=not dry_run)
    distribution = DistributionEngine(
        vault,
        gateway_map["discovery"],
        ledger,
        min_holder_value_usd=config.distribution.min_holder_value_usd,
        keeper_low_balance=config.distribution.keeper_low_balance_lamports,
        keeper_top_up_target=config.distribution.keeper_top_up_target_lamports,
        transfer_attempts=config.distribution.transfer_attempts,
        dry_run=dry_run,
    )

    fees = None
    if config.fees.enabled:
        logger.info("Initializing fee schedule controller")
        fees = FeeScheduleController(vault, dry_run=dry_run)

    exclusions = None
    if config.exclusions.enabled:
        logger.info(
            "Initializing exclusion synchronizer",
            venues=len(config.exclusions.venues),
            routers=len(config.exclusions.routers),
        )
        exclusions = ExclusionSynchronizer(
            vault, config.exclusions.venues, config.exclusions.routers, dry_run=dry_run
        )

    selector = None
    if config.rewards.enabled:
        logger.info("Initializing reward asset selector")
        selector = RewardAssetSelector(
            vault,
            gateway_map["signal"],
            gateway_map["discovery"],
            check_weekday=config.rewards.check_weekday,
            check_hour=config.rewards.check_hour,
            check_minute=config.rewards.check_minute,
            tolerance_seconds=config.rewards.window_tolerance_seconds,
            dry_run=dry_run,
        )

    harvester = None
    if config.harvest.enabled:
        logger.info("Initializing harvest/swap orchestrator")
        harvester = HarvestSwapOrchestrator(
            vault,
            gateway_map["router"],
            batch_size=config.harvest.batch_size,
            batch_attempts=config.harvest.batch_attempts,
            slippage_bps=config.harvest.slippage_bps,
            max_swap_attempts=config.harvest.max_swap_attempts,
            harvest_threshold=config.harvest.harvest_threshold,
            dry_run=dry_run,
        )

    if not config.distribution.enabled:
        logger.warning("Distribution cannot be disabled, harvest proceeds are always distributed")

    return KeeperCycle(
        vault,
        distribution,
        fees=fees,
        exclusions=exclusions,
        selector=selector,
        harvester=harvester,
        metrics=metrics,
    )


async def shutdown() -> None:
    """
    Close every gateway opened at startup.
    """
    for name, gateway in gateways.items():
        logger.info(f"Closing {name} gateway")
        try:
            await gateway.close()
        except Exception:
            logger.error(f"Error closing {name} gateway", exc_info=True)
    gateways.clear()

    logger.info("Shutdown complete")


async def run_scheduler(scheduler: KeeperScheduler) -> int:
    """Run the scheduler until a termination signal arrives."""
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown")
        stop_requested.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    await scheduler.start()
    await stop_requested.wait()
    await scheduler.stop()
    return 0


async def show_status(cycle: KeeperCycle) -> int:
    """Print the vault state, keeper balance and ledger contents as JSON."""
    vault = cycle.vault
    ledger = cycle.distribution.ledger
    state = await vault.fetch_state()
    exclusions = await vault.fetch_exclusions()
    keeper_balance = await vault.get_native_balance(vault.keeper_address)

    status = {
        "vault": vault.vault_address,
        "keeper": vault.keeper_address,
        "keeper_balance_lamports": keeper_balance,
        "state": state.model_dump(mode="json"),
        "fee_exclusions": sorted(exclusions.fee_exclusions),
        "reward_exclusions": sorted(exclusions.reward_exclusions),
        "undistributed": {asset: ledger.total(asset) for asset in ledger.assets()},
        "pending_transfers": len(ledger.pending_transfers()),
    }
    print(json.dumps(status, indent=2, default=str))
    return 0


async def recover(cycle: KeeperCycle, assets: list[str]) -> int:
    """Send undistributed value of the given assets (default: all) to the project wallet."""
    ledger = cycle.distribution.ledger
    exit_code = 0
    for asset in assets or ledger.assets():
        result = await cycle.distribution.recover_to_project_wallet(asset)
        if result is not None and not result.succeeded:
            logger.error("Recovery failed", asset=asset, error=result.error)
            exit_code = 1
    return exit_code


async def main_async(args: argparse.Namespace) -> int:
    """
    Asynchronous main function.

    Args:
        args: Command-line arguments

    Returns:
        Exit code
    """
    global gateways

    config = get_config()

    try:
        gateways = initialize_gateways(config)

        metrics = KeeperMetrics()
        cycle = initialize_cycle(config, gateways, metrics)
        scheduler = KeeperScheduler(
            cycle, tick_interval=config.scheduler.tick_interval_seconds
        )

        if args.command == "status":
            return await show_status(cycle)

        if args.command == "recover":
            return await recover(cycle, args.asset)

        if args.command == "cycle":
            report = await scheduler.run_once()
            if report is None:
                return 1
            print(report.model_dump_json(indent=2))
            return 0 if report.complete else 1

        # Start metrics server if not in dry run mode
        if config.monitoring.enabled and not config.dry_run and not args.no_metrics:
            port = args.metrics_port or config.monitoring.port
            logger.info(f"Starting metrics server on port {port}")
            start_metrics_server(port, metrics)

        logger.info(
            f"Vault Keeper v{__version__} started in {config.environment.value} mode",
            dry_run=config.dry_run,
            vault=gateways["vault"].vault_address,
        )
        return await run_scheduler(scheduler)

    except KeeperError as e:
        logger.critical("Keeper command failed", error=str(e), **e.context())
        return 1
    except Exception:
        logger.critical("Unhandled exception in main loop", exc_info=True)
        return 1
    finally:
        await shutdown()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="Vault Keeper")

    parser.add_argument(
        "--version",
        action="version",
        version=f"Vault Keeper v{__version__}",
    )

    parser.add_argument("--config-dir", type=str, help="Path to configuration directory")

    parser.add_argument(
        "--environment",
        type=str,
        choices=[e.value for e in Environment],
        help="Environment to run in (development, devnet, mainnet)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run in dry-run mode (no transactions are sent)",
    )

    parser.add_argument("--no-metrics", action="store_true", help="Disable metrics server")

    parser.add_argument("--metrics-port", type=int, help="Port for metrics server")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run keeper cycles until interrupted")
    subparsers.add_parser("cycle", help="Run a single keeper cycle")
    subparsers.add_parser("status", help="Show vault state and undistributed ledger")
    recover_parser = subparsers.add_parser(
        "recover", help="Send undistributed value to the project wallet"
    )
    recover_parser.add_argument(
        "asset", nargs="*", help="Asset mint(s) to recover (default: every recorded asset)"
    )

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def main() -> int:
    """
    Main entry point.

    Returns:
        Exit code
    """
    # Parse command-line arguments
    args = parse_args()

    # Set environment variables from arguments
    if args.config_dir:
        os.environ["VAULT_KEEPER_CONFIG_DIR"] = args.config_dir

    if args.environment:
        os.environ["VAULT_KEEPER_ENVIRONMENT"] = args.environment

    if args.log_level:
        os.environ["VAULT_KEEPER_LOG_LEVEL"] = args.log_level

    if args.dry_run:
        os.environ["VAULT_KEEPER_DRY_RUN"] = "true"

    # Set up logging
    setup_logger()

    config = get_config()
    logger.info(
        f"Starting Vault Keeper v{__version__}",
        command=args.command,
        environment=config.environment.value,
        dry_run=config.dry_run,
    )

    # Use uvloop for better performance
    uvloop.install()

    # Run the async main function
    return asyncio.run(main_async(args))


if __name__ == "__main__":
    sys.exit(main())
