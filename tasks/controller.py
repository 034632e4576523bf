"""Command-line entry point: one rebalance pass over every delta-neutral position.

    python -m tasks.controller -n testnet -d 0.01 -b 0.05 -t 60 --dry-run

Live runs need ``CONTROLLER_ADDRESS`` and a signer factory in
``CONTROLLER_SIGNER=package.module:factory``.
"""
from __future__ import annotations

import argparse
import asyncio
import os
from typing import Dict, Optional, Sequence

from dotenv import load_dotenv

from executors.base import TxSigner
from executors.signers import load_signer
from services.controller import FatalSetupError, run_controller
from utils.controller_config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    NETWORKS,
    ConfigError,
    ControllerConfig,
)
from utils.structured_logging import configure_structured_logging, get_logger

LOG = get_logger("aperture_controller.cli")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="aperture-controller",
        description="Rebalance Aperture delta-neutral positions on Terra",
    )
    parser.add_argument("-n", "--network", required=True, choices=sorted(NETWORKS), help="Terra network")
    parser.add_argument("-d", "--delta_tolerance", required=True, help="Max |1 - short/long| before rebalancing")
    parser.add_argument("-b", "--balance_tolerance", required=True, help="Max idle uusd share of position value")
    parser.add_argument("-t", "--time_tolerance", required=True, help="Max oracle price age in seconds")
    parser.add_argument(
        "-q", "--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Parallel chain queries (default: %(default)s)"
    )
    parser.add_argument(
        "-s", "--batch_size", type=int, default=DEFAULT_BATCH_SIZE, help="Positions per transaction (default: %(default)s)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Evaluate and sign but never broadcast")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> Dict[str, object]:
    overrides: Dict[str, object] = {
        "network": args.network,
        "delta_tolerance": args.delta_tolerance,
        "balance_tolerance": args.balance_tolerance,
        "time_tolerance": args.time_tolerance,
        "concurrency": args.concurrency,
        "batch_size": args.batch_size,
    }
    if args.dry_run:
        overrides["dry_run"] = True
    return overrides


def build_signer(config: ControllerConfig) -> Optional[TxSigner]:
    """Load the configured signer; a live run without one is refused."""
    if config.signer:
        return load_signer(config.signer, config)
    if not config.dry_run:
        raise ConfigError("no transaction signer configured; set CONTROLLER_SIGNER or pass --dry-run")
    return None


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)
    configure_structured_logging()

    args = parse_args(argv)
    try:
        config = ControllerConfig.from_env(**_overrides(args))
        signer = build_signer(config)
    except ConfigError as exc:
        LOG.error("invalid configuration: %s", exc)
        return 1

    try:
        asyncio.run(run_controller(config, signer=signer))
    except (ConfigError, FatalSetupError) as exc:
        LOG.error("controller run aborted: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
