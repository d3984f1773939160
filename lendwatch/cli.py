"""Command-line interface for lendwatch."""
from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import asdict

from .config import load_config
from .logging_setup import configure_logging
from .models import LiquidationState
from .services import Orchestrator


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="lendwatch",
        description="Position monitoring and liquidation orchestration",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run scheduler and workers until interrupted")
    sub.add_parser("check", help="Single health-factor pass, print the summary")
    sub.add_parser("stats", help="Print platform statistics")

    liquidate_parser = sub.add_parser("liquidate", help="Attempt one liquidation")
    liquidate_parser.add_argument("position_id", help="Position id")

    repay_parser = sub.add_parser("repay", help="Record repayment of a position")
    repay_parser.add_argument("position_id", help="Position id")
    repay_parser.add_argument(
        "--tx-hash", default="", help="Repayment transaction hash"
    )

    clear_parser = sub.add_parser(
        "clear-failure", help="Re-enable liquidation after a terminal failure"
    )
    clear_parser.add_argument("position_id", help="Position id")

    return parser


def _print_fields(title: str, data: dict) -> None:
    print(title)
    for key, value in data.items():
        if isinstance(value, float):
            value = f"{value:,.4f}"
        elif hasattr(value, "value"):
            value = value.value
        print(f"  {key}: {value}")


async def _run(args: argparse.Namespace) -> int:
    """Execute the selected command; returns the process exit code."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    orchestrator = Orchestrator(config)

    if args.command == "run":
        await orchestrator.run_forever()
        return 0

    await orchestrator.initialize()
    try:
        if args.command == "check":
            await orchestrator.price_updater.run()
            summary = await orchestrator.health.run()
            _print_fields("Health check", asdict(summary))
            return 0
        if args.command == "stats":
            stats = await orchestrator.positions.platform_stats()
            _print_fields("Platform statistics", asdict(stats))
            return 0
        if args.command == "liquidate":
            if orchestrator.executor is None:
                print("Liquidation is disabled or no chain is configured", file=sys.stderr)
                return 1
            await orchestrator.price_updater.run()
            outcome = await orchestrator.executor.execute(args.position_id)
            _print_fields("Liquidation", asdict(outcome))
            return 1 if outcome.state is LiquidationState.FAILED_TERMINAL else 0
        if args.command == "repay":
            result = await orchestrator.positions.repay(args.position_id, args.tx_hash)
            _print_fields("Repayment", asdict(result))
            return 0 if result.success else 1
        if args.command == "clear-failure":
            position = await orchestrator.positions.clear_liquidation_failure(
                args.position_id
            )
            _print_fields(
                "Position",
                {"id": position.id, "liquidation_tx_hash": position.liquidation_tx_hash},
            )
            return 0
    finally:
        if orchestrator.chain is not None:
            await orchestrator.chain.close()
        await orchestrator.store.close()

    build_parser().print_help()
    return 1


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))
