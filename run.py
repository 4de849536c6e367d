#!/usr/bin/env python3
"""
V3 Fee Analyzer -- Position Fee Attribution for Uniswap V3
===========================================================

Replays one pool's event history and attributes swap fees to every
liquidity position, segment by segment.

Usage:
  python run.py analyze                                     Replay exports from .env, write report CSV
  python run.py analyze --output out.csv --policy skip      Override output path / error policy
  python run.py verify --pool <0x…> --block N [--ticks …]   Reconcile replayed ticks against a node
  python run.py info                                        Version + configuration overview

Sources:
  Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf
  Uniswap V3 Core       : https://github.com/Uniswap/v3-core
"""

import sys
import asyncio
import argparse
import logging
import os
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from fee_analyzer.central_config import PROJECT_VERSION
from fee_analyzer.commands import cmd_analyze, cmd_info, cmd_verify, load_config
from fee_analyzer.errors import FeeAnalyzerError


# ── CLI Parser ────────────────────────────────────────────────────────────


def _add_input_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--env-file", type=str, default=None, help="Path to a .env file (default: ./.env)")
    p.add_argument("--initialize-csv", type=str, default=None, help="Initialize events CSV")
    p.add_argument("--pool-created-csv", type=str, default=None, help="PoolCreated events CSV")
    p.add_argument("--mint-csv", type=str, default=None, help="Mint / IncreaseLiquidity events CSV")
    p.add_argument("--decrease-csv", type=str, default=None, help="DecreaseLiquidity events CSV")
    p.add_argument("--swap-csv", type=str, default=None, help="Swap events CSV")
    p.add_argument("--weth", type=str, default=None, help="WETH token address (0x…)")
    p.add_argument(
        "--tolerate-zero-liquidity",
        action="store_true",
        default=None,
        help="Skip fee growth for swaps with no active liquidity instead of failing",
    )
    p.add_argument(
        "--policy",
        choices=["abort", "skip"],
        default=None,
        help="Inconsistent position history: abort the run or skip the token id (default: abort)",
    )
    p.add_argument("--workers", type=int, default=None, help="Worker threads for PnL synthesis (default: 1)")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="v3-fee-analyzer",
        description=f"V3 Fee Analyzer v{PROJECT_VERSION} — Position Fee Attribution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py analyze                                      Use paths from .env
  python run.py analyze --segments                           Print every segment
  python run.py analyze --policy skip --workers 4            Skip broken positions, 4 PnL workers
  python run.py verify --pool 0x… --block 19000000           Reconcile all replayed ticks
  python run.py info                                         Configuration overview

Environment (.env):
  INITIALIZE_CSV_FILE_PATH, POOL_CREATED_CSV_FILE_PATH, MINT_CSV_FILE_PATH,
  DECREASE_CSV_FILE_PATH, SWAP_CSV_FILE_PATH, WETH_ADDRESS,
  OUTPUT_CSV_FILE_PATH, HTTP_URL, TOLERATE_ZERO_LIQUIDITY,
  POSITION_ERROR_POLICY, WORKERS, LOG_LEVEL
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"V3 Fee Analyzer v{PROJECT_VERSION}"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level: debug, info, warning, error (default: $LOG_LEVEL or info)",
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    analyze_p = sub.add_parser("analyze", help="Replay events and write the fee report CSV")
    _add_input_args(analyze_p)
    analyze_p.add_argument("--output", type=str, default=None, help="Report CSV path")
    analyze_p.add_argument("--segments", action="store_true", help="Print every segment")

    verify_p = sub.add_parser("verify", help="Reconcile replayed tick state against a node")
    _add_input_args(verify_p)
    verify_p.add_argument("--pool", type=str, required=True, help="Pool contract address (0x…)")
    verify_p.add_argument("--block", type=int, required=True, help="Block height to compare at")
    verify_p.add_argument("--ticks", type=int, nargs="*", default=None, help="Ticks to check (default: all touched)")
    verify_p.add_argument("--rpc-url", type=str, default=None, help="JSON-RPC endpoint (default: $HTTP_URL)")

    sub.add_parser("info", help="Version & configuration overview")

    return parser


def _overrides(args: argparse.Namespace) -> dict:
    """CLI flags → environment-variable overrides."""
    return {
        "INITIALIZE_CSV_FILE_PATH": args.initialize_csv,
        "POOL_CREATED_CSV_FILE_PATH": args.pool_created_csv,
        "MINT_CSV_FILE_PATH": args.mint_csv,
        "DECREASE_CSV_FILE_PATH": args.decrease_csv,
        "SWAP_CSV_FILE_PATH": args.swap_csv,
        "WETH_ADDRESS": args.weth,
        "OUTPUT_CSV_FILE_PATH": getattr(args, "output", None),
        "HTTP_URL": getattr(args, "rpc_url", None),
        "TOLERATE_ZERO_LIQUIDITY": args.tolerate_zero_liquidity,
        "POSITION_ERROR_POLICY": args.policy,
        "WORKERS": args.workers,
    }


def _configure_logging(level_name) -> None:
    level_name = (level_name or os.environ.get("LOG_LEVEL") or "info").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "info":
        cmd_info()
        return 0

    try:
        config = load_config(_overrides(args), dotenv_path=args.env_file)
        if args.command == "analyze":
            asyncio.run(cmd_analyze(config, show_segments=args.segments))
            return 0
        if args.command == "verify":
            ok = asyncio.run(cmd_verify(config, args.pool, args.block, args.ticks))
            return 0 if ok else 1
    except FeeAnalyzerError as exc:
        print(f"\n❌ {type(exc).__name__}: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        return 130

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
