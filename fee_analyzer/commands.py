"""
V3 Fee Analyzer — Command Implementations
=========================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher. Each public function corresponds to a
subcommand (analyze, verify, info).
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import threading

from dotenv import load_dotenv

from fee_analyzer.central_config import (
    ENV_PATHS,
    PROJECT_NAME,
    PROJECT_VERSION,
    AnalyzerConfig,
)
from fee_analyzer.errors import ConfigError

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────


def load_config(overrides: dict | None = None, dotenv_path: str | None = None) -> AnalyzerConfig:
    """Environment (+ .env) with command-line overrides applied on top."""
    return AnalyzerConfig.from_env(dotenv_path=dotenv_path, overrides=overrides)


async def _load_and_merge(config: AnalyzerConfig):
    from fee_analyzer.csv_loader import load_event_collections
    from fee_analyzer.merger import merge_events

    print("\n📥 Loading event exports...")
    collections = await load_event_collections(config.csv_paths)
    print(f"   {len(collections):,} rows read")
    events = merge_events(collections)
    print(f"   {len(events):,} events after merge")
    return events


async def _replay(config: AnalyzerConfig, events):
    """Replay off the event loop; cancelling the task stops the replay between events."""
    from pool_analyzer import PoolAnalyzer

    analyzer = PoolAnalyzer.from_config(config)
    cancel = threading.Event()
    print("🔁 Replaying pool history...")
    try:
        result = await asyncio.to_thread(analyzer.run, events, cancel)
    except asyncio.CancelledError:
        cancel.set()
        raise
    return analyzer, result


# ── Commands ─────────────────────────────────────────────────────────────


async def cmd_analyze(config: AnalyzerConfig, show_segments: bool = False):
    """Load, merge, replay, write the report CSV and print a summary."""
    from report_writer import print_summary, write_report_csv

    events = await _load_and_merge(config)
    _, result = await _replay(config, events)

    path = write_report_csv(result.rows, config.output_csv)
    print_summary(result, show_segments=show_segments)
    print(f"\n✅ Report written: {path} ({len(result.rows)} rows)")
    return result


async def cmd_verify(config: AnalyzerConfig, pool: str, block: int, ticks: list[int] | None = None) -> bool:
    """Replay up to `block`, then reconcile per-tick fee growth against a node."""
    from fee_analyzer.chain_oracle import ChainStateOracle, reconcile_ticks

    if not re.fullmatch(r"0x[0-9a-fA-F]{40}", pool or ""):
        raise ConfigError("pool must be a 42-character 0x address")
    if not config.rpc_url:
        raise ConfigError("HTTP_URL (or --rpc-url) is required for verify")

    events = [e for e in await _load_and_merge(config) if e.block <= block]
    analyzer, _ = await _replay(config, events)
    simulator = analyzer.simulator

    oracle = ChainStateOracle(config.rpc_url, pool)
    targets = ticks if ticks else sorted(simulator.state.ticks)
    print(f"\n🔎 Reconciling {len(targets)} tick(s) at block {block}...")
    mismatches = await reconcile_ticks(simulator, oracle, targets, block)

    sqrt_price, tick = await oracle.get_slot0(block)
    state = simulator.state
    slot0_ok = (sqrt_price, tick) == (state.sqrt_price_x96, state.tick)
    print(f"  {'✅' if slot0_ok else '❌'} slot0    : chain tick {tick}, replayed tick {state.tick}")

    chain_globals = await oracle.get_fee_growth_global(block)
    replayed_globals = (state.fee_growth_global0_x128, state.fee_growth_global1_x128)
    globals_ok = chain_globals == replayed_globals
    print(f"  {'✅' if globals_ok else '❌'} Globals  : chain {chain_globals}, replayed {replayed_globals}")

    if not mismatches:
        print(f"  ✅ Ticks    : all {len(targets)} match")
    for m in mismatches:
        print(f"  ❌ {m}")
    return slot0_ok and globals_ok and not mismatches


def cmd_info() -> None:
    """Display version and configuration overview."""
    load_dotenv()
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : Uniswap V3 (single pool, canonical position manager)")
    print("🧮 Engine     : exact fee-growth replay (X128 accumulators, mod 2^256)")
    print("📄 Output     : one CSV row per position lifecycle segment")
    print()
    print("⚙️  Configuration (environment / .env):")
    for name in (*ENV_PATHS, "WETH_ADDRESS", "OUTPUT_CSV_FILE_PATH", "HTTP_URL",
                 "TOLERATE_ZERO_LIQUIDITY", "POSITION_ERROR_POLICY", "WORKERS"):
        value = os.environ.get(name)
        if value and name == "HTTP_URL":
            value = value.split("?")[0][:40] + "…"
        print(f"   {name:<28} {value if value else '— not set'}")
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   pool_simulator.py     — Pool fee-growth simulator (TickMath, Tick.cross)")
    print("   position_lifecycle.py — Per-token lifecycle segments")
    print("   fee_attribution.py    — Fee-growth-inside deltas → owed tokens")
    print("   pnl_synthesizer.py    — WETH-denominated PnL rows")
    print("   pool_analyzer.py      — Replay driver")
    print("   report_writer.py      — CSV report + console summary")
    print("   fee_analyzer/         — Config, events, merger, CSV loader, RPC oracle")
    print()
    print("🔗 Quick Start:")
    print("   python run.py analyze")
    print("   python run.py analyze --policy skip --workers 4 --segments")
    print("   python run.py verify --pool 0x… --block 19000000 --ticks -600 600")
    print()
    print("📚 References:")
    print("   Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf")
    print("   Uniswap V3 Core       : https://github.com/Uniswap/v3-core")
