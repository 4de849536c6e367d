#!/usr/bin/env python3
"""
Report Writer — CSV output and console summaries
================================================

One CSV row per lifecycle segment. Values are written as strings: token
amounts and X96 prices exceed float precision, so nothing passes through
numeric dtypes on the way out.
"""

from pathlib import Path
from typing import Iterable, List, Union

import pandas as pd

from pnl_synthesizer import SegmentReport

REPORT_COLUMNS: List[str] = SegmentReport.columns()

_ACTION_ICONS = {
    "Open": "🟢",
    "IncreaseLiquidity": "➕",
    "DecreaseLiquidity": "➖",
    "Close": "⚪",
}


def rows_to_frame(rows: Iterable[SegmentReport]) -> pd.DataFrame:
    """Report rows as an all-string DataFrame in column order."""
    records = [{k: str(v) for k, v in row.as_dict().items()} for row in rows]
    return pd.DataFrame.from_records(records, columns=REPORT_COLUMNS).astype(str)


def write_report_csv(rows: Iterable[SegmentReport], path: Union[str, Path]) -> Path:
    """Write the report, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    rows_to_frame(rows).to_csv(path, index=False)
    return path


def _fmt_wei(value: int, decimals: int = 18) -> str:
    """Wei → human-readable units (display only)."""
    sign = "-" if value < 0 else ""
    whole, frac = divmod(abs(value), 10 ** decimals)
    return f"{sign}{whole:,}.{str(frac).zfill(decimals)[:6]}"


def format_segment(row: SegmentReport) -> str:
    """Tree-style console view of one segment."""
    icon = _ACTION_ICONS.get(row.action_taken, "•")
    lines = [
        f"  {icon} Position #{row.token_id} · #{row.token_action_index} {row.action_taken}",
        f"     ├─ Range     : [{row.lower_tick}, {row.upper_tick})  L={row.liquidity_in:,}",
        f"     ├─ Blocks    : {row.opening_block} → {row.closing_block}  (tick {row.tick_in} → {row.tick_out})",
        f"     ├─ In        : token {_fmt_wei(row.token_amount_in)} | WETH {_fmt_wei(row.weth_amount_in)}",
        f"     ├─ Out       : token {_fmt_wei(row.token_amount_out)} | WETH {_fmt_wei(row.weth_amount_out)}",
        f"     ├─ Fees      : token {_fmt_wei(row.token_fees_earned)} | WETH {_fmt_wei(row.weth_fees_earned)}",
        f"     └─ PnL (WETH): {_fmt_wei(row.net_pnl_in_weth)}",
    ]
    return "\n".join(lines)


def print_summary(result, show_segments: bool = False) -> None:
    """Print run totals (and optionally every segment)."""
    state = result.final_state
    print(f"\n{'=' * 60}")
    print("  📊 Fee Attribution Summary")
    print(f"{'=' * 60}")
    print(f"  🔁 Events replayed : {result.events_replayed:,}")
    print(f"  🧾 Positions       : {len(result.token_ids):,}")
    print(f"  📑 Segments        : {len(result.rows):,}")
    print(f"  🎯 Final tick      : {state.tick}")
    print(f"  💧 Final liquidity : {state.liquidity:,}")
    print(f"  💰 Token fees      : {_fmt_wei(result.total_token_fees)}")
    print(f"  💰 WETH fees       : {_fmt_wei(result.total_weth_fees)}")
    print(f"  📈 Net PnL (WETH)  : {_fmt_wei(result.total_pnl_in_weth)}")
    if result.skipped_swaps:
        print(f"  ⚠️  Zero-liquidity swaps skipped: {result.skipped_swaps}")
    if result.excluded_token_ids:
        ids = ", ".join(str(t) for t in result.excluded_token_ids)
        print(f"  ⚠️  Excluded positions: {ids}")
    if show_segments:
        print()
        for row in result.rows:
            print(format_segment(row))
    print(f"{'=' * 60}")
