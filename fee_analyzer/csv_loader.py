"""
CSV Loader — data-provider exports → typed events
=================================================

Reads the five event exports (Dune-style column names) with pandas and
converts each row into a validated event. Every cell is read as text:
uint160 prices and uint128 liquidities do not survive a float64 round trip.

  initialize     evt_block_number, evt_index, sqrtPriceX96, tick
  pool_created   evt_block_number, evt_index, token0, token1, fee, tickSpacing
  mint           evt_block_number, evt_index, tokenId, tickLower, tickUpper,
                 liquidity, amount0, amount1
  decrease       evt_block_number, evt_index, tokenId, liquidity, amount0,
                 amount1 [, amount0Min, amount1Min]
  swap           evt_block_number, evt_index, sqrtPriceX96, tick, liquidity,
                 amount0, amount1

evt_tx_hash is read when present.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import pandas as pd

from fee_analyzer.errors import SchemaError
from fee_analyzer.events import DecreaseLiquidity, Initialize, Mint, PoolCreated, Swap
from fee_analyzer.merger import EventCollections

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

BLOCK_COLUMN = "evt_block_number"
INDEX_COLUMN = "evt_index"
TX_HASH_COLUMN = "evt_tx_hash"


# ── Column Schemas ──────────────────────────────────────────────────────
# (csv column, event field, parser); parser None → keep as text

_INT = int
_SCHEMAS: Dict[str, Tuple[type, List[Tuple[str, str, Optional[Callable]]], List[Tuple[str, str, Callable]]]] = {
    "initialize": (
        Initialize,
        [("sqrtPriceX96", "sqrt_price_x96", _INT), ("tick", "tick", _INT)],
        [],
    ),
    "pool_created": (
        PoolCreated,
        [("token0", "token0", None), ("token1", "token1", None),
         ("fee", "fee_tier", _INT), ("tickSpacing", "tick_spacing", _INT)],
        [],
    ),
    "mint": (
        Mint,
        [("tokenId", "token_id", _INT), ("tickLower", "tick_lower", _INT),
         ("tickUpper", "tick_upper", _INT), ("liquidity", "liquidity_delta", _INT),
         ("amount0", "amount0", _INT), ("amount1", "amount1", _INT)],
        [],
    ),
    "decrease": (
        DecreaseLiquidity,
        [("tokenId", "token_id", _INT), ("liquidity", "liquidity_delta", _INT),
         ("amount0", "amount0", _INT), ("amount1", "amount1", _INT)],
        [("amount0Min", "amount0_min", _INT), ("amount1Min", "amount1_min", _INT)],
    ),
    "swap": (
        Swap,
        [("sqrtPriceX96", "sqrt_price_x96_after", _INT), ("tick", "tick_after", _INT),
         ("liquidity", "liquidity", _INT), ("amount0", "amount0", _INT),
         ("amount1", "amount1", _INT)],
        [],
    ),
}

COLLECTION_NAMES = tuple(_SCHEMAS)


def required_columns(kind: str) -> List[str]:
    _, required, _ = _SCHEMAS[kind]
    return [BLOCK_COLUMN, INDEX_COLUMN] + [col for col, _, _ in required]


def _parse_cell(raw: str, parser: Optional[Callable], path: PathLike, column: str, row: int):
    text = raw.strip()
    if parser is None:
        return text
    try:
        return parser(text)
    except ValueError:
        raise SchemaError(f"{path}: column '{column}' row {row}: not an integer: {raw!r}") from None


def load_events(path: PathLike, kind: str) -> list:
    """
    Read one export and return its typed events, in file order.

    Raises:
        SchemaError: unreadable or empty file, unknown kind, missing column,
            empty required cell or bad integer.
    """
    if kind not in _SCHEMAS:
        raise SchemaError(f"unknown event collection {kind!r}")
    event_type, required, optional = _SCHEMAS[kind]

    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, FileNotFoundError) as exc:
        raise SchemaError(f"{path}: {exc}") from None
    missing = [col for col in required_columns(kind) if col not in frame.columns]
    if missing:
        raise SchemaError(f"{path}: missing column(s): {', '.join(missing)}")

    has_tx = TX_HASH_COLUMN in frame.columns
    events = []
    # row numbers are 1-based data rows (header excluded)
    for row, record in enumerate(frame.to_dict("records"), 1):
        values = {}
        for column, name, parser in [(BLOCK_COLUMN, "block", _INT), (INDEX_COLUMN, "log_index", _INT)] + required:
            raw = record[column]
            if raw is None or not str(raw).strip():
                raise SchemaError(f"{path}: column '{column}' row {row}: empty value")
            values[name] = _parse_cell(str(raw), parser, path, column, row)
        for column, name, parser in optional:
            raw = record.get(column, "")
            if raw is not None and str(raw).strip():
                values[name] = _parse_cell(str(raw), parser, path, column, row)
        if event_type in (Mint, DecreaseLiquidity):
            values["tx_hash"] = (record[TX_HASH_COLUMN].strip() or None) if has_tx else None
        events.append(event_type(**values))

    logger.info("Loaded %d %s event(s) from %s", len(events), kind, path)
    return events


async def load_event_collections(paths: Mapping[str, PathLike]) -> EventCollections:
    """
    Parse every export concurrently (one worker thread per file) and bundle
    the results for the merger.

    Args:
        paths: collection name → CSV path, for all of COLLECTION_NAMES.
    """
    missing = [name for name in COLLECTION_NAMES if name not in paths]
    if missing:
        raise SchemaError(f"no input path for: {', '.join(missing)}")

    results = await asyncio.gather(
        *(asyncio.to_thread(load_events, paths[name], name) for name in COLLECTION_NAMES)
    )
    loaded = dict(zip(COLLECTION_NAMES, results))
    return EventCollections(
        initialize=loaded["initialize"],
        pool_created=loaded["pool_created"],
        mints=loaded["mint"],
        decreases=loaded["decrease"],
        swaps=loaded["swap"],
    )
