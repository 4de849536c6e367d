#!/usr/bin/env python3
"""
PnL Synthesizer
===============

Combines a segment's entry/exit amounts with its earned fees into one
report row, valuing the non-WETH leg in WETH at the pool price.

FORMULA SOURCES:
────────────────
Uniswap V3 Whitepaper §6.1 — price from sqrtPriceX96
    P = token1 / token0 = (sqrtPriceX96 / 2^96)^2 = sqrtPriceX96^2 / 2^192

    token is token0:  weth = amount × sqrtP^2 / 2^192
    token is token1:  weth = amount × 2^192 / sqrtP^2

Integer math throughout (no floats): amounts stay exact to the wei.

Per segment:
    net_token_gain       = token_out − token_in
    net_weth_gain        = weth_out − weth_in
    approx_starting_weth = weth_in  + weth(token_in  @ opening price)
    approx_ending_weth   = weth_out + weth(token_out @ closing price)
    net_pnl_in_weth      = (ending − starting) + weth_fees + weth(token_fees @ closing price)
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from typing import Iterable, List, Tuple

from fee_analyzer.errors import ConfigError
from fee_analyzer.rpc_helpers import Q192
from fee_attribution import SegmentFees
from position_lifecycle import PositionSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentReport:
    """One output row; field order is the CSV column order."""

    token_id: int
    token_action_index: int
    action_taken: str
    lower_tick: int
    upper_tick: int
    opening_block: int
    token_amount_in: int
    weth_amount_in: int
    sqrt_price_x96_in: int
    tick_in: int
    liquidity_in: int
    closing_block: int
    token_amount_out: int
    weth_amount_out: int
    sqrt_price_x96_out: int
    tick_out: int
    token_fees_earned: int
    weth_fees_earned: int
    net_token_gain: int
    net_weth_gain: int
    approx_starting_weth: int
    approx_ending_weth: int
    net_pnl_in_weth: int

    @classmethod
    def columns(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    def as_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.columns()}


def weth_is_token0(token0: str, token1: str, weth_address: str) -> bool:
    """
    Which side of the pool is WETH.

    Raises:
        ConfigError: neither pool token is the configured WETH address.
    """
    weth = weth_address.lower()
    if token0.lower() == weth:
        return True
    if token1.lower() == weth:
        return False
    raise ConfigError(f"pool tokens {token0} / {token1} do not include WETH {weth_address}")


def token_to_weth(amount: int, sqrt_price_x96: int, weth_is_token0: bool) -> int:
    """Value an amount of the non-WETH token in WETH at sqrtPriceX96."""
    if amount == 0:
        return 0
    if weth_is_token0:
        # token is token1 → divide by P
        return amount * Q192 // (sqrt_price_x96 * sqrt_price_x96)
    return amount * sqrt_price_x96 * sqrt_price_x96 // Q192


class PnLSynthesizer:
    def __init__(self, weth_is_token0: bool, workers: int = 1):
        self.weth_is_token0 = weth_is_token0
        self.workers = workers

    def split(self, amount0: int, amount1: int) -> Tuple[int, int]:
        """(amount0, amount1) → (token, weth)."""
        if self.weth_is_token0:
            return amount1, amount0
        return amount0, amount1

    def synthesize(self, segment: PositionSegment, fees: SegmentFees) -> SegmentReport:
        if segment.closing is None:
            raise ValueError(f"segment {segment.token_id}/{segment.segment_index} is still open")
        opening, closing = segment.opening, segment.closing

        token_in, weth_in = self.split(opening.amount0, opening.amount1)
        token_out, weth_out = self.split(closing.amount0, closing.amount1)
        token_fees, weth_fees = self.split(fees.fees0, fees.fees1)

        starting = weth_in + token_to_weth(token_in, opening.sqrt_price_x96, self.weth_is_token0)
        ending = weth_out + token_to_weth(token_out, closing.sqrt_price_x96, self.weth_is_token0)
        fee_value = weth_fees + token_to_weth(token_fees, closing.sqrt_price_x96, self.weth_is_token0)

        return SegmentReport(
            token_id=segment.token_id,
            token_action_index=segment.segment_index,
            action_taken=str(segment.action),
            lower_tick=segment.tick_lower,
            upper_tick=segment.tick_upper,
            opening_block=opening.block,
            token_amount_in=token_in,
            weth_amount_in=weth_in,
            sqrt_price_x96_in=opening.sqrt_price_x96,
            tick_in=opening.tick,
            liquidity_in=segment.liquidity,
            closing_block=closing.block,
            token_amount_out=token_out,
            weth_amount_out=weth_out,
            sqrt_price_x96_out=closing.sqrt_price_x96,
            tick_out=closing.tick,
            token_fees_earned=token_fees,
            weth_fees_earned=weth_fees,
            net_token_gain=token_out - token_in,
            net_weth_gain=weth_out - weth_in,
            approx_starting_weth=starting,
            approx_ending_weth=ending,
            net_pnl_in_weth=ending - starting + fee_value,
        )

    def synthesize_all(self, pairs: Iterable[Tuple[PositionSegment, SegmentFees]]) -> List[SegmentReport]:
        """
        Scatter/gather over closed, independent segments. Output is ordered
        by (token_id, segment_index) regardless of worker count.
        """
        pairs = list(pairs)
        if self.workers > 1 and len(pairs) > 1:
            logger.debug("Synthesizing %d segment(s) on %d workers", len(pairs), self.workers)
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                rows = list(pool.map(lambda pair: self.synthesize(*pair), pairs))
        else:
            rows = [self.synthesize(seg, fees) for seg, fees in pairs]
        return sorted(rows, key=lambda r: (r.token_id, r.token_action_index))
