#!/usr/bin/env python3
"""
Fee Attribution Calculator
==========================

Converts fee-growth-inside deltas between a segment's opening and closing
boundaries into owed token amounts (Position.update in UniswapV3Pool):

    tokensOwed = (feeGrowthInside_close − feeGrowthInside_open) × L / 2^128

The subtraction wraps modulo 2^256; a segment whose range saw the
accumulator overflow still yields the correct non-negative delta.
"""

from dataclasses import dataclass
from typing import Iterable, List

from fee_analyzer.errors import FeeAnalyzerError
from fee_analyzer.rpc_helpers import Q128
from pool_simulator import SnapshotLog, wrap256
from position_lifecycle import PositionSegment


@dataclass(frozen=True)
class SegmentFees:
    token_id: int
    segment_index: int
    fees0: int
    fees1: int


def fees_owed(inside_open: int, inside_close: int, liquidity: int) -> int:
    """Fees for `liquidity` given two fee-growth-inside readings (X128)."""
    return wrap256(inside_close - inside_open) * liquidity // Q128


class FeeAttributionCalculator:
    """Reads boundary snapshots from a SnapshotLog and prices each segment's fees."""

    def __init__(self, snapshots: SnapshotLog):
        self.snapshots = snapshots

    def attribute(self, segment: PositionSegment) -> SegmentFees:
        """
        Raises:
            FeeAnalyzerError: segment was never closed.
            MissingSnapshotError: a boundary block was never replayed.
        """
        if segment.closing is None:
            raise FeeAnalyzerError(
                "cannot attribute fees to an open segment",
                token_id=segment.token_id, block=segment.opening.block,
            )
        opened = self.snapshots.lookup(
            segment.opening.block, segment.tick_lower, segment.tick_upper,
            log_index=segment.opening.log_index, token_id=segment.token_id,
        )
        closed = self.snapshots.lookup(
            segment.closing.block, segment.tick_lower, segment.tick_upper,
            log_index=segment.closing.log_index, token_id=segment.token_id,
        )
        return SegmentFees(
            token_id=segment.token_id,
            segment_index=segment.segment_index,
            fees0=fees_owed(opened.inside0_x128, closed.inside0_x128, segment.liquidity),
            fees1=fees_owed(opened.inside1_x128, closed.inside1_x128, segment.liquidity),
        )

    def attribute_all(self, segments: Iterable[PositionSegment]) -> List[SegmentFees]:
        return [self.attribute(seg) for seg in segments]
