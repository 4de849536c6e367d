#!/usr/bin/env python3
"""
Position Lifecycle Reconstructor
================================

Turns the merged Mint / DecreaseLiquidity stream into per-token ordered
lifecycle segments. A segment's liquidity never changes: every liquidity
change on a token id closes the current segment and opens the next one.

  Mint, no open segment           → Open
  Mint, open segment              → IncreaseLiquidity   (summed liquidity)
  Decrease, liquidity remains     → DecreaseLiquidity   (reduced liquidity)
  Decrease, liquidity reaches 0   → Close               (terminal, liquidity 0)

Valuation at a boundary (price of the boundary event, i.e. entry price is
always the price at the most recent lifecycle boundary):

  closed by increase:   amounts the old liquidity would withdraw at the price
  closed by decrease:   withdrawn amounts + what the remaining liquidity
                        would withdraw at the price
  next segment opens:   closing amounts ± the event's amounts
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from fee_analyzer.errors import (
    LiquidityUnderflowError,
    PositionHistoryError,
    UnknownPositionError,
)
from fee_analyzer.events import DecreaseLiquidity, Mint
from pool_simulator import amounts_for_liquidity

logger = logging.getLogger(__name__)


class PositionAction(Enum):
    OPEN = "Open"
    INCREASE = "IncreaseLiquidity"
    DECREASE = "DecreaseLiquidity"
    CLOSE = "Close"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Boundary:
    """Where and at what price a segment opened or closed."""

    block: int
    log_index: int
    tick: int
    sqrt_price_x96: int
    amount0: int
    amount1: int

    @property
    def amounts(self) -> Tuple[int, int]:
        return (self.amount0, self.amount1)


@dataclass
class PositionSegment:
    token_id: int
    segment_index: int
    action: PositionAction
    tick_lower: int
    tick_upper: int
    liquidity: int
    opening: Boundary
    closing: Optional[Boundary] = None

    @property
    def is_closed(self) -> bool:
        return self.closing is not None

    @property
    def opening_block(self) -> int:
        return self.opening.block

    @property
    def closing_block(self) -> Optional[int]:
        return self.closing.block if self.closing else None

    @property
    def tick_range(self) -> Tuple[int, int]:
        return (self.tick_lower, self.tick_upper)


class LifecycleReconstructor:
    """
    Stateful reconstructor driven by the same merged sequence as the
    simulator. Callers pass the pool's tick and sqrt price at each event so
    boundaries carry the price they were valued at.
    """

    def __init__(self):
        self._segments: Dict[int, List[PositionSegment]] = {}
        self._open: Dict[int, PositionSegment] = {}

    # ── Queries ──────────────────────────────────────────────────────

    def open_segment(self, token_id: int) -> Optional[PositionSegment]:
        return self._open.get(token_id)

    def segments(self, token_id: Optional[int] = None) -> List[PositionSegment]:
        """Segments for one token id, or all of them ordered by (token_id, segment_index)."""
        if token_id is not None:
            return list(self._segments.get(token_id, []))
        return [seg for tid in sorted(self._segments) for seg in self._segments[tid]]

    def open_segments(self) -> List[PositionSegment]:
        return [self._open[tid] for tid in sorted(self._open)]

    @property
    def token_ids(self) -> List[int]:
        return sorted(self._segments)

    # ── Events ───────────────────────────────────────────────────────

    def apply_mint(self, event: Mint, tick: int, sqrt_price_x96: int) -> List[PositionSegment]:
        """
        Record a Mint. Returns the segments touched (closed and/or opened).

        Raises:
            PositionHistoryError: an increase names a different tick range.
        """
        current = self._open.get(event.token_id)
        if current is None:
            seg = self._start(
                event.token_id, PositionAction.OPEN, event.tick_lower, event.tick_upper,
                event.liquidity_delta,
                Boundary(event.block, event.log_index, tick, sqrt_price_x96, event.amount0, event.amount1),
            )
            logger.debug("token %d: Open [%d, %d) L=%d", event.token_id,
                         event.tick_lower, event.tick_upper, event.liquidity_delta)
            return [seg]

        if (event.tick_lower, event.tick_upper) != current.tick_range:
            raise PositionHistoryError(
                f"increase on range [{event.tick_lower}, {event.tick_upper}) but the position "
                f"spans [{current.tick_lower}, {current.tick_upper})",
                token_id=event.token_id, block=event.block, log_index=event.log_index,
            )

        held0, held1 = amounts_for_liquidity(
            sqrt_price_x96, current.tick_lower, current.tick_upper, current.liquidity
        )
        closing = Boundary(event.block, event.log_index, tick, sqrt_price_x96, held0, held1)
        self._close(current, closing)

        seg = self._start(
            event.token_id, PositionAction.INCREASE, current.tick_lower, current.tick_upper,
            current.liquidity + event.liquidity_delta,
            Boundary(event.block, event.log_index, tick, sqrt_price_x96,
                     held0 + event.amount0, held1 + event.amount1),
        )
        logger.debug("token %d: IncreaseLiquidity L=%d", event.token_id, seg.liquidity)
        return [current, seg]

    def check_decrease(self, event: DecreaseLiquidity) -> PositionSegment:
        """
        Validate a decrease against the open segment without mutating anything.

        Raises:
            UnknownPositionError: no open segment for the token id.
            LiquidityUnderflowError: decrease exceeds the open liquidity.
        """
        current = self._open.get(event.token_id)
        if current is None:
            raise UnknownPositionError(
                "decrease for a token id with no open position",
                token_id=event.token_id, block=event.block, log_index=event.log_index,
            )
        if event.liquidity_delta > current.liquidity:
            raise LiquidityUnderflowError(
                f"decrease of {event.liquidity_delta} exceeds open liquidity {current.liquidity}",
                token_id=event.token_id, block=event.block, log_index=event.log_index,
            )
        return current

    def apply_decrease(self, event: DecreaseLiquidity, tick: int, sqrt_price_x96: int) -> List[PositionSegment]:
        """Record a DecreaseLiquidity. Returns the segments touched."""
        current = self.check_decrease(event)
        remaining = current.liquidity - event.liquidity_delta

        if remaining == 0:
            self._close(current, Boundary(event.block, event.log_index, tick, sqrt_price_x96,
                                          event.amount0, event.amount1))
            at = Boundary(event.block, event.log_index, tick, sqrt_price_x96, 0, 0)
            close = self._start(event.token_id, PositionAction.CLOSE,
                                current.tick_lower, current.tick_upper, 0, at)
            self._close(close, at)
            logger.debug("token %d: Close", event.token_id)
            return [current, close]

        left0, left1 = amounts_for_liquidity(
            sqrt_price_x96, current.tick_lower, current.tick_upper, remaining
        )
        self._close(current, Boundary(event.block, event.log_index, tick, sqrt_price_x96,
                                      event.amount0 + left0, event.amount1 + left1))
        seg = self._start(
            event.token_id, PositionAction.DECREASE, current.tick_lower, current.tick_upper, remaining,
            Boundary(event.block, event.log_index, tick, sqrt_price_x96, left0, left1),
        )
        logger.debug("token %d: DecreaseLiquidity L=%d", event.token_id, remaining)
        return [current, seg]

    def close_out(self, block: int, log_index: int, tick: int, sqrt_price_x96: int) -> List[PositionSegment]:
        """Close every still-open segment at the final replayed state."""
        closed = []
        for seg in self.open_segments():
            amount0, amount1 = amounts_for_liquidity(sqrt_price_x96, seg.tick_lower, seg.tick_upper, seg.liquidity)
            self._close(seg, Boundary(block, log_index, tick, sqrt_price_x96, amount0, amount1))
            closed.append(seg)
        if closed:
            logger.info("Closed %d position(s) still open at block %d", len(closed), block)
        return closed

    def discard(self, token_id: int) -> List[PositionSegment]:
        """Forget every segment of a token id (skip policy). Returns what was dropped."""
        self._open.pop(token_id, None)
        return self._segments.pop(token_id, [])

    # ── Internals ────────────────────────────────────────────────────

    def _start(self, token_id: int, action: PositionAction, tick_lower: int, tick_upper: int,
               liquidity: int, opening: Boundary) -> PositionSegment:
        history = self._segments.setdefault(token_id, [])
        seg = PositionSegment(
            token_id=token_id,
            segment_index=len(history) + 1,
            action=action,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            liquidity=liquidity,
            opening=opening,
        )
        history.append(seg)
        if liquidity > 0:
            self._open[token_id] = seg
        return seg

    def _close(self, seg: PositionSegment, closing: Boundary) -> None:
        seg.closing = closing
        if self._open.get(seg.token_id) is seg:
            del self._open[seg.token_id]
