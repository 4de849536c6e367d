#!/usr/bin/env python3
"""
Pool Analyzer — Replay Driver
=============================

Drives one analysis run over a merged event sequence:

  1. Replay every event against one PoolSimulator (single-threaded)
  2. Feed Mint / Decrease to the LifecycleReconstructor
  3. Capture fee-growth-inside after every lifecycle boundary (SnapshotLog)
  4. Close out segments still open at the end of data
  5. Attribute fees per segment, then synthesize PnL rows

Each run owns fresh simulator, reconstructor and snapshot instances, so
replaying the same sequence twice yields identical state and rows.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from fee_analyzer.central_config import POLICY_ABORT, POLICY_SKIP, POSITION_ERROR_POLICIES
from fee_analyzer.errors import AnalysisCancelled, ConfigError, PositionHistoryError
from fee_analyzer.events import DecreaseLiquidity, Event, Initialize, Mint, PoolCreated, Swap
from fee_attribution import FeeAttributionCalculator
from pnl_synthesizer import PnLSynthesizer, SegmentReport, weth_is_token0
from pool_simulator import PoolSimulator, PoolState, SnapshotLog
from position_lifecycle import LifecycleReconstructor, PositionSegment

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    rows: List[SegmentReport]
    final_state: PoolState
    excluded_token_ids: List[int] = field(default_factory=list)
    events_replayed: int = 0
    skipped_swaps: int = 0

    @property
    def token_ids(self) -> List[int]:
        return sorted({row.token_id for row in self.rows})

    @property
    def total_token_fees(self) -> int:
        return sum(row.token_fees_earned for row in self.rows)

    @property
    def total_weth_fees(self) -> int:
        return sum(row.weth_fees_earned for row in self.rows)

    @property
    def total_pnl_in_weth(self) -> int:
        return sum(row.net_pnl_in_weth for row in self.rows)


class PoolAnalyzer:
    """
    Usage:
        analyzer = PoolAnalyzer(weth_address="0xC02a…")
        result = analyzer.run(merge_events(collections))
    """

    def __init__(
        self,
        weth_address: Optional[str] = None,
        *,
        fee_tier: Optional[int] = None,
        weth_is_token0: Optional[bool] = None,
        tolerate_zero_liquidity: bool = False,
        position_error_policy: str = POLICY_ABORT,
        workers: int = 1,
    ):
        if position_error_policy not in POSITION_ERROR_POLICIES:
            raise ConfigError(f"unknown position error policy {position_error_policy!r}")
        self.weth_address = weth_address
        self.fee_tier = fee_tier
        self.weth_is_token0 = weth_is_token0
        self.tolerate_zero_liquidity = tolerate_zero_liquidity
        self.position_error_policy = position_error_policy
        self.workers = workers
        self._reset()

    @classmethod
    def from_config(cls, config) -> "PoolAnalyzer":
        return cls(
            config.weth_address,
            tolerate_zero_liquidity=config.tolerate_zero_liquidity,
            position_error_policy=config.position_error_policy,
            workers=config.workers,
        )

    def _reset(self) -> None:
        self.simulator = PoolSimulator(self.fee_tier, self.tolerate_zero_liquidity)
        self.lifecycle = LifecycleReconstructor()
        self.snapshots = SnapshotLog()
        self._pool_tokens: Optional[Tuple[str, str]] = None
        self._excluded: List[int] = []
        # liquidity of excluded token ids still live in the pool: token_id → (lower, upper, L)
        self._untracked: Dict[int, Tuple[int, int, int]] = {}

    # ── Run ──────────────────────────────────────────────────────────

    def run(self, events: Sequence[Event], cancel: Optional[threading.Event] = None) -> AnalysisResult:
        """
        Replay `events` (already merged) and build the report rows.

        Raises:
            AnalysisCancelled: `cancel` was set between two events.
            FeeAnalyzerError: any fatal input inconsistency.
        """
        self._reset()
        last = None
        for count, event in enumerate(events, 1):
            if cancel is not None and cancel.is_set():
                raise AnalysisCancelled(
                    f"cancelled after {count - 1} event(s)", block=event.block, log_index=event.log_index
                )
            self.snapshots.observe(event.block)
            self._apply(event)
            self.simulator.mark(event.block, event.log_index)
            last = event

        replayed = 0 if last is None else count
        logger.info("Replayed %d events", replayed)

        if last is not None:
            self._close_out(last.block, last.log_index)

        segments = self.lifecycle.segments()
        logger.info("Built %d segment(s) across %d position(s)", len(segments), len(self.lifecycle.token_ids))

        rows = []
        if segments:
            fees = FeeAttributionCalculator(self.snapshots).attribute_all(segments)
            synthesizer = PnLSynthesizer(self._weth_is_token0(), workers=self.workers)
            rows = synthesizer.synthesize_all(zip(segments, fees))

        return AnalysisResult(
            rows=rows,
            final_state=self.simulator.checkpoint(),
            excluded_token_ids=sorted(self._excluded),
            events_replayed=replayed,
            skipped_swaps=self.simulator.skipped_swaps,
        )

    # ── Dispatch ─────────────────────────────────────────────────────

    def _apply(self, event: Event) -> None:
        ctx = {"block": event.block, "log_index": event.log_index}
        sim = self.simulator

        if isinstance(event, PoolCreated):
            sim.apply_pool_created(event.token0, event.token1, event.fee_tier, event.tick_spacing)
            self._pool_tokens = (event.token0, event.token1)
        elif isinstance(event, Initialize):
            sim.apply_initialize(event.sqrt_price_x96, event.tick, **ctx)
        elif isinstance(event, Swap):
            sim.apply_swap(
                event.sqrt_price_x96_after, event.tick_after, event.liquidity,
                event.amount0, event.amount1, **ctx,
            )
        elif isinstance(event, Mint):
            self._apply_mint(event, ctx)
        elif isinstance(event, DecreaseLiquidity):
            self._apply_decrease(event, ctx)
        else:
            raise TypeError(f"unsupported event type {type(event).__name__}")

    def _apply_mint(self, event: Mint, ctx: dict) -> None:
        self.simulator.apply_mint(event.tick_lower, event.tick_upper, event.liquidity_delta,
                                  token_id=event.token_id, **ctx)
        if event.token_id in self._excluded:
            lower, upper, liquidity = self._untracked.get(event.token_id, (event.tick_lower, event.tick_upper, 0))
            self._untracked[event.token_id] = (lower, upper, liquidity + event.liquidity_delta)
            return
        state = self.simulator.state
        try:
            touched = self.lifecycle.apply_mint(event, state.tick, state.sqrt_price_x96)
        except PositionHistoryError as exc:
            self._exclude(event.token_id, exc)
            return
        self._capture(touched[-1], event)

    def _apply_decrease(self, event: DecreaseLiquidity, ctx: dict) -> None:
        if event.token_id in self._excluded:
            self._release_untracked(event)
            return
        try:
            current = self.lifecycle.check_decrease(event)
        except PositionHistoryError as exc:
            self._exclude(event.token_id, exc)
            self._release_untracked(event)
            return
        self.simulator.apply_decrease(current.tick_lower, current.tick_upper, event.liquidity_delta,
                                      token_id=event.token_id, **ctx)
        state = self.simulator.state
        touched = self.lifecycle.apply_decrease(event, state.tick, state.sqrt_price_x96)
        self._capture(touched[-1], event)

    def _capture(self, segment: PositionSegment, event: Event) -> None:
        self.snapshots.capture(self.simulator, event.block, event.log_index,
                               segment.tick_lower, segment.tick_upper)

    def _close_out(self, block: int, log_index: int) -> None:
        state = self.simulator.state
        for seg in self.lifecycle.close_out(block, log_index, state.tick, state.sqrt_price_x96):
            self.snapshots.capture(self.simulator, block, log_index, seg.tick_lower, seg.tick_upper)

    # ── Position error policy ────────────────────────────────────────

    def _exclude(self, token_id: int, exc: PositionHistoryError) -> None:
        if self.position_error_policy != POLICY_SKIP:
            raise exc
        logger.warning("Skipping token %d: %s", token_id, exc)
        current = self.lifecycle.open_segment(token_id)
        if current is not None:
            self._untracked[token_id] = (current.tick_lower, current.tick_upper, current.liquidity)
        self.lifecycle.discard(token_id)
        self._excluded.append(token_id)

    def _release_untracked(self, event: DecreaseLiquidity) -> None:
        """Remove an excluded position's liquidity from the pool, clamped to what it holds."""
        held = self._untracked.get(event.token_id)
        if held is None:
            return
        lower, upper, liquidity = held
        removed = min(liquidity, event.liquidity_delta)
        if removed:
            self.simulator.apply_decrease(lower, upper, removed, token_id=event.token_id,
                                          block=event.block, log_index=event.log_index)
        self._untracked[event.token_id] = (lower, upper, liquidity - removed)

    # ── Orientation ──────────────────────────────────────────────────

    def _weth_is_token0(self) -> bool:
        if self._pool_tokens is not None and self.weth_address:
            return weth_is_token0(*self._pool_tokens, self.weth_address)
        if self.weth_is_token0 is not None:
            return self.weth_is_token0
        raise ConfigError("cannot tell which pool token is WETH: need PoolCreated and a WETH address")
