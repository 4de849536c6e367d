"""
Test Suite — Lifecycle Segments, Fee Attribution and PnL
========================================================

Unit tests for the per-token segment state machine, the fee-growth →
owed-tokens conversion and the WETH-denominated PnL rows.

Run:  python -m pytest tests/test_lifecycle.py -v
"""

import pytest

from fee_analyzer.errors import (
    ConfigError,
    FeeAnalyzerError,
    LiquidityUnderflowError,
    PositionHistoryError,
    UnknownPositionError,
)
from fee_analyzer.events import DecreaseLiquidity, Mint
from fee_analyzer.rpc_helpers import Q96, Q128, Q256
from fee_attribution import FeeAttributionCalculator, SegmentFees, fees_owed
from pnl_synthesizer import PnLSynthesizer, SegmentReport, token_to_weth, weth_is_token0
from pool_simulator import PoolSimulator, SnapshotLog, amounts_for_liquidity
from position_lifecycle import (
    Boundary,
    LifecycleReconstructor,
    PositionAction,
    PositionSegment,
)

TOKEN = "0x1111111111111111111111111111111111111111"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


# ── Helpers ──────────────────────────────────────────────────────────────

def mint(block, token_id=1, lower=-600, upper=600, liquidity=1000, amount0=10, amount1=10, log_index=0):
    return Mint(block, log_index, None, token_id, lower, upper, liquidity, amount0, amount1)


def decrease(block, token_id=1, liquidity=1000, amount0=10, amount1=10, log_index=0):
    return DecreaseLiquidity(block, log_index, None, token_id, liquidity, amount0, amount1)


# ── Lifecycle ────────────────────────────────────────────────────────────

class TestLifecycleTransitions:
    def test_first_mint_opens(self):
        lc = LifecycleReconstructor()
        (seg,) = lc.apply_mint(mint(100), 0, Q96)
        assert seg.action is PositionAction.OPEN
        assert seg.segment_index == 1
        assert seg.liquidity == 1000
        assert seg.opening.amounts == (10, 10)
        assert not seg.is_closed
        assert lc.open_segment(1) is seg

    def test_second_mint_is_increase_with_summed_liquidity(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        closed, opened = lc.apply_mint(mint(105, liquidity=500, amount0=4, amount1=6), 0, Q96)

        held = amounts_for_liquidity(Q96, -600, 600, 1000)
        assert closed.closing.amounts == held
        assert closed.closing_block == 105
        assert opened.action is PositionAction.INCREASE
        assert opened.segment_index == 2
        assert opened.liquidity == 1500
        assert opened.opening.amounts == (held[0] + 4, held[1] + 6)

    def test_increase_on_other_range_rejected(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        with pytest.raises(PositionHistoryError, match="token_id=1"):
            lc.apply_mint(mint(101, lower=-60, upper=60), 0, Q96)

    def test_partial_decrease(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        closed, opened = lc.apply_decrease(decrease(110, liquidity=400, amount0=3, amount1=2), 0, Q96)

        left = amounts_for_liquidity(Q96, -600, 600, 600)
        assert closed.closing.amounts == (3 + left[0], 2 + left[1])
        assert opened.action is PositionAction.DECREASE
        assert opened.liquidity == 600
        assert opened.opening.amounts == left

    def test_full_decrease_emits_terminal_close(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        closed, close = lc.apply_decrease(decrease(120, amount0=9, amount1=11), 7, Q96)

        assert closed.closing.amounts == (9, 11)
        assert close.action is PositionAction.CLOSE
        assert close.liquidity == 0
        assert close.is_closed
        assert close.opening_block == close.closing_block == 120
        assert close.closing.tick == 7
        assert lc.open_segment(1) is None

    def test_mint_after_close_reopens(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        lc.apply_decrease(decrease(120), 0, Q96)
        (seg,) = lc.apply_mint(mint(130, lower=-60, upper=60), 0, Q96)
        assert seg.action is PositionAction.OPEN
        assert seg.segment_index == 3
        assert seg.tick_range == (-60, 60)

    def test_unknown_token_raises(self):
        lc = LifecycleReconstructor()
        with pytest.raises(UnknownPositionError, match="token_id=9"):
            lc.apply_decrease(decrease(100, token_id=9), 0, Q96)

    def test_decrease_after_close_is_unknown(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        lc.apply_decrease(decrease(120), 0, Q96)
        with pytest.raises(UnknownPositionError):
            lc.check_decrease(decrease(121))

    def test_underflow_raises_without_mutating(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100), 0, Q96)
        with pytest.raises(LiquidityUnderflowError):
            lc.apply_decrease(decrease(110, liquidity=1001), 0, Q96)
        assert lc.open_segment(1).liquidity == 1000
        assert len(lc.segments(1)) == 1


class TestSegmentCompleteness:
    def test_indices_contiguous_and_final_liquidity_consistent(self):
        lc = LifecycleReconstructor()
        history = [
            ("mint", mint(100, liquidity=1000)),
            ("mint", mint(101, liquidity=250)),
            ("decrease", decrease(105, liquidity=600)),
            ("mint", mint(107, liquidity=50)),
            ("decrease", decrease(109, liquidity=700)),
        ]
        signed = 0
        for kind, event in history:
            if kind == "mint":
                lc.apply_mint(event, 0, Q96)
                signed += event.liquidity_delta
            else:
                lc.apply_decrease(event, 0, Q96)
                signed -= event.liquidity_delta

        segs = lc.segments(1)
        assert [s.segment_index for s in segs] == list(range(1, len(segs) + 1))
        assert [str(s.action) for s in segs] == [
            "Open", "IncreaseLiquidity", "DecreaseLiquidity", "IncreaseLiquidity", "Close",
        ]
        for prev, nxt in zip(segs, segs[1:]):
            assert prev.closing_block == nxt.opening_block
        assert segs[-1].liquidity == signed == 0

    def test_close_out_closes_open_segments(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100, token_id=1), 0, Q96)
        lc.apply_mint(mint(101, token_id=2, lower=-60, upper=60, liquidity=77), 0, Q96)
        closed = lc.close_out(200, 3, 12, Q96)
        assert [s.token_id for s in closed] == [1, 2]
        assert all(s.closing_block == 200 for s in closed)
        assert closed[1].closing.amounts == amounts_for_liquidity(Q96, -60, 60, 77)
        assert lc.open_segments() == []

    def test_discard(self):
        lc = LifecycleReconstructor()
        lc.apply_mint(mint(100, token_id=5), 0, Q96)
        dropped = lc.discard(5)
        assert len(dropped) == 1
        assert lc.segments(5) == []
        assert lc.open_segment(5) is None


# ── Fee Attribution ──────────────────────────────────────────────────────

class TestFeesOwed:
    def test_simple_delta(self):
        assert fees_owed(0, 30 * Q128, 1) == 30

    def test_scales_with_liquidity(self):
        assert fees_owed(Q128, 3 * Q128, 500) == 1000

    def test_wraparound_delta(self):
        """inside overflowed between readings: delta still non-negative."""
        assert fees_owed(Q256 - 10 * Q128, 5 * Q128, 2) == 30

    def test_floor_rounding(self):
        assert fees_owed(0, 30 * Q128 // 1000, 1000) == 29


class TestFeeAttributionCalculator:
    def test_attributes_between_snapshots(self):
        sim = PoolSimulator()
        sim.apply_pool_created(TOKEN, WETH, 3000, 60)
        sim.apply_initialize(Q96, 0)
        sim.apply_mint(-600, 600, 1000)
        log = SnapshotLog()
        log.capture(sim, 100, 0, -600, 600)
        sim.state.fee_growth_global0_x128 = 7 * Q128
        log.capture(sim, 105, 2, -600, 600)

        seg = PositionSegment(1, 1, PositionAction.OPEN, -600, 600, 1000,
                              Boundary(100, 0, 0, Q96, 1, 1), Boundary(105, 2, 0, Q96, 1, 1))
        fees = FeeAttributionCalculator(log).attribute(seg)
        assert fees == SegmentFees(1, 1, 7000, 0)

    def test_open_segment_rejected(self):
        seg = PositionSegment(1, 1, PositionAction.OPEN, -600, 600, 1000, Boundary(100, 0, 0, Q96, 1, 1))
        with pytest.raises(FeeAnalyzerError, match="open segment"):
            FeeAttributionCalculator(SnapshotLog()).attribute(seg)


# ── PnL ──────────────────────────────────────────────────────────────────

class TestWethOrientation:
    def test_weth_token0(self):
        assert weth_is_token0(WETH, TOKEN, WETH) is True

    def test_weth_token1_case_insensitive(self):
        assert weth_is_token0(TOKEN, WETH.lower(), WETH.upper().replace("0X", "0x")) is False

    def test_missing_weth_raises(self):
        with pytest.raises(ConfigError):
            weth_is_token0(TOKEN, "0x" + "2" * 40, WETH)


class TestTokenToWeth:
    @pytest.mark.parametrize("weth0", [True, False])
    def test_unit_price(self, weth0):
        assert token_to_weth(12345, Q96, weth0) == 12345

    def test_token0_priced_in_token1(self):
        # √P = 2 → P = 4 token1 per token0
        assert token_to_weth(100, 2 * Q96, weth_is_token0=False) == 400

    def test_token1_priced_in_token0(self):
        assert token_to_weth(100, 2 * Q96, weth_is_token0=True) == 25

    def test_large_amounts_exact(self):
        amount = 10 ** 30 + 7
        assert token_to_weth(amount, 2 * Q96, weth_is_token0=False) == 4 * amount


class TestPnLSynthesizer:
    def segment(self, token_id=1, index=1):
        return PositionSegment(
            token_id, index, PositionAction.OPEN, -600, 600, 1000,
            Boundary(100, 0, 0, Q96, 1000, 2000),          # token0=1000, token1=2000
            Boundary(110, 0, 0, 2 * Q96, 800, 2500),
        )

    def test_weth_token1_row(self):
        row = PnLSynthesizer(weth_is_token0=False).synthesize(self.segment(), SegmentFees(1, 1, 10, 20))
        assert row.token_amount_in == 1000 and row.weth_amount_in == 2000
        assert row.token_amount_out == 800 and row.weth_amount_out == 2500
        assert row.token_fees_earned == 10 and row.weth_fees_earned == 20
        assert row.net_token_gain == -200
        assert row.net_weth_gain == 500
        assert row.approx_starting_weth == 2000 + 1000          # price 1
        assert row.approx_ending_weth == 2500 + 800 * 4         # price 4
        assert row.net_pnl_in_weth == (5700 - 3000) + 20 + 10 * 4
        assert row.action_taken == "Open"

    def test_weth_token0_swaps_legs(self):
        row = PnLSynthesizer(weth_is_token0=True).synthesize(self.segment(), SegmentFees(1, 1, 10, 20))
        assert row.token_amount_in == 2000 and row.weth_amount_in == 1000
        assert row.token_fees_earned == 20 and row.weth_fees_earned == 10

    def test_open_segment_rejected(self):
        seg = PositionSegment(1, 1, PositionAction.OPEN, -600, 600, 1, Boundary(100, 0, 0, Q96, 1, 1))
        with pytest.raises(ValueError):
            PnLSynthesizer(False).synthesize(seg, SegmentFees(1, 1, 0, 0))

    @pytest.mark.parametrize("workers", [1, 4])
    def test_ordered_by_token_and_index(self, workers):
        pairs = [
            (self.segment(3, 1), SegmentFees(3, 1, 0, 0)),
            (self.segment(1, 2), SegmentFees(1, 2, 0, 0)),
            (self.segment(1, 1), SegmentFees(1, 1, 0, 0)),
            (self.segment(2, 1), SegmentFees(2, 1, 0, 0)),
        ]
        rows = PnLSynthesizer(False, workers=workers).synthesize_all(pairs)
        assert [(r.token_id, r.token_action_index) for r in rows] == [(1, 1), (1, 2), (2, 1), (3, 1)]

    def test_columns_order(self):
        cols = SegmentReport.columns()
        assert cols[0] == "token_id"
        assert cols[-1] == "net_pnl_in_weth"
        assert len(cols) == 23
