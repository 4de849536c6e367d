"""
Test Suite — Event Model, Merger and End-to-End Replay
======================================================

Scenario tests run the whole pipeline (merge → replay → lifecycle →
attribution → PnL) on small hand-built pool histories.

Run:  python -m pytest tests/test_analyzer.py -v
"""

import threading

import pytest

from fee_analyzer.errors import (
    AnalysisCancelled,
    ConfigError,
    LiquidityUnderflowError,
    MissingSnapshotError,
    NoActiveLiquidityError,
    OrderingError,
    SchemaError,
    UnknownPositionError,
)
from fee_analyzer.events import DecreaseLiquidity, Initialize, Mint, PoolCreated, Swap
from fee_analyzer.merger import EventCollections, merge_events
from pool_analyzer import PoolAnalyzer
from pool_simulator import get_sqrt_ratio_at_tick

TOKEN = "0x1111111111111111111111111111111111111111"
WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


# ── Helpers ──────────────────────────────────────────────────────────────

def pool_events(tick=0):
    return EventCollections(
        initialize=[Initialize(10, 1, get_sqrt_ratio_at_tick(tick), tick)],
        pool_created=[PoolCreated(10, 0, TOKEN, WETH, 3000, 60)],
    )


def swap(block, tick_after, amount0, amount1, liquidity=1000, log_index=0):
    return Swap(block, log_index, get_sqrt_ratio_at_tick(tick_after), tick_after, liquidity, amount0, amount1)


def mint(block, token_id=1, lower=-600, upper=600, liquidity=1000, amount0=30, amount1=30, log_index=0):
    return Mint(block, log_index, "0xabc", token_id, lower, upper, liquidity, amount0, amount1)


def decrease(block, token_id=1, liquidity=1000, amount0=30, amount1=30, log_index=0):
    return DecreaseLiquidity(block, log_index, "0xdef", token_id, liquidity, amount0, amount1)


def scenario():
    """Init tick 0; token 1 mints [-600, 600) L=1000; one token0-in swap; full close."""
    c = pool_events()
    c.mints.append(mint(100))
    c.swaps.append(swap(101, -10, 10_000, -9_990))
    c.decreases.append(decrease(102, amount0=10_025, amount1=20))
    return c


def rows_for(result, token_id):
    return [r for r in result.rows if r.token_id == token_id]


# ── Event Model ──────────────────────────────────────────────────────────

class TestEventValidation:
    def test_missing_field_raises_schema_error(self):
        with pytest.raises(SchemaError, match="token_id"):
            Mint(1, 0, None, None, -60, 60, 1, 0, 0).validate()

    def test_tx_hash_optional(self):
        Mint(1, 0, None, 5, -60, 60, 1, 0, 0).validate()

    def test_non_integer_rejected(self):
        with pytest.raises(SchemaError, match="integer"):
            Swap(1, 0, "123", 0, 1, 1, -1).validate()

    def test_bool_is_not_an_integer(self):
        with pytest.raises(SchemaError):
            Initialize(1, 0, True, 0).validate()

    @pytest.mark.parametrize("event", [
        Mint(1, 0, None, 5, 60, -60, 1, 0, 0),          # inverted range
        Mint(1, 0, None, 5, -60, 60, 0, 0, 0),          # zero liquidity
        DecreaseLiquidity(1, 0, None, 5, 0, 0, 0),      # zero decrease
        DecreaseLiquidity(1, 0, None, 5, 1, 1, 1, amount0_min=2),
        Swap(1, 0, 0, 0, 1, 1, -1),                     # zero price
        Swap(1, 0, 1, 0, 1, 5, 5),                      # both legs in
        PoolCreated(1, 0, TOKEN, WETH, 1_000_000, 60),  # fee out of range
        Initialize(-1, 0, 1, 0),                        # negative block
    ])
    def test_invariants(self, event):
        with pytest.raises(SchemaError):
            event.validate()


# ── Merger ───────────────────────────────────────────────────────────────

class TestMerger:
    def test_orders_by_block_then_log_index(self):
        c = pool_events()
        c.swaps = [swap(101, -1, 5, -4, log_index=3), swap(101, -2, 5, -4, log_index=1)]
        c.mints = [mint(100, log_index=7)]
        merged = merge_events(c)
        assert [e.key for e in merged] == [(10, 0), (10, 1), (100, 7), (101, 1), (101, 3)]

    def test_identical_duplicate_dropped(self):
        c = pool_events()
        c.mints = [mint(100), mint(100)]
        merged = merge_events(c)
        assert sum(isinstance(e, Mint) for e in merged) == 1

    def test_conflicting_duplicate_in_one_collection(self):
        c = pool_events()
        c.mints = [mint(100), mint(100, liquidity=7)]
        with pytest.raises(OrderingError, match="block=100"):
            merge_events(c)

    def test_two_collections_same_key(self):
        c = pool_events()
        c.mints = [mint(100, log_index=2)]
        c.swaps = [swap(100, -1, 5, -4, log_index=2)]
        with pytest.raises(OrderingError, match="same position"):
            merge_events(c)

    def test_activity_before_initialize(self):
        c = pool_events()
        c.mints = [mint(5)]
        with pytest.raises(OrderingError, match="before the pool was initialized"):
            merge_events(c)

    def test_pool_created_after_initialize(self):
        c = pool_events()
        c.pool_created = [PoolCreated(11, 0, TOKEN, WETH, 3000, 60)]
        with pytest.raises(OrderingError):
            merge_events(c)

    def test_missing_initialize(self):
        c = EventCollections(pool_created=[PoolCreated(10, 0, TOKEN, WETH, 3000, 60)])
        with pytest.raises(SchemaError, match="Initialize"):
            merge_events(c)

    def test_wrong_type_in_collection(self):
        c = pool_events()
        c.swaps = [mint(100)]
        with pytest.raises(SchemaError, match="swap collection"):
            merge_events(c)


# ── Scenarios ────────────────────────────────────────────────────────────

class TestScenarioSingleSwap:
    """Fee of 30 token0 on 1000 liquidity, attributed to the only position."""

    def run(self, **kwargs):
        return PoolAnalyzer(WETH, **kwargs).run(merge_events(scenario()))

    def test_fees_attributed(self):
        result = self.run()
        opened = rows_for(result, 1)[0]
        assert opened.action_taken == "Open"
        assert opened.token_fees_earned == pytest.approx(30, abs=1)
        assert opened.weth_fees_earned == 0
        assert opened.opening_block == 100
        assert opened.closing_block == 102

    def test_close_row(self):
        result = self.run()
        rows = rows_for(result, 1)
        assert [r.action_taken for r in rows] == ["Open", "Close"]
        close = rows[1]
        assert close.liquidity_in == 0
        assert close.token_fees_earned == close.weth_fees_earned == 0
        assert close.opening_block == close.closing_block == 102

    def test_amounts_and_pnl(self):
        opened = rows_for(self.run(), 1)[0]
        assert opened.token_amount_in == 30 and opened.weth_amount_in == 30
        assert opened.token_amount_out == 10_025 and opened.weth_amount_out == 20
        assert opened.net_token_gain == 9_995
        assert opened.net_weth_gain == -10
        assert opened.net_pnl_in_weth > 0

    def test_weth_as_token0_swaps_legs(self):
        c = scenario()
        c.pool_created = [PoolCreated(10, 0, WETH, TOKEN, 3000, 60)]
        opened = rows_for(PoolAnalyzer(WETH).run(merge_events(c)), 1)[0]
        assert opened.weth_fees_earned == pytest.approx(30, abs=1)
        assert opened.token_fees_earned == 0

    def test_pool_created_fee_tier_beats_configured_fallback(self):
        with_fallback = rows_for(self.run(fee_tier=500), 1)[0]
        without = rows_for(self.run(), 1)[0]
        assert with_fallback.token_fees_earned == without.token_fees_earned
        assert with_fallback.token_fees_earned == pytest.approx(30, abs=1)

    def test_fallback_fee_tier_without_pool_created(self):
        c = scenario()
        c.pool_created = []
        # no PoolCreated, so the token order has to be given
        opened = rows_for(PoolAnalyzer(WETH, fee_tier=500, weth_is_token0=False).run(merge_events(c)), 1)[0]
        assert opened.token_fees_earned == pytest.approx(5, abs=1)

    def test_unknown_weth_is_config_error(self):
        with pytest.raises(ConfigError):
            PoolAnalyzer("0x" + "9" * 40).run(merge_events(scenario()))

    def test_final_state(self):
        state = self.run().final_state
        assert state.tick == -10
        assert state.liquidity == 0
        assert state.last_block == 102


class TestScenarioEdgeCases:
    def test_swap_on_unminted_tick_has_no_snapshot_error(self):
        c = scenario()
        c.swaps.append(swap(101, -37, 1_000, -990, log_index=5))
        result = PoolAnalyzer(WETH).run(merge_events(c))
        assert result.final_state.tick == -37
        assert len(rows_for(result, 1)) == 2

    def test_unknown_token_aborts(self):
        c = scenario()
        c.decreases.append(decrease(103, token_id=77))
        with pytest.raises(UnknownPositionError, match="token_id=77"):
            PoolAnalyzer(WETH).run(merge_events(c))

    def test_unknown_token_skipped(self):
        c = scenario()
        c.decreases.append(decrease(103, token_id=77))
        result = PoolAnalyzer(WETH, position_error_policy="skip").run(merge_events(c))
        assert rows_for(result, 77) == []
        assert result.excluded_token_ids == [77]
        assert len(rows_for(result, 1)) == 2

    def test_underflow_skip_drops_token_but_keeps_pool_consistent(self):
        c = pool_events()
        c.mints = [mint(100, token_id=1), mint(100, token_id=2, log_index=1, liquidity=500)]
        c.decreases = [decrease(101, token_id=2, liquidity=900)]
        c.swaps = [swap(102, -10, 10_000, -9_990, liquidity=1000)]
        result = PoolAnalyzer(WETH, position_error_policy="skip").run(merge_events(c))
        assert result.excluded_token_ids == [2]
        assert rows_for(result, 2) == []
        # token 2's liquidity was removed from the pool: token 1 gets the whole fee
        assert rows_for(result, 1)[0].token_fees_earned == pytest.approx(30, abs=1)

    def test_underflow_aborts(self):
        c = scenario()
        c.decreases = [decrease(102, liquidity=5000)]
        with pytest.raises(LiquidityUnderflowError):
            PoolAnalyzer(WETH).run(merge_events(c))

    def test_zero_liquidity_swap(self):
        c = pool_events()
        c.swaps = [swap(50, -10, 10_000, -9_990, liquidity=0)]
        c.mints = [mint(100)]
        with pytest.raises(NoActiveLiquidityError, match="block=50"):
            PoolAnalyzer(WETH).run(merge_events(c))
        result = PoolAnalyzer(WETH, tolerate_zero_liquidity=True).run(merge_events(c))
        assert result.skipped_swaps == 1

    def test_open_position_closed_at_end_of_data(self):
        c = pool_events()
        c.mints = [mint(100)]
        c.swaps = [swap(101, -10, 10_000, -9_990), swap(105, -20, 4_000, -3_990, log_index=2)]
        rows = PoolAnalyzer(WETH).run(merge_events(c)).rows
        assert len(rows) == 1
        assert rows[0].closing_block == 105
        assert rows[0].tick_out == -20
        assert rows[0].token_fees_earned == pytest.approx(42, abs=1)

    def test_two_positions_share_fees_pro_rata(self):
        c = pool_events()
        c.mints = [mint(100, token_id=1, liquidity=3000),
                   mint(100, token_id=2, log_index=1, liquidity=1000)]
        c.swaps = [swap(101, -10, 100_000, -99_000, liquidity=4000)]
        rows = PoolAnalyzer(WETH).run(merge_events(c)).rows
        fees = {r.token_id: r.token_fees_earned for r in rows}
        assert fees[1] == pytest.approx(225, abs=1)
        assert fees[2] == pytest.approx(75, abs=1)

    def test_out_of_range_position_earns_nothing(self):
        c = pool_events()
        c.mints = [mint(100, token_id=1), mint(100, token_id=2, lower=600, upper=1200, log_index=1)]
        c.swaps = [swap(101, -10, 10_000, -9_990)]
        rows = PoolAnalyzer(WETH).run(merge_events(c)).rows
        fees = {r.token_id: r.token_fees_earned for r in rows}
        assert fees[2] == 0

    def test_increase_mid_life_splits_fees(self):
        c = pool_events()
        c.mints = [mint(100), mint(103, liquidity=1000)]
        c.swaps = [swap(101, -10, 10_000, -9_990), swap(104, -20, 10_000, -9_990, liquidity=2000)]
        rows = PoolAnalyzer(WETH).run(merge_events(c)).rows
        assert [r.action_taken for r in rows] == ["Open", "IncreaseLiquidity"]
        assert rows[0].token_fees_earned == pytest.approx(30, abs=1)
        assert rows[1].token_fees_earned == pytest.approx(30, abs=1)
        assert rows[1].liquidity_in == 2000


class TestReplayProperties:
    def test_idempotent_replay(self):
        events = merge_events(scenario())
        analyzer = PoolAnalyzer(WETH)
        first = analyzer.run(events)
        second = analyzer.run(events)
        third = PoolAnalyzer(WETH).run(events)
        assert first.final_state == second.final_state == third.final_state
        assert first.rows == second.rows == third.rows

    def test_worker_count_does_not_change_output(self):
        c = pool_events()
        c.mints = [mint(100, token_id=t, log_index=t, liquidity=100 * t) for t in range(1, 8)]
        c.swaps = [swap(101, -10, 10_000, -9_990, liquidity=2800)]
        events = merge_events(c)
        assert PoolAnalyzer(WETH, workers=1).run(events).rows == PoolAnalyzer(WETH, workers=4).run(events).rows

    def test_cancel_between_events(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(AnalysisCancelled):
            PoolAnalyzer(WETH).run(merge_events(scenario()), cancel=cancel)

    def test_missing_snapshot_for_unreplayed_block(self):
        analyzer = PoolAnalyzer(WETH)
        analyzer.run(merge_events(scenario()))
        with pytest.raises(MissingSnapshotError):
            analyzer.snapshots.lookup(999, -600, 600)

    def test_empty_input(self):
        result = PoolAnalyzer(WETH).run([])
        assert result.rows == []
        assert result.events_replayed == 0

    def test_bad_policy(self):
        with pytest.raises(ConfigError):
            PoolAnalyzer(WETH, position_error_policy="ignore")
