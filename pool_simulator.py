#!/usr/bin/env python3
"""
Pool Fee-Growth Simulator
=========================

Replays pool events against a tick-indexed state machine structurally
identical to UniswapV3Pool's own fee bookkeeping.

FORMULA SOURCES (every formula is traceable):
──────────────────────────────────────────────
1. Uniswap V3 Core Whitepaper §6.2.2 / §6.3 — Fee growth
   https://uniswap.org/whitepaper-v3.pdf
   feeGrowthGlobal += feeAmount × 2^128 / L                  (Eq. 6.15)
   f_o(i) := f_g − f_o(i)  when tick i is crossed            (Eq. 6.20)
   f_r = f_g − f_b(i_l) − f_a(i_u)                           (Eq. 6.19)

2. UniswapV3Pool.sol / Tick.sol
   https://github.com/Uniswap/v3-core/blob/main/contracts/libraries/Tick.sol
   - Tick.update: first touch initialises feeGrowthOutside to the global
     value if tick ≤ tickCurrent, else 0
   - Tick.cross:  feeGrowthOutside = feeGrowthGlobal − feeGrowthOutside
   - Tick.getFeeGrowthInside: below/above decomposition, unchecked math

3. TickMath.sol / SqrtPriceMath.sol / LiquidityAmounts.sol
   - getSqrtRatioAtTick: exact Q64.96 sqrt(1.0001^tick)
   - getAmount0Delta / getAmount1Delta
   - getAmountsForLiquidity

All accumulators are 256-bit unsigned: additions and subtractions wrap
modulo 2^256 and are never saturated.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from fee_analyzer.errors import (
    AlreadyInitializedError,
    MissingSnapshotError,
    NoActiveLiquidityError,
    NotInitializedError,
    SchemaError,
)
from fee_analyzer.rpc_helpers import (
    FEE_DENOMINATOR,
    MAX_TICK,
    MAX_UINT256,
    MIN_TICK,
    Q96,
    Q128,
)

logger = logging.getLogger(__name__)


# ── Fixed-Point Math ─────────────────────────────────────────────────────


def wrap256(value: int) -> int:
    """Reduce into the uint256 range (two's complement wraparound)."""
    return value & MAX_UINT256


def mul_div(a: int, b: int, denominator: int) -> int:
    """FullMath.mulDiv — floor(a × b / denominator) with a 512-bit intermediate."""
    return (a * b) // denominator


def mul_div_rounding_up(a: int, b: int, denominator: int) -> int:
    """FullMath.mulDivRoundingUp."""
    return -((-(a * b)) // denominator)


def get_sqrt_ratio_at_tick(tick: int) -> int:
    """
    Exact sqrtPriceX96 at a tick (TickMath.getSqrtRatioAtTick).

    Computes sqrt(1.0001^tick) × 2^96 with the same bit-decomposition and
    rounding as the contract, so tick boundaries line up with Swap events.
    """
    abs_tick = abs(tick)
    if abs_tick > MAX_TICK:
        raise ValueError(f"tick {tick} outside [{MIN_TICK}, {MAX_TICK}]")

    ratio = (
        0xFFFCB933BD6FAD37AA2D162D1A594001
        if abs_tick & 0x1
        else 0x100000000000000000000000000000000
    )
    for bit, magic in _TICK_MAGIC:
        if abs_tick & bit:
            ratio = (ratio * magic) >> 128

    if tick > 0:
        ratio = MAX_UINT256 // ratio

    # Q128.128 → Q64.96, rounding up
    return (ratio >> 32) + (0 if ratio % (1 << 32) == 0 else 1)


_TICK_MAGIC = (
    (0x2, 0xFFF97272373D413259A46990580E213A),
    (0x4, 0xFFF2E50F5F656932EF12357CF3C7FDCC),
    (0x8, 0xFFE5CACA7E10E4E61C3624EAA0941CD0),
    (0x10, 0xFFCB9843D60F6159C9DB58835C926644),
    (0x20, 0xFF973B41FA98C081472E6896DFB254C0),
    (0x40, 0xFF2EA16466C96A3843EC78B326B52861),
    (0x80, 0xFE5DEE046A99A2A811C461F1969C3053),
    (0x100, 0xFCBE86C7900A88AEDCFFC83B479AA3A4),
    (0x200, 0xF987A7253AC413176F2B074CF7815E54),
    (0x400, 0xF3392B0822B70005940C7A398E4B70F3),
    (0x800, 0xE7159475A2C29B7443B29C7FA6E889D9),
    (0x1000, 0xD097F3BDFD2022B8845AD8F792AA5825),
    (0x2000, 0xA9F746462D870FDF8A65DC1F90E061E5),
    (0x4000, 0x70D869A156D2A1B890BB3DF62BAF32F7),
    (0x8000, 0x31BE135F97D08FD981231505542FCFA6),
    (0x10000, 0x9AA508B5B7A84E1C677DE54F3E99BC9),
    (0x20000, 0x5D6AF8DEDB81196699C329225EE604),
    (0x40000, 0x2216E584F5FA1EA926041BEDFE98),
    (0x80000, 0x48A170391F7DC42444E8FA2),
)


def get_amount0_delta(sqrt_a_x96: int, sqrt_b_x96: int, liquidity: int, round_up: bool) -> int:
    """
    SqrtPriceMath.getAmount0Delta:
        Δx = L × (√Pb − √Pa) / (√Pa × √Pb)
    """
    if sqrt_a_x96 > sqrt_b_x96:
        sqrt_a_x96, sqrt_b_x96 = sqrt_b_x96, sqrt_a_x96
    if sqrt_a_x96 <= 0:
        raise ValueError("sqrt price must be positive")
    numerator = (liquidity << 96) * (sqrt_b_x96 - sqrt_a_x96)
    denominator = sqrt_b_x96 * sqrt_a_x96
    if round_up:
        return -((-numerator) // denominator)
    return numerator // denominator


def get_amount1_delta(sqrt_a_x96: int, sqrt_b_x96: int, liquidity: int, round_up: bool) -> int:
    """
    SqrtPriceMath.getAmount1Delta:
        Δy = L × (√Pb − √Pa)
    """
    if sqrt_a_x96 > sqrt_b_x96:
        sqrt_a_x96, sqrt_b_x96 = sqrt_b_x96, sqrt_a_x96
    if round_up:
        return mul_div_rounding_up(liquidity, sqrt_b_x96 - sqrt_a_x96, Q96)
    return mul_div(liquidity, sqrt_b_x96 - sqrt_a_x96, Q96)


def amounts_for_liquidity(
    sqrt_price_x96: int, tick_lower: int, tick_upper: int, liquidity: int
) -> Tuple[int, int]:
    """
    Token amounts a position of `liquidity` withdraws at the given price
    (LiquidityAmounts.getAmountsForLiquidity, rounded down like burn()).

      price ≤ lower:  all token0
      price ≥ upper:  all token1
      in between:     token0 above the price, token1 below it
    """
    if liquidity == 0:
        return 0, 0
    sqrt_a = get_sqrt_ratio_at_tick(tick_lower)
    sqrt_b = get_sqrt_ratio_at_tick(tick_upper)
    if sqrt_price_x96 <= sqrt_a:
        return get_amount0_delta(sqrt_a, sqrt_b, liquidity, False), 0
    if sqrt_price_x96 >= sqrt_b:
        return 0, get_amount1_delta(sqrt_a, sqrt_b, liquidity, False)
    return (
        get_amount0_delta(sqrt_price_x96, sqrt_b, liquidity, False),
        get_amount1_delta(sqrt_a, sqrt_price_x96, liquidity, False),
    )


def swap_direction(amount0: int, amount1: int) -> Tuple[bool, int]:
    """(zero_for_one, amount_in) from the pool-perspective swap deltas."""
    if amount0 > 0:
        return True, amount0
    return False, max(amount1, 0)


def swap_fee_amount(amount_in: int, fee_tier: int) -> int:
    """LP fee carved out of a gross swap input, rounded up in the pool's favour."""
    if amount_in <= 0 or fee_tier == 0:
        return 0
    return mul_div_rounding_up(amount_in, fee_tier, FEE_DENOMINATOR)


# ── Pool State ───────────────────────────────────────────────────────────


@dataclass
class TickInfo:
    """Per-tick state (Tick.Info), sparse: only touched ticks are stored."""

    liquidity_gross: int = 0
    liquidity_net: int = 0
    fee_growth_outside0_x128: int = 0
    fee_growth_outside1_x128: int = 0


@dataclass
class PoolState:
    """
    Mutable pool state, owned by exactly one PoolSimulator per analysis run.
    Equality is structural, so two replays can be compared bit for bit.
    """

    sqrt_price_x96: int = 0
    tick: int = 0
    liquidity: int = 0
    fee_growth_global0_x128: int = 0
    fee_growth_global1_x128: int = 0
    ticks: Dict[int, TickInfo] = field(default_factory=dict)

    # Pool parameters (from PoolCreated)
    fee_tier: Optional[int] = None
    tick_spacing: Optional[int] = None
    token0: str = ""
    token1: str = ""

    initialized: bool = False
    last_block: Optional[int] = None
    last_log_index: Optional[int] = None


# ── Simulator ────────────────────────────────────────────────────────────


class PoolSimulator:
    """
    Replays Initialize / Mint / Decrease / Swap against PoolState.

    Usage:
        sim = PoolSimulator(fee_tier=3000)
        sim.apply_initialize(sqrt_price_x96, tick)
        sim.apply_mint(-600, 600, 1000)
        sim.apply_swap(sqrt_after, tick_after, liquidity_after, amount0, amount1)
        inside0, inside1 = sim.fee_growth_inside(-600, 600)
    """

    def __init__(self, fee_tier: Optional[int] = None, tolerate_zero_liquidity: bool = False):
        self.state = PoolState(fee_tier=fee_tier)
        self.tolerate_zero_liquidity = tolerate_zero_liquidity
        self.skipped_swaps = 0

    # ── Pool lifecycle ───────────────────────────────────────────────

    def apply_pool_created(
        self, token0: str, token1: str, fee_tier: int, tick_spacing: int
    ) -> None:
        self.state.token0 = token0
        self.state.token1 = token1
        self.state.fee_tier = fee_tier
        self.state.tick_spacing = tick_spacing

    def apply_initialize(self, sqrt_price_x96: int, tick: int, **ctx) -> None:
        """Set starting price/tick and zero the fee-growth globals."""
        if self.state.initialized:
            raise AlreadyInitializedError("pool already initialized", **ctx)
        if not (MIN_TICK <= tick <= MAX_TICK):
            raise SchemaError(f"initial tick {tick} out of range", **ctx)
        self.state.sqrt_price_x96 = sqrt_price_x96
        self.state.tick = tick
        self.state.liquidity = 0
        self.state.fee_growth_global0_x128 = 0
        self.state.fee_growth_global1_x128 = 0
        self.state.initialized = True
        logger.info("Pool initialized at tick %d (sqrtPriceX96=%d)", tick, sqrt_price_x96)

    # ── Liquidity ────────────────────────────────────────────────────

    def apply_mint(self, tick_lower: int, tick_upper: int, liquidity_delta: int, **ctx) -> None:
        """Add liquidity to [tick_lower, tick_upper)."""
        self._require_initialized(**ctx)
        self._check_range(tick_lower, tick_upper, **ctx)
        if liquidity_delta <= 0:
            raise SchemaError("mint liquidity must be positive", **ctx)
        self._update_position_ticks(tick_lower, tick_upper, liquidity_delta)

    def apply_decrease(self, tick_lower: int, tick_upper: int, liquidity_delta: int, **ctx) -> None:
        """
        Remove liquidity from [tick_lower, tick_upper).

        Ticks are never de-initialised: their fee-growth-outside values stay in
        the map and keep being flipped on crossings, so inside deltas stay exact.
        """
        self._require_initialized(**ctx)
        self._check_range(tick_lower, tick_upper, **ctx)
        if liquidity_delta <= 0:
            raise SchemaError("decrease liquidity must be positive", **ctx)
        self._update_position_ticks(tick_lower, tick_upper, -liquidity_delta)

    def _update_position_ticks(self, tick_lower: int, tick_upper: int, delta: int) -> None:
        s = self.state
        lower = self._touch_tick(tick_lower)
        upper = self._touch_tick(tick_upper)

        lower.liquidity_gross += delta
        lower.liquidity_net += delta
        upper.liquidity_gross += delta
        upper.liquidity_net -= delta

        if tick_lower <= s.tick < tick_upper:
            s.liquidity += delta
            if s.liquidity < 0:
                # event liquidity and replayed liquidity disagree; keep the accumulator sane
                logger.warning("Active liquidity went negative (%d); clamping to 0", s.liquidity)
                s.liquidity = 0

    def _touch_tick(self, tick: int) -> TickInfo:
        """Return the tick, initialising fee-growth-outside on first touch."""
        s = self.state
        info = s.ticks.get(tick)
        if info is None:
            info = TickInfo()
            # by convention all growth before initialisation happened below the tick
            if tick <= s.tick:
                info.fee_growth_outside0_x128 = s.fee_growth_global0_x128
                info.fee_growth_outside1_x128 = s.fee_growth_global1_x128
            s.ticks[tick] = info
        return info

    # ── Swaps ────────────────────────────────────────────────────────

    def apply_swap(
        self,
        sqrt_price_after: int,
        tick_after: int,
        liquidity_after: int,
        amount0: int,
        amount1: int,
        **ctx,
    ) -> None:
        """
        Accrue the swap's LP fee into the global accumulator of the input
        token, flip every initialised tick crossed on the way, then move the
        pool to the post-swap price, tick and liquidity reported by the event.

        When ticks are crossed the fee is split across the swap steps in
        proportion to the input each step consumes (SqrtPriceMath), and every
        step's share is divided by the liquidity active during that step.
        """
        self._require_initialized(**ctx)
        s = self.state
        if s.fee_tier is None:
            raise SchemaError("fee tier unknown: no PoolCreated event and none configured", **ctx)

        zero_for_one, amount_in = swap_direction(amount0, amount1)
        fee = swap_fee_amount(amount_in, s.fee_tier)

        crossed = self._crossed_ticks(s.tick, tick_after, zero_for_one)
        steps = self._plan_steps(crossed, sqrt_price_after, zero_for_one)
        shares = self._split_fee(fee, steps, **ctx)

        for (step_liquidity, _), share, tick in zip(steps, shares, crossed + [None]):
            if share and step_liquidity > 0:
                growth = mul_div(share, Q128, step_liquidity)
                if zero_for_one:
                    s.fee_growth_global0_x128 = wrap256(s.fee_growth_global0_x128 + growth)
                else:
                    s.fee_growth_global1_x128 = wrap256(s.fee_growth_global1_x128 + growth)
            if tick is not None:
                self._cross_tick(tick)

        if crossed:
            logger.debug("Swap crossed %d tick(s): %s", len(crossed), crossed)
        replayed = steps[-1][0]
        if replayed != liquidity_after:
            logger.debug("Liquidity after swap: replayed %d, event %d", replayed, liquidity_after)

        s.tick = tick_after
        s.sqrt_price_x96 = sqrt_price_after
        s.liquidity = liquidity_after

    def _crossed_ticks(self, tick_before: int, tick_after: int, zero_for_one: bool) -> List[int]:
        """
        Initialised ticks crossed moving from tick_before to tick_after,
        ordered in the direction of price movement.

          price down: tick_after < t ≤ tick_before
          price up:   tick_before < t ≤ tick_after
        """
        ticks = self.state.ticks
        if tick_after < tick_before or (tick_after == tick_before and zero_for_one):
            return sorted((t for t in ticks if tick_after < t <= tick_before), reverse=True)
        return sorted(t for t in ticks if tick_before < t <= tick_after)

    def _plan_steps(
        self, crossed: List[int], sqrt_price_after: int, zero_for_one: bool
    ) -> List[Tuple[int, int]]:
        """Return (liquidity, input_weight) for each swap step, last step included."""
        s = self.state
        liquidity = s.liquidity
        sqrt_current = s.sqrt_price_x96
        steps = []
        for tick in crossed:
            sqrt_target = get_sqrt_ratio_at_tick(tick)
            steps.append((liquidity, self._step_input(sqrt_current, sqrt_target, liquidity, zero_for_one)))
            net = s.ticks[tick].liquidity_net
            liquidity = liquidity - net if zero_for_one else liquidity + net
            liquidity = max(liquidity, 0)
            sqrt_current = sqrt_target
        steps.append((liquidity, self._step_input(sqrt_current, sqrt_price_after, liquidity, zero_for_one)))
        return steps

    @staticmethod
    def _step_input(sqrt_from: int, sqrt_to: int, liquidity: int, zero_for_one: bool) -> int:
        if liquidity == 0 or sqrt_from == sqrt_to:
            return 0
        if zero_for_one:
            return get_amount0_delta(sqrt_from, sqrt_to, liquidity, True)
        return get_amount1_delta(sqrt_from, sqrt_to, liquidity, True)

    def _split_fee(self, fee: int, steps: List[Tuple[int, int]], **ctx) -> List[int]:
        shares = [0] * len(steps)
        if fee == 0:
            return shares

        if len(steps) == 1:
            target = 0 if steps[0][0] > 0 else None
        else:
            total_weight = sum(weight for liq, weight in steps if liq > 0)
            if total_weight > 0:
                paying = [i for i, (liq, weight) in enumerate(steps) if liq > 0 and weight > 0]
                for i in paying:
                    shares[i] = fee * steps[i][1] // total_weight
                shares[paying[-1]] += fee - sum(shares)
                return shares
            target = next((i for i, (liq, _) in enumerate(steps) if liq > 0), None)

        if target is None:
            if not self.tolerate_zero_liquidity:
                raise NoActiveLiquidityError("swap executed with zero active liquidity", **ctx)
            self.skipped_swaps += 1
            logger.warning("Skipping fee growth for swap with zero active liquidity (%s)",
                           ", ".join(f"{k}={v}" for k, v in ctx.items()) or "no context")
            return shares
        shares[target] = fee
        return shares

    def _cross_tick(self, tick: int) -> None:
        """Tick.cross: outside := global − outside (mod 2^256)."""
        s = self.state
        info = s.ticks[tick]
        info.fee_growth_outside0_x128 = wrap256(s.fee_growth_global0_x128 - info.fee_growth_outside0_x128)
        info.fee_growth_outside1_x128 = wrap256(s.fee_growth_global1_x128 - info.fee_growth_outside1_x128)

    # ── Queries ──────────────────────────────────────────────────────

    def fee_growth_outside(self, tick: int) -> Tuple[int, int]:
        """Fee growth outside a tick; ticks never touched by liquidity read as 0."""
        info = self.state.ticks.get(tick)
        if info is None:
            return 0, 0
        return info.fee_growth_outside0_x128, info.fee_growth_outside1_x128

    def fee_growth_inside(self, tick_lower: int, tick_upper: int) -> Tuple[int, int]:
        """
        Tick.getFeeGrowthInside at the current tick.

          below = outside(lower)           if tick ≥ lower  else global − outside(lower)
          above = outside(upper)           if tick < upper  else global − outside(upper)
          inside = global − below − above  (mod 2^256)
        """
        s = self.state
        g0, g1 = s.fee_growth_global0_x128, s.fee_growth_global1_x128
        lo0, lo1 = self.fee_growth_outside(tick_lower)
        up0, up1 = self.fee_growth_outside(tick_upper)

        if s.tick >= tick_lower:
            below0, below1 = lo0, lo1
        else:
            below0, below1 = g0 - lo0, g1 - lo1

        if s.tick < tick_upper:
            above0, above1 = up0, up1
        else:
            above0, above1 = g0 - up0, g1 - up1

        return wrap256(g0 - below0 - above0), wrap256(g1 - below1 - above1)

    def tick_liquidity_net(self, tick: int) -> int:
        info = self.state.ticks.get(tick)
        return info.liquidity_net if info else 0

    def checkpoint(self) -> PoolState:
        """Deep copy of the current state (for idempotence checks and audits)."""
        return copy.deepcopy(self.state)

    def mark(self, block: int, log_index: int) -> None:
        self.state.last_block = block
        self.state.last_log_index = log_index

    # ── Validation ───────────────────────────────────────────────────

    def _require_initialized(self, **ctx) -> None:
        if not self.state.initialized:
            raise NotInitializedError("pool event before Initialize", **ctx)

    def _check_range(self, tick_lower: int, tick_upper: int, **ctx) -> None:
        if tick_lower >= tick_upper:
            raise SchemaError(f"tick_lower {tick_lower} must be < tick_upper {tick_upper}", **ctx)
        if tick_lower < MIN_TICK or tick_upper > MAX_TICK:
            raise SchemaError(f"tick range [{tick_lower}, {tick_upper}] out of bounds", **ctx)
        spacing = self.state.tick_spacing
        if spacing and (tick_lower % spacing or tick_upper % spacing):
            raise SchemaError(
                f"ticks [{tick_lower}, {tick_upper}] not multiples of tick spacing {spacing}", **ctx
            )


# ── Snapshot Log ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class FeeGrowthSnapshot:
    block: int
    log_index: int
    tick_lower: int
    tick_upper: int
    inside0_x128: int
    inside1_x128: int


class SnapshotLog:
    """
    Append-only log of fee-growth-inside values captured immediately after
    each lifecycle-boundary event, keyed by block height and tick range.
    """

    def __init__(self):
        self._by_block: Dict[int, List[FeeGrowthSnapshot]] = {}
        self._observed_blocks: set = set()

    def observe(self, block: int) -> None:
        self._observed_blocks.add(block)

    def capture(self, simulator: PoolSimulator, block: int, log_index: int,
                tick_lower: int, tick_upper: int) -> FeeGrowthSnapshot:
        inside0, inside1 = simulator.fee_growth_inside(tick_lower, tick_upper)
        snap = FeeGrowthSnapshot(block, log_index, tick_lower, tick_upper, inside0, inside1)
        self._observed_blocks.add(block)
        self._by_block.setdefault(block, []).append(snap)
        return snap

    def lookup(self, block: int, tick_lower: int, tick_upper: int,
               log_index: Optional[int] = None, token_id: Optional[int] = None) -> FeeGrowthSnapshot:
        """
        Latest snapshot for the range at `block` (at or before `log_index`
        when given).

        Raises:
            MissingSnapshotError: block never replayed, or no snapshot of the range there.
        """
        if block not in self._observed_blocks:
            raise MissingSnapshotError("block was never replayed", token_id=token_id, block=block)
        found = None
        for snap in self._by_block.get(block, []):
            if (snap.tick_lower, snap.tick_upper) != (tick_lower, tick_upper):
                continue
            if log_index is not None and snap.log_index > log_index:
                continue
            found = snap
        if found is None:
            raise MissingSnapshotError(
                f"no fee-growth snapshot for range [{tick_lower}, {tick_upper}]",
                token_id=token_id, block=block, log_index=log_index,
            )
        return found

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_block.values())
