"""
Chain-State Oracle — cross-checks against a (forked) node
=========================================================

Pull-based reads of UniswapV3Pool state pinned to a block height. Used only
to reconcile replayed state after the fact; never feeds the replay.

  ticks(int24) → liquidityGross, liquidityNet, feeGrowthOutside0X128,
                 feeGrowthOutside1X128, …                       (slots 0-3)
  slot0()      → sqrtPriceX96, tick, …                           (slots 0-1)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Tuple, Union

from fee_analyzer.rpc_helpers import (
    SELECTORS,
    decode_int,
    decode_uint,
    encode_int24,
    eth_call,
    eth_call_batch,
)

logger = logging.getLogger(__name__)

BlockTag = Union[int, str]


@dataclass(frozen=True)
class TickMismatch:
    tick: int
    block: BlockTag
    replayed: Tuple[int, int]
    on_chain: Tuple[int, int]

    def __str__(self) -> str:
        return (f"tick {self.tick} @ {self.block}: replayed outside={self.replayed}, "
                f"chain outside={self.on_chain}")


class ChainStateOracle:
    """Reads pool state at an explicit block height via eth_call."""

    def __init__(self, rpc_url: str, pool_address: str, timeout: int = 20):
        self.rpc_url = rpc_url
        self.pool_address = pool_address
        self.timeout = timeout

    async def get_tick_state(self, tick: int, block: BlockTag) -> Tuple[int, int]:
        """(feeGrowthOutside0X128, feeGrowthOutside1X128) of `tick` at `block`."""
        data = SELECTORS["ticks"] + encode_int24(tick)
        raw = await eth_call(self.rpc_url, self.pool_address, data, block, self.timeout)
        return decode_uint(raw, 2), decode_uint(raw, 3)

    async def get_slot0(self, block: BlockTag) -> Tuple[int, int]:
        """(sqrtPriceX96, tick) at `block`."""
        raw = await eth_call(self.rpc_url, self.pool_address, SELECTORS["slot0"], block, self.timeout)
        return decode_uint(raw, 0), decode_int(raw, 1)

    async def get_fee_growth_global(self, block: BlockTag) -> Tuple[int, int]:
        raw0, raw1 = await eth_call_batch(
            self.rpc_url,
            [(self.pool_address, SELECTORS["feeGrowthGlobal0X128"]),
             (self.pool_address, SELECTORS["feeGrowthGlobal1X128"])],
            block,
            self.timeout,
        )
        return decode_uint(raw0), decode_uint(raw1)


async def reconcile_ticks(simulator, oracle: ChainStateOracle, ticks: Iterable[int],
                          block: BlockTag) -> List[TickMismatch]:
    """
    Compare the simulator's fee-growth-outside values with the chain's.

    Read-only on both sides. The simulator should have replayed exactly up to
    `block`; the caller is responsible for that alignment.
    """
    ticks = sorted(set(ticks))
    on_chain = await asyncio.gather(*(oracle.get_tick_state(t, block) for t in ticks))
    mismatches = []
    for tick, chain_values in zip(ticks, on_chain):
        replayed = simulator.fee_growth_outside(tick)
        if tuple(chain_values) != replayed:
            mismatches.append(TickMismatch(tick, block, replayed, tuple(chain_values)))
    logger.info("Reconciled %d tick(s) at block %s: %d mismatch(es)", len(ticks), block, len(mismatches))
    return mismatches
