"""
Event Model — Pool and Position-Manager Events
===============================================

Canonical, validated in-memory representation of the events the engine
replays. Leaf data types, no behaviour beyond validation.

  Initialize          Pool.Initialize(sqrtPriceX96, tick)
  PoolCreated         Factory.PoolCreated(token0, token1, fee, tickSpacing)
  Mint                Pool.Mint joined with NonfungiblePositionManager
                      IncreaseLiquidity (covers new mints and increases)
  DecreaseLiquidity   NonfungiblePositionManager.DecreaseLiquidity
  Swap                Pool.Swap(amount0, amount1, sqrtPriceX96, liquidity, tick)

Ordering key: (block, log_index). Signed swap amounts follow the pool's
convention: positive = paid into the pool, negative = paid out.
"""

from dataclasses import dataclass, fields
from typing import Optional, Tuple, Union

from fee_analyzer.errors import SchemaError

_OPTIONAL_FIELDS = frozenset({"tx_hash"})


@dataclass(frozen=True)
class _BaseEvent:
    block: int
    log_index: int

    @property
    def key(self) -> Tuple[int, int]:
        return (self.block, self.log_index)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def validate(self) -> None:
        """Raise SchemaError if a required field is missing or mistyped."""
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                if f.name in _OPTIONAL_FIELDS:
                    continue
                raise SchemaError(
                    f"{self.kind}: required field '{f.name}' is missing",
                    block=self.block if isinstance(self.block, int) else None,
                    log_index=self.log_index if isinstance(self.log_index, int) else None,
                )
            if f.type is int and (not isinstance(value, int) or isinstance(value, bool)):
                raise SchemaError(
                    f"{self.kind}: field '{f.name}' must be an integer, got {value!r}",
                    block=self.block if isinstance(self.block, int) else None,
                )
        if not isinstance(self.block, int) or self.block < 0:
            raise SchemaError(f"{self.kind}: block must be a non-negative integer")
        if not isinstance(self.log_index, int) or self.log_index < 0:
            raise SchemaError(f"{self.kind}: log_index must be a non-negative integer", block=self.block)
        self._validate_fields()

    def _validate_fields(self) -> None:
        pass

    def _fail(self, message: str, token_id: Optional[int] = None) -> None:
        raise SchemaError(f"{self.kind}: {message}", token_id=token_id,
                          block=self.block, log_index=self.log_index)


@dataclass(frozen=True)
class Initialize(_BaseEvent):
    sqrt_price_x96: int
    tick: int

    def _validate_fields(self) -> None:
        if self.sqrt_price_x96 <= 0:
            self._fail("sqrt_price_x96 must be positive")


@dataclass(frozen=True)
class PoolCreated(_BaseEvent):
    token0: str
    token1: str
    fee_tier: int
    tick_spacing: int

    def _validate_fields(self) -> None:
        if not (0 <= self.fee_tier < 1_000_000):
            self._fail(f"fee_tier out of range: {self.fee_tier}")
        if self.tick_spacing <= 0:
            self._fail(f"tick_spacing must be positive: {self.tick_spacing}")


@dataclass(frozen=True)
class Mint(_BaseEvent):
    tx_hash: Optional[str]
    token_id: int
    tick_lower: int
    tick_upper: int
    liquidity_delta: int
    amount0: int
    amount1: int

    def _validate_fields(self) -> None:
        if self.tick_lower >= self.tick_upper:
            self._fail(f"tick_lower {self.tick_lower} must be < tick_upper {self.tick_upper}",
                       self.token_id)
        if self.liquidity_delta <= 0:
            self._fail("liquidity_delta must be positive", self.token_id)
        if self.amount0 < 0 or self.amount1 < 0:
            self._fail("amounts must be non-negative", self.token_id)


@dataclass(frozen=True)
class DecreaseLiquidity(_BaseEvent):
    tx_hash: Optional[str]
    token_id: int
    liquidity_delta: int
    amount0: int
    amount1: int
    amount0_min: int = 0
    amount1_min: int = 0

    def _validate_fields(self) -> None:
        if self.liquidity_delta <= 0:
            self._fail("liquidity_delta must be positive (magnitude)", self.token_id)
        if self.amount0 < 0 or self.amount1 < 0:
            self._fail("amounts must be non-negative", self.token_id)
        if self.amount0 < self.amount0_min or self.amount1 < self.amount1_min:
            self._fail("withdrawn amounts below the requested minimums", self.token_id)


@dataclass(frozen=True)
class Swap(_BaseEvent):
    sqrt_price_x96_after: int
    tick_after: int
    liquidity: int
    amount0: int
    amount1: int

    def _validate_fields(self) -> None:
        if self.sqrt_price_x96_after <= 0:
            self._fail("sqrt_price_x96_after must be positive")
        if self.liquidity < 0:
            self._fail("liquidity must be non-negative")
        if self.amount0 > 0 and self.amount1 > 0:
            self._fail("both swap legs paid into the pool")


Event = Union[Initialize, PoolCreated, Mint, DecreaseLiquidity, Swap]
