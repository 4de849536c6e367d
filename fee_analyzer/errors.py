"""
Error Taxonomy — Fee Attribution Engine
========================================

Every failure the engine can surface, in one place. Each error carries the
context needed to find the offending input row (token id, block, log index)
and renders it in its message.

  SchemaError              malformed / missing input field        (fatal)
  OrderingError            conflicting or out-of-order events     (fatal)
  AlreadyInitializedError  second Initialize for the same pool    (fatal)
  NotInitializedError      pool event before Initialize           (fatal)
  UnknownPositionError     decrease on a token id with no segment (per policy)
  LiquidityUnderflowError  decrease larger than open liquidity    (per policy)
  NoActiveLiquidityError   swap with zero in-range liquidity      (unless tolerated)
  MissingSnapshotError     fee snapshot for a block never replayed (fatal)
  AnalysisCancelled        cooperative cancellation between events
  ConfigError              missing / invalid configuration
"""

from typing import Optional


class FeeAnalyzerError(Exception):
    """Base class for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        token_id: Optional[int] = None,
        block: Optional[int] = None,
        log_index: Optional[int] = None,
    ):
        self.token_id = token_id
        self.block = block
        self.log_index = log_index
        self.message = message
        super().__init__(self._render())

    def _render(self) -> str:
        ctx = []
        if self.token_id is not None:
            ctx.append(f"token_id={self.token_id}")
        if self.block is not None:
            ctx.append(f"block={self.block}")
        if self.log_index is not None:
            ctx.append(f"log_index={self.log_index}")
        if not ctx:
            return self.message
        return f"{self.message} ({', '.join(ctx)})"


class ConfigError(FeeAnalyzerError):
    pass


class SchemaError(FeeAnalyzerError):
    pass


class OrderingError(FeeAnalyzerError):
    pass


class AlreadyInitializedError(FeeAnalyzerError):
    pass


class NotInitializedError(FeeAnalyzerError):
    pass


class PositionHistoryError(FeeAnalyzerError):
    """Inconsistent history for a single token id (subject to the skip/abort policy)."""


class UnknownPositionError(PositionHistoryError):
    pass


class LiquidityUnderflowError(PositionHistoryError):
    pass


class NoActiveLiquidityError(FeeAnalyzerError):
    pass


class MissingSnapshotError(FeeAnalyzerError):
    pass


class AnalysisCancelled(FeeAnalyzerError):
    pass
