"""
Chronological Merger
====================

Orders the heterogeneous event collections into one global sequence keyed by
(block_number, log_index). Pure function of its inputs.

Rejections:
  • the same key claimed by two collections         → OrderingError
  • the same key twice in one collection, different → OrderingError
  • pool activity before Initialize / PoolCreated   → OrderingError
  • a required field missing                        → SchemaError

Exact duplicate rows inside one collection (a common export artifact) are
dropped with a warning.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from fee_analyzer.errors import OrderingError, SchemaError
from fee_analyzer.events import (
    DecreaseLiquidity,
    Event,
    Initialize,
    Mint,
    PoolCreated,
    Swap,
)

logger = logging.getLogger(__name__)


@dataclass
class EventCollections:
    """Typed input collections, one per event source."""

    initialize: List[Initialize] = field(default_factory=list)
    pool_created: List[PoolCreated] = field(default_factory=list)
    mints: List[Mint] = field(default_factory=list)
    decreases: List[DecreaseLiquidity] = field(default_factory=list)
    swaps: List[Swap] = field(default_factory=list)

    def named(self) -> List[Tuple[str, list, type]]:
        return [
            ("initialize", self.initialize, Initialize),
            ("pool_created", self.pool_created, PoolCreated),
            ("mint", self.mints, Mint),
            ("decrease", self.decreases, DecreaseLiquidity),
            ("swap", self.swaps, Swap),
        ]

    def __len__(self) -> int:
        return sum(len(items) for _, items, _ in self.named())


def merge_events(collections: EventCollections) -> List[Event]:
    """Merge all collections into one sequence ordered by (block, log_index)."""
    owner: Dict[Tuple[int, int], Tuple[str, Event]] = {}

    for name, items, expected_type in collections.named():
        for event in items:
            if not isinstance(event, expected_type):
                raise SchemaError(
                    f"{name} collection contains a {type(event).__name__} event",
                    block=getattr(event, "block", None),
                    log_index=getattr(event, "log_index", None),
                )
            event.validate()
            seen = owner.get(event.key)
            if seen is None:
                owner[event.key] = (name, event)
                continue
            seen_name, seen_event = seen
            if seen_name == name and seen_event == event:
                logger.warning("Dropping duplicate %s row at block %d log %d",
                               name, event.block, event.log_index)
                continue
            raise OrderingError(
                f"{seen_name} and {name} events claim the same position in the log",
                block=event.block,
                log_index=event.log_index,
            )

    merged = [event for _, event in sorted(owner.values(), key=lambda pair: pair[1].key)]
    _check_pool_lifecycle(merged)

    logger.info(
        "Merged %d events (initialize=%d, pool_created=%d, mint=%d, decrease=%d, swap=%d)",
        len(merged),
        len(collections.initialize),
        len(collections.pool_created),
        len(collections.mints),
        len(collections.decreases),
        len(collections.swaps),
    )
    return merged


def _check_pool_lifecycle(merged: List[Event]) -> None:
    """PoolCreated precedes Initialize, Initialize precedes all liquidity and swap activity."""
    created = False
    initialized = False
    previous = None
    for event in merged:
        if previous is not None and event.key <= previous.key:
            # sorted() guarantees this never fires unless keys collide
            raise OrderingError("events out of order", block=event.block, log_index=event.log_index)
        previous = event

        if isinstance(event, PoolCreated):
            if initialized:
                raise OrderingError("PoolCreated after Initialize",
                                    block=event.block, log_index=event.log_index)
            created = True
        elif isinstance(event, Initialize):
            initialized = True
        elif not initialized:
            raise OrderingError(
                f"{event.kind} before the pool was initialized",
                token_id=getattr(event, "token_id", None),
                block=event.block,
                log_index=event.log_index,
            )
    if merged and not initialized:
        raise SchemaError("no Initialize event in input")
    if merged and not created:
        logger.warning("No PoolCreated event; fee tier must be supplied explicitly")
