"""
Bounded-concurrency batch driver.

At most ``concurrency_limit`` operations are in flight; whenever one settles
the next pending item (input order) is started. Only the initial batch is
staggered. Per-item failures become ``zero`` outcomes and never abort
siblings, except exception types listed in ``fatal``: those stop further
dispatch, in-flight items are allowed to settle, and the first fatal error
is re-raised.

Bookkeeping runs between awaits on a single event loop, so the counters need
no lock.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

log = logging.getLogger(__name__)

I = TypeVar("I")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[R]):
    results: List[R] = field(default_factory=list)
    completed: int = 0
    failed: int = 0
    aggregate: Any = 0


# (completed, total, aggregate)
ProgressCallback = Callable[[int, int, Any], None]


async def run_batch(
    items: Sequence[I],
    operation: Callable[[I], Awaitable[R]],
    concurrency_limit: int,
    stagger_ms: int = 0,
    *,
    zero: Any = 0,
    fatal: Tuple[Type[BaseException], ...] = (),
    on_progress: Optional[ProgressCallback] = None,
) -> BatchOutcome:
    if concurrency_limit < 1:
        raise ValueError("concurrency_limit must be >= 1")
    if stagger_ms < 0:
        raise ValueError("stagger_ms must be >= 0")

    total = len(items)
    outcome = BatchOutcome(results=[zero] * total, aggregate=zero)
    if total == 0:
        return outcome

    fatal_errors: List[BaseException] = []

    async def _slot(index: int, item: I, delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            result = await operation(item)
        except fatal as exc:  # type: ignore[misc]
            fatal_errors.append(exc)
            result = zero
            outcome.failed += 1
        except Exception as exc:  # noqa: BLE001
            log.warning("batch item %s failed: %s", index, exc)
            result = zero
            outcome.failed += 1
        outcome.results[index] = result
        if result is not None:
            try:
                outcome.aggregate = outcome.aggregate + result
            except TypeError:
                pass
        outcome.completed += 1
        if on_progress is not None:
            try:
                on_progress(outcome.completed, total, outcome.aggregate)
            except Exception:  # noqa: BLE001
                log.exception("progress callback failed")

    pending = iter(enumerate(items))
    in_flight = set()
    for slot, (index, item) in enumerate(itertools.islice(pending, concurrency_limit)):
        in_flight.add(asyncio.create_task(_slot(index, item, slot * stagger_ms / 1000)))

    while in_flight:
        done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
        if fatal_errors:
            continue
        for index, item in itertools.islice(pending, len(done)):
            in_flight.add(asyncio.create_task(_slot(index, item, 0)))

    if fatal_errors:
        raise fatal_errors[0]
    return outcome
