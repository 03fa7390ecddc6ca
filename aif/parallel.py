from __future__ import annotations
"""
Fork/join fan-out over independent units of work.

Callers pre-allocate one output slot per unit and bind each unit to its slot
index before dispatch; units never share mutable state, so no locking is
needed. The only synchronization point is the join in parallel_for().
"""

import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

from common.logging_setup import get_logger


log = get_logger("aif.parallel")

Task = Optional[Callable[[], None]]


class ParallelTasks(list):
    """
    Fixed-size list of optional zero-argument callables.

    Calling the list with (start, stop) runs every non-None task in that index
    range, in order. Empty slots are no-ops. A failing task does not stop the
    rest of the range; the first exception is raised once the range is done.
    """

    def __init__(self, ntasks: int = 0):
        super().__init__([None] * int(ntasks))

    def __call__(self, start: int, stop: int) -> None:
        first_error: Optional[BaseException] = None
        for i in range(start, stop):
            task = self[i]
            if task is None:
                continue
            try:
                task()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error


def stripe_ranges(ntasks: int, nstripes: float = -1.0) -> List[Tuple[int, int]]:
    """
    Partition [0, ntasks) into contiguous, near-equal (start, stop) ranges.
    A non-positive nstripes picks min(ntasks, cpu count).
    """
    if ntasks <= 0:
        return []
    if nstripes is None or nstripes <= 0:
        n = min(ntasks, os.cpu_count() or 1)
    else:
        n = int(min(ntasks, max(1, math.ceil(nstripes))))
    bounds = [(k * ntasks) // n for k in range(n + 1)]
    return [(bounds[k], bounds[k + 1]) for k in range(n) if bounds[k] < bounds[k + 1]]


def parallel_for(ntasks: int, body: Callable[[int, int], None], nstripes: float = -1.0) -> None:
    """
    Run body(start, stop) over a partition of [0, ntasks) and block until all
    stripes finish. Every dispatched unit runs to completion; the first
    exception, in stripe order, is re-raised after the join. A single stripe
    runs on the calling thread.
    """
    ranges = stripe_ranges(ntasks, nstripes)
    if not ranges:
        return
    if len(ranges) == 1:
        body(*ranges[0])
        return

    log.debug("dispatch", extra={"extra": {"ntasks": ntasks, "stripes": len(ranges)}})
    with ThreadPoolExecutor(max_workers=len(ranges), thread_name_prefix="aif") as pool:
        futures = [pool.submit(body, start, stop) for start, stop in ranges]
    # the executor context has joined every stripe at this point
    for fut in futures:
        fut.result()
