from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, TypeVar

from .errors import RunTimeoutError
from .time import Deadline

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class UnitResult(Generic[T, R]):
    """Outcome of one unit of work: either a value or the error it raised."""

    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parallel_map_results(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
    *,
    deadline: Optional[Deadline] = None,
    on_done: Optional[Callable[[UnitResult[T, R]], None]] = None,
) -> List[UnitResult[T, R]]:
    """
    Execute func over items in a bounded thread pool and return one UnitResult
    per item, preserving the input order. Exceptions raised by func are
    captured on the unit rather than propagated, so one failing item never
    prevents the others from running.

    Uses a sliding window of futures so at most max_workers calls are in flight.
    Deadline expiry cancels queued work and raises RunTimeoutError; calls
    already running are left to finish on their own timeouts.
    """
    iterator = iter(items)
    inflight: Dict[Future[R], int] = {}
    inputs: Dict[int, T] = {}
    done_by_index: Dict[int, UnitResult[T, R]] = {}
    submitted = 0

    def _submit_next() -> bool:
        nonlocal submitted
        try:
            item = next(iterator)
        except StopIteration:
            return False
        inputs[submitted] = item
        inflight[executor.submit(func, item)] = submitted
        submitted += 1
        return True

    executor = ThreadPoolExecutor(max_workers=max(1, max_workers))
    try:
        for _ in range(max(1, max_workers)):
            if not _submit_next():
                break

        while inflight:
            timeout = deadline.remaining() if deadline is not None else None
            done, _ = wait(inflight.keys(), timeout=timeout, return_when=FIRST_COMPLETED)
            if not done:
                raise RunTimeoutError(f"timed out after {deadline.timeout:g}s waiting for parallel work")
            for fut in done:
                idx = inflight.pop(fut)
                exc = fut.exception()
                if exc is None:
                    unit: UnitResult[T, R] = UnitResult(item=inputs[idx], value=fut.result())
                else:
                    unit = UnitResult(item=inputs[idx], error=exc)
                done_by_index[idx] = unit
                if on_done is not None:
                    on_done(unit)
            for _ in range(len(done)):
                if not _submit_next():
                    break
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)

    return [done_by_index[i] for i in range(submitted)]


def run_joined(
    calls: Mapping[str, Callable[[], R]],
    *,
    deadline: Optional[Deadline] = None,
) -> Dict[str, UnitResult[str, R]]:
    """
    Run independent named calls concurrently and block until every one of them
    has finished (a barrier, not a race). Returns the per-name results; callers
    decide which failures are fatal.
    """
    names = list(calls.keys())
    results = parallel_map_results(
        lambda name: calls[name](),
        names,
        max_workers=len(names) or 1,
        deadline=deadline,
    )
    return {unit.item: unit for unit in results}
