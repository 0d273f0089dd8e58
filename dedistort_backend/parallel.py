"""
Thread-pool primitives used for tiles, rows and independent images.

numpy, scipy.fft and OpenCV release the GIL for the heavy parts, so a thread
pool is enough; there is no cooperative scheduling.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, TypeVar

from dedistort_runner.resources import default_worker_count

T = TypeVar("T")
R = TypeVar("R")


def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: Optional[int] = None
) -> List[R]:
    """
    Apply ``func`` to every item on a thread pool.

    Results keep the input order. Exceptions raised by ``func`` propagate to
    the caller.
    """
    items = list(items)
    if not items:
        return []
    workers = min(default_worker_count(max_workers), len(items))
    if workers <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(func, items))


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Split a sequence into consecutive work items of at most ``size`` elements."""
    size = max(1, int(size))
    for start in range(0, len(items), size):
        yield items[start:start + size]


def parallel_for_rows(
    func: Callable[[int, int], None],
    height: int,
    max_workers: Optional[int] = None,
    rows_per_item: int = 32
) -> None:
    """Run ``func(y0, y1)`` over horizontal bands covering ``[0, height)``."""
    bands = [(y0, min(height, y0 + rows_per_item)) for y0 in range(0, height, rows_per_item)]
    parallel_map(lambda band: func(*band), bands, max_workers)
