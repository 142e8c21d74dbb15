"""
Parallel dispatch of dense boolean grids

A kernel evaluates a per-cell predicate for a half-open range of rows of an
M x N grid and returns that block as a numpy bool array. Blocks share no
mutable state, so a backend may run them in any order and on any number of
workers; ``evaluate`` blocks until the whole matrix is assembled.
"""

import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple

import numpy as np

from .config import get_settings
from .utils import get_logger

logger = get_logger("dispatch")

Kernel = Callable[[int, int], np.ndarray]


class GridDispatcher(ABC):
    """Evaluates a grid kernel and returns the rows x cols boolean matrix"""

    name = "abstract"

    def __init__(self, block_cells: Optional[int] = None):
        self.block_cells = block_cells or get_settings().block_cells

    def row_blocks(self, rows: int, cols: int) -> List[Tuple[int, int]]:
        step = max(1, self.block_cells // max(1, cols))
        return [(start, min(rows, start + step)) for start in range(0, rows, step)]

    def evaluate(self, rows: int, cols: int, kernel: Kernel) -> np.ndarray:
        out = np.zeros((rows, cols), dtype=bool)
        if rows == 0 or cols == 0:
            return out
        self._run(self.row_blocks(rows, cols), kernel, out)
        return out

    @abstractmethod
    def _run(self, blocks: List[Tuple[int, int]], kernel: Kernel, out: np.ndarray) -> None:
        ...


class SerialDispatcher(GridDispatcher):
    """Row blocks one after another on the calling thread"""

    name = "serial"

    def _run(self, blocks, kernel, out):
        for start, stop in blocks:
            out[start:stop] = kernel(start, stop)


class ThreadPoolDispatcher(GridDispatcher):
    """
    Row blocks spread over a thread pool (numpy releases the GIL for the block work)

    The pool is started on first use and reused by every later ``evaluate``;
    ``shutdown`` (or leaving a ``with`` block) stops it.
    """

    name = "threads"

    def __init__(self, workers: Optional[int] = None, block_cells: Optional[int] = None):
        super().__init__(block_cells)
        self.workers = workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="sheetnest")
            return self._executor

    def _run(self, blocks, kernel, out):
        if len(blocks) == 1:
            start, stop = blocks[0]
            out[start:stop] = kernel(start, stop)
            return
        executor = self._pool()
        futures = {executor.submit(kernel, start, stop): (start, stop) for start, stop in blocks}
        for future, (start, stop) in futures.items():
            out[start:stop] = future.result()

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def __enter__(self) -> "ThreadPoolDispatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()


_BACKENDS = {
    SerialDispatcher.name: SerialDispatcher,
    ThreadPoolDispatcher.name: ThreadPoolDispatcher,
}


def get_dispatcher(
    name: Optional[str] = None,
    workers: Optional[int] = None,
    block_cells: Optional[int] = None,
) -> GridDispatcher:
    """Build the configured backend; arguments override settings"""
    settings = get_settings()
    name = name or settings.dispatcher
    if name not in _BACKENDS:
        raise ValueError(f"Unknown dispatcher '{name}', expected one of {sorted(_BACKENDS)}")
    if name == ThreadPoolDispatcher.name:
        dispatcher = ThreadPoolDispatcher(workers or settings.workers, block_cells)
    else:
        dispatcher = SerialDispatcher(block_cells)
    logger.debug(f"Using {dispatcher.name} grid dispatcher")
    return dispatcher
