"""Work-partitioned execution of per-entity update passes."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Sequence

from .config import DEFAULT_PARALLEL, DEFAULT_WORKERS

logger = logging.getLogger(__name__)


def _partition(indices: Sequence[int], parts: int) -> list[Sequence[int]]:
    """Split indices into at most ``parts`` contiguous, non-empty chunks."""
    parts = max(1, min(parts, len(indices)))
    size, extra = divmod(len(indices), parts)
    chunks = []
    start = 0
    for part in range(parts):
        stop = start + size + (1 if part < extra else 0)
        chunks.append(indices[start:stop])
        start = stop
    return chunks


def _run_chunk(unit: Callable[[int], None], chunk: Sequence[int]) -> None:
    for index in chunk:
        unit(index)


class Dispatcher:
    """
    Run a unit of work once per index, optionally on a thread pool.

    Every call is a full barrier: it returns only after all units finished.
    Workers share the caller's memory, so a unit may update the entity at its
    own index in place. If any unit raises, the first error is re-raised once
    all chunks have completed.
    """

    def __init__(self, max_workers: int = DEFAULT_WORKERS, parallel: bool = DEFAULT_PARALLEL):
        if max_workers < 1:
            raise ValueError("max_workers must be positive")
        self.max_workers = max_workers
        self.parallel = parallel

        self._lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None

    def _get_pool(self) -> ThreadPoolExecutor:
        """Return the shared thread pool, creating it on first use."""
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ndcg-mf")
            return self._pool

    def close(self) -> None:
        """Shut down the worker threads. A later parallel call starts a new pool."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def run_over_range(
        self,
        indices: Sequence[int] | int,
        unit: Callable[[int], None],
        parallel: bool | None = None,
    ) -> None:
        if isinstance(indices, int):
            indices = range(indices)
        use_parallel = self.parallel if parallel is None else parallel

        if not use_parallel or self.max_workers == 1 or len(indices) <= 1:
            _run_chunk(unit, indices)
            return

        chunks = _partition(indices, self.max_workers)
        pool = self._get_pool()
        futures = [pool.submit(_run_chunk, unit, chunk) for chunk in chunks]
        wait(futures)

        errors = [future.exception() for future in futures if future.exception() is not None]
        if errors:
            logger.error(f"{len(errors)} of {len(chunks)} work chunks failed")
            raise errors[0]
