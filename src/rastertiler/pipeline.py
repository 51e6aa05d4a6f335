"""Concurrent tile rendering with a single store writer.

The calling thread feeds tile jobs into a bounded queue. A fixed pool of
worker threads renders them and pushes results to a second bounded queue,
which exactly one writer thread drains into the tile store. Observers (e.g.
a progress bar) are notified by the writer after each result and never
affect control flow: their errors are logged and the run carries on.

The first error from any stage cancels the run: no further jobs are queued,
jobs already queued are drained without being rendered, and the error is
re-raised once every thread has stopped. The store is never finalized by
the pipeline itself.
"""
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from .errors import ConfigurationError
from .tilegrid import TileKey

logger = logging.getLogger(__name__)

# end-of-stream marker, one per worker on each queue
_DONE = object()


@dataclass(frozen=True)
class EncodedTile:
    """Rendered tile; ``data`` is None when the tile was skipped as empty."""

    key: TileKey
    data: Optional[bytes]
    size: int = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "size", 0 if self.data is None else len(self.data))


def notify(observers: Sequence[Callable], tile: EncodedTile):
    """Call each observer with ``tile``, logging rather than raising errors."""
    for observer in observers:
        try:
            observer(tile)
        except Exception:
            logger.exception("tile observer failed for %s", tile.key)


class Pipeline:
    """Render tile jobs on a worker pool and write them from one thread.

    Parameters
    ----------
    render : callable
        ``render(job)`` returns encoded tile bytes, or None to skip the tile.
        Called concurrently from worker threads.
    store : rastertiler.mbtiles.TileStore
        Destination; only the writer thread calls ``store.put``.
    workers : int, optional
        Number of render threads.
    queue_size : int, optional
        Capacity of the job and result queues; 0 picks four per worker.
    observers : sequence of callable, optional
        Each is called as ``observer(tile)`` for every EncodedTile.

    A pipeline may be run more than once; each run starts uncancelled.
    """

    def __init__(self, render: Callable, store, workers: int = 4, queue_size: int = 0,
                 observers: Sequence[Callable] = ()):
        if workers < 1:
            raise ConfigurationError(f"workers must be at least 1: {workers}")
        self.render = render
        self.store = store
        self.workers = workers
        self.queue_size = queue_size if queue_size > 0 else 4 * workers
        self.observers = list(observers)
        self._cancel = threading.Event()
        self._error_lock = threading.Lock()
        self._error = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _fail(self, err: BaseException):
        with self._error_lock:
            if self._error is None:
                self._error = err
                logger.error("aborting tile pipeline: %s", err)
        self._cancel.set()

    def _work(self, jobs: queue.Queue, results: queue.Queue):
        while True:
            job = jobs.get()
            if job is _DONE:
                results.put(_DONE)
                return
            if self._cancel.is_set():
                continue
            try:
                results.put(EncodedTile(job.key, self.render(job)))
            except Exception as err:
                self._fail(err)

    def _write(self, results: queue.Queue) -> int:
        written = 0
        finished = 0
        while finished < self.workers:
            tile = results.get()
            if tile is _DONE:
                finished += 1
                continue
            if self._cancel.is_set():
                continue
            try:
                if tile.data is not None:
                    self.store.put(tile.key, tile.data)
                    written += 1
            except Exception as err:
                self._fail(err)
                continue
            notify(self.observers, tile)
        return written

    def run(self, jobs: Iterable) -> int:
        """Render and store every job.

        Parameters
        ----------
        jobs : iterable of TileJob
            Consumed lazily, so very large pyramids are never held in memory.

        Returns
        -------
        int
            Number of tiles written to the store.

        Raises
        ------
        Exception
            The first error raised by a worker, the store or the job
            iterator. Observer errors are logged and ignored.
        """
        self._cancel = threading.Event()
        self._error = None
        job_queue = queue.Queue(maxsize=self.queue_size)
        result_queue = queue.Queue(maxsize=self.queue_size)

        with ThreadPoolExecutor(max_workers=self.workers + 1,
                                thread_name_prefix="rastertiler") as executor:
            writer = executor.submit(self._write, result_queue)
            for _ in range(self.workers):
                executor.submit(self._work, job_queue, result_queue)
            try:
                for job in jobs:
                    if self._cancel.is_set():
                        break
                    job_queue.put(job)
            except BaseException as err:
                self._fail(err)
            finally:
                for _ in range(self.workers):
                    job_queue.put(_DONE)
            written = writer.result()

        if self._error is not None:
            raise self._error
        logger.debug("pipeline wrote %d tiles", written)
        return written
