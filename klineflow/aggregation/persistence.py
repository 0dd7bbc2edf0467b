import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

from klineflow.common.types import Bar
from klineflow.storage.base import BarStore

log = logging.getLogger(__name__)


class PersistenceWorker:
    """
    Writes closed bars to the store off the ingest thread.

    At most ``queue_size`` writes are pending; past that the write runs on the
    caller's thread. Failures are logged and counted, never retried.
    """

    def __init__(self, store: BarStore, workers: int = 2, queue_size: int = 1000):
        self.store = store
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bar-persist")
        self._slots = threading.BoundedSemaphore(queue_size)
        self._lock = threading.Lock()
        self.counters = Counter()

    def _count(self, key: str):
        with self._lock:
            self.counters[key] += 1

    def _write(self, bar: Bar):
        try:
            inserted = self.store.save(bar)
        except Exception as e:
            self._count("write_failed")
            log.error("[persist] save failed symbol=%s period=%s bar_time=%d err=%s: %s",
                      bar.symbol, bar.period, bar.bar_time, type(e).__name__, e)
            return
        self._count("write_ok" if inserted else "write_skipped")

    def _run(self, bar: Bar):
        try:
            self._write(bar)
        finally:
            self._slots.release()

    def submit(self, bar: Bar):
        if not self._slots.acquire(blocking=False):
            self._count("write_inline")
            log.warning("[persist] queue full, writing inline symbol=%s period=%s bar_time=%d",
                        bar.symbol, bar.period, bar.bar_time)
            self._write(bar)
            return
        try:
            self._pool.submit(self._run, bar)
        except RuntimeError:
            # pool already shut down
            self._slots.release()
            self._write(bar)

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self.counters)

    def close(self, wait: bool = True):
        self._pool.shutdown(wait=wait)
