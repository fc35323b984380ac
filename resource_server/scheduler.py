from __future__ import annotations

import logging
import threading

from resource_server.lifecycle import SweepResult, URLLifecycleManager
from resource_server.observability import increment, log_event
from resource_server.store import ResourceStore

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Background thread that renews URLs nearing expiry.

    Each tick sweeps one batch of active resources, walking the table by id so
    a large catalogue is covered over consecutive ticks.
    """

    def __init__(
        self,
        manager: URLLifecycleManager,
        store: ResourceStore,
        *,
        interval_s: float,
        batch_size: int,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.manager = manager
        self.store = store
        self.interval_s = interval_s
        self.batch_size = batch_size
        self._offset = 0
        self._stop = threading.Event()
        self._started = False
        self._start_lock = threading.Lock()
        self._worker: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        with self._start_lock:
            if self._started:
                raise RuntimeError("refresh scheduler already started")
            self._started = True
            self._worker = threading.Thread(
                target=self._worker_loop, daemon=True, name="url-refresh-scheduler"
            )
            self._worker.start()
        logger.info(
            "refresh scheduler started interval_s=%s batch_size=%d",
            self.interval_s,
            self.batch_size,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=timeout)
        logger.info("refresh scheduler stopped")

    def tick(self) -> SweepResult:
        batch = self.store.load_active_batch(limit=self.batch_size, offset=self._offset)
        if len(batch) < self.batch_size:
            self._offset = 0
        else:
            self._offset += self.batch_size
        increment("scheduler.ticks")
        return self.manager.sweep_stale(batch, should_stop=self._stop.is_set)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = self.tick()
                if result.failed:
                    logger.warning(
                        "sweep left %d resources unrefreshed; retrying next tick",
                        len(result.failed),
                    )
            except Exception:
                increment("scheduler.ticks.failed")
                log_event("scheduler.tick_failed")
                logger.exception("refresh scheduler tick failed")
            self._stop.wait(self.interval_s)
