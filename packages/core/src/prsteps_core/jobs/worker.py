"""Thread pool pulling jobs from the shared queue.

Jobs from different sessions, and different steps of one session, run in
parallel. Stage ordering comes from chaining in the dispatcher, not from
locks here.
"""

from __future__ import annotations

import logging
import threading

from prsteps_core.jobs.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(self, dispatcher: Dispatcher, workers: int = 4, poll_interval: float = 0.5):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.dispatcher = dispatcher
        self.workers = workers
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        recovered = self.dispatcher.queue.requeue_active()
        if recovered:
            logger.info("Recovered %d interrupted job(s).", recovered)
        self._stop.clear()
        for i in range(self.workers):
            thread = threading.Thread(target=self._loop, name=f"prsteps-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d worker(s).", self.workers)

    def stop(self, timeout: float | None = None) -> None:
        """Signal workers to stop after their current job and wait for them."""
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Workers stopped.")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                ran = self.dispatcher.run_once()
            except Exception:
                # Handler failures are handled inside the dispatcher; anything
                # reaching here is a store or queue fault. Keep the worker alive.
                logger.exception("Worker loop error")
                ran = False
            if not ran:
                self._stop.wait(self.poll_interval)

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
