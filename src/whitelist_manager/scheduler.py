"""Fixed-period job scheduler.

Each job gets a timer thread that fires on a fixed period measured from
registration. Every firing runs on its own worker thread so a slow run never
shifts the period; overlap control is left to the job itself. Slots missed
while the timer could not run are skipped, never replayed. Stopping a job
ends the timer and then waits for runs already in progress to finish.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class PeriodicJob:
    """A named callable fired every interval_seconds on a background thread."""

    def __init__(
        self,
        name: str,
        func: Callable[[], object],
        interval_seconds: float,
        run_immediately: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"Job '{name}' interval must be positive, got {interval_seconds}")
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._workers: Set[threading.Thread] = set()
        self._workers_lock = threading.Lock()
        self.fire_count = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"job-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the timer, then wait for runs in progress to finish.

        Runs are never interrupted. timeout bounds each join; None waits for good.
        """
        self._stop_event.set()
        current = threading.current_thread()
        if self._thread is not None and self._thread is not current:
            self._thread.join(timeout)

        with self._workers_lock:
            workers = [w for w in self._workers if w is not current]
        if workers:
            logger.info(f"Waiting for {len(workers)} in-flight run(s) of job '{self.name}'")
        for worker in workers:
            worker.join(timeout)

    @property
    def active_runs(self) -> int:
        with self._workers_lock:
            return len(self._workers)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_fire_time(self, scheduled: float, now: float) -> float:
        """Next slot on the fixed grid strictly after now."""
        next_time = scheduled + self.interval_seconds
        if next_time <= now:
            missed = int((now - next_time) // self.interval_seconds) + 1
            next_time += missed * self.interval_seconds
        return next_time

    def _run(self) -> None:
        started = self._clock()
        scheduled = started if self.run_immediately else started + self.interval_seconds

        while not self._stop_event.is_set():
            delay = scheduled - self._clock()
            if delay > 0 and self._stop_event.wait(delay):
                break
            self._fire()
            scheduled = self.next_fire_time(scheduled, self._clock())

    def _fire(self) -> None:
        self.fire_count += 1
        worker = threading.Thread(
            target=self._invoke,
            name=f"job-{self.name}-{self.fire_count}",
            daemon=True,
        )
        with self._workers_lock:
            self._workers.add(worker)
        worker.start()

    def _invoke(self) -> None:
        try:
            self.func()
        except Exception as e:
            logger.error(f"Job '{self.name}' failed: {e}", exc_info=True)
        finally:
            with self._workers_lock:
                self._workers.discard(threading.current_thread())


class JobScheduler:
    """Registry of running periodic jobs."""

    def __init__(self) -> None:
        self._jobs: Dict[str, PeriodicJob] = {}
        self._lock = threading.Lock()

    def add_job(
        self,
        name: str,
        func: Callable[[], object],
        interval_seconds: float,
        run_immediately: bool = True,
    ) -> PeriodicJob:
        job = PeriodicJob(name, func, interval_seconds, run_immediately=run_immediately)
        with self._lock:
            if name in self._jobs:
                raise ValueError(f"Job '{name}' is already scheduled")
            self._jobs[name] = job
        job.start()
        logger.debug(f"Scheduled job '{name}' every {interval_seconds}s")
        return job

    def remove_all_jobs(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.stop(timeout)
            logger.debug(f"Removed job '{job.name}'")

    @property
    def jobs(self) -> List[PeriodicJob]:
        with self._lock:
            return list(self._jobs.values())
