"""A fixed-size pool of worker threads consuming a FIFO job queue."""

from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Callable
from typing import Any, Deque

Job = Callable[[], Any]
ErrorHandler = Callable[[str], None]


class ThreadPoolClosedError(RuntimeError):
    """Raised when a job is pushed to a pool that no longer accepts jobs."""


class ThreadPool:
    """Run jobs on a fixed set of worker threads.

    A job is a callable taking no arguments. It fails by raising an exception
    or by returning ``False``; in either case the error handler is called with
    a diagnostic message.
    """

    def __init__(self, n_threads: int, error_handler: ErrorHandler) -> None:
        self._error_handler = error_handler
        max_threads = max(os.cpu_count() or 1, 1)
        count = min(max(int(n_threads), 1), max_threads)

        self._jobs: Deque[Job] = deque()
        self._condition = threading.Condition()
        self._accepting_jobs = True

        self._threads = [
            threading.Thread(
                target=self._process_jobs,
                name=f"zarrstream-worker-{i}",
                daemon=True,
            )
            for i in range(count)
        ]
        for thread in self._threads:
            thread.start()

    def __enter__(self) -> ThreadPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        # Leaving the context discards jobs that have not started yet.
        with self._condition:
            self._jobs.clear()
        self.await_stop()

    def push_job(self, job: Job) -> None:
        """Queue a job; raise ThreadPoolClosedError if the pool is stopping."""
        with self._condition:
            if not self._accepting_jobs:
                raise ThreadPoolClosedError("Thread pool is not accepting jobs")
            self._jobs.append(job)
            self._condition.notify()

    def await_stop(self) -> None:
        """Stop accepting jobs, wait for queued jobs to finish, join workers."""
        with self._condition:
            self._accepting_jobs = False
            self._condition.notify_all()

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current and thread.is_alive():
                thread.join()

    def n_threads(self) -> int:
        """Return the number of worker threads."""
        return len(self._threads)

    def _should_stop(self) -> bool:
        return not self._accepting_jobs and not self._jobs

    def _process_jobs(self) -> None:
        while True:
            with self._condition:
                self._condition.wait_for(
                    lambda: self._should_stop() or bool(self._jobs)
                )
                if self._should_stop():
                    return
                job = self._jobs.popleft()
            self._run(job)

    def _run(self, job: Job) -> None:
        try:
            result = job()
        except Exception as exc:  # noqa: BLE001 - reported to the handler
            self._error_handler(str(exc) or type(exc).__name__)
            return
        if result is False:
            self._error_handler("Job failed")