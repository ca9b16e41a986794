import os
import threading
import time

import pytest

from zarrstream.thread_pool import ThreadPool, ThreadPoolClosedError


def test_single_thread_runs_jobs_in_order():
    messages = []
    pool = ThreadPool(1, messages.append)
    results = []
    for i in range(10):
        pool.push_job(lambda i=i: results.append(i))
    pool.await_stop()
    assert results == list(range(10))
    assert messages == []


def _count(counter, lock):
    time.sleep(0.001)
    with lock:
        counter.append(1)


def test_await_stop_drains_all_jobs():
    messages = []
    pool = ThreadPool(4, messages.append)
    counter = []
    lock = threading.Lock()

    for _ in range(50):
        pool.push_job(lambda: _count(counter, lock))
    pool.await_stop()
    assert len(counter) == 50
    assert messages == []


def test_push_after_stop_raises():
    messages = []
    pool = ThreadPool(2, messages.append)
    pool.await_stop()
    with pytest.raises(ThreadPoolClosedError):
        pool.push_job(lambda: True)


def _failing():
    raise ValueError("boom")


def test_exception_reported_to_handler():
    messages = []
    pool = ThreadPool(1, messages.append)
    pool.push_job(_failing)
    pool.await_stop()
    assert messages == ["boom"]


def test_false_result_reported_to_handler():
    messages = []
    pool = ThreadPool(1, messages.append)
    pool.push_job(lambda: False)
    pool.push_job(lambda: True)
    pool.push_job(lambda: None)
    pool.await_stop()
    assert len(messages) == 1


def test_thread_count_clamped_to_at_least_one():
    messages = []
    pool = ThreadPool(0, messages.append)
    try:
        assert pool.n_threads() == 1
    finally:
        pool.await_stop()


def test_thread_count_clamped_to_cpu_count():
    messages = []
    pool = ThreadPool(10_000, messages.append)
    try:
        assert 1 <= pool.n_threads() <= (os.cpu_count() or 1)
    finally:
        pool.await_stop()


def test_context_exit_stops_accepting():
    messages = []
    with ThreadPool(2, messages.append) as pool:
        pool.push_job(lambda: True)
    with pytest.raises(ThreadPoolClosedError):
        pool.push_job(lambda: True)