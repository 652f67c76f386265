from __future__ import annotations

import threading

import pytest

from reloader.src.workqueue import RateLimitingQueue


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _queue(clock: FakeClock | None = None, base: float = 1.0, cap: float = 8.0) -> RateLimitingQueue[str]:
    return RateLimitingQueue(base_delay=base, max_delay=cap, clock=clock or FakeClock())


def test_repeated_adds_coalesce_into_one_emission() -> None:
    queue = _queue()
    for _ in range(5):
        queue.add("ns/db-creds")

    assert len(queue) == 1
    assert queue.get() == "ns/db-creds"
    assert len(queue) == 0


def test_distinct_keys_are_emitted_in_arrival_order() -> None:
    queue = _queue()
    queue.add("ns/a")
    queue.add("ns/b")
    queue.add("ns/a")

    assert [queue.get(), queue.get()] == ["ns/a", "ns/b"]


def test_key_added_while_processing_is_requeued_after_done() -> None:
    queue = _queue()
    queue.add("ns/db-creds")
    key = queue.get()

    queue.add("ns/db-creds")
    queue.add("ns/db-creds")
    assert len(queue) == 0, "an in-flight key must not be handed to a second worker"

    queue.done(key)
    assert len(queue) == 1
    assert queue.get() == "ns/db-creds"


def test_done_without_readd_leaves_queue_empty() -> None:
    queue = _queue()
    queue.add("ns/db-creds")
    queue.done(queue.get())

    assert len(queue) == 0


def test_rate_limited_delay_doubles_up_to_the_cap() -> None:
    queue = _queue(base=1.0, cap=8.0)

    delays = [queue.add_rate_limited("ns/db-creds") for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 8.0]
    assert queue.num_requeues("ns/db-creds") == 5


def test_forget_resets_backoff() -> None:
    queue = _queue(base=1.0, cap=8.0)
    queue.add_rate_limited("ns/db-creds")
    queue.add_rate_limited("ns/db-creds")

    queue.forget("ns/db-creds")

    assert queue.num_requeues("ns/db-creds") == 0
    assert queue.add_rate_limited("ns/db-creds") == 1.0


def test_rate_limited_key_becomes_available_after_its_delay() -> None:
    clock = FakeClock()
    queue = _queue(clock=clock, base=2.0)
    queue.add_rate_limited("ns/db-creds")

    assert len(queue) == 0

    clock.now += 2.0
    assert queue.get() == "ns/db-creds"


def test_earlier_delay_supersedes_a_later_one_without_duplicates() -> None:
    clock = FakeClock()
    queue = _queue(clock=clock)
    queue.add_after("ns/db-creds", 10.0)
    queue.add_after("ns/db-creds", 2.0)

    clock.now += 2.0
    assert queue.get() == "ns/db-creds"
    queue.done("ns/db-creds")

    clock.now += 10.0
    queue.add("ns/other")
    assert queue.get() == "ns/other"
    assert len(queue) == 0


def test_add_after_with_zero_delay_adds_immediately() -> None:
    queue = _queue()
    queue.add_after("ns/db-creds", 0)

    assert len(queue) == 1


def test_shutdown_unblocks_waiting_workers_with_sentinel() -> None:
    queue = _queue()
    results: list[str | None] = []

    workers = [threading.Thread(target=lambda: results.append(queue.get())) for _ in range(3)]
    for worker in workers:
        worker.start()

    queue.shut_down()
    for worker in workers:
        worker.join(timeout=2.0)

    assert all(not worker.is_alive() for worker in workers)
    assert results == [None, None, None]


def test_shutdown_stops_handing_out_keys_and_ignores_adds() -> None:
    queue = _queue()
    queue.add("ns/a")

    queue.shut_down()
    queue.add("ns/b")

    assert queue.shutting_down
    assert queue.get() is None
    assert queue.get() is None


def test_blocked_get_wakes_when_work_arrives() -> None:
    queue = _queue()
    results: list[str | None] = []
    worker = threading.Thread(target=lambda: results.append(queue.get()))
    worker.start()

    queue.add("ns/db-creds")
    worker.join(timeout=2.0)

    assert results == ["ns/db-creds"]


@pytest.mark.parametrize(("base", "cap"), [(0.0, 1.0), (2.0, 1.0)])
def test_invalid_backoff_bounds_are_rejected(base: float, cap: float) -> None:
    with pytest.raises(ValueError):
        RateLimitingQueue(base_delay=base, max_delay=cap)
