from __future__ import annotations

import allure
import pytest

from vega_dispatch.errors import NotFoundError
from vega_dispatch.taskqueue import (
    ExponentialRateLimiter,
    RateLimitingQueue,
    TaskQueue,
    split_key,
)

pytestmark = [
    allure.epic("Control Loop"),
    allure.feature("Rate-Limited Work Queue"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_backs_off_exponentially_and_caps() -> None:
    limiter = ExponentialRateLimiter(base_delay_seconds=0.005, max_delay_seconds=0.015)

    assert [limiter.when("vega/a") for _ in range(4)] == pytest.approx(
        [0.005, 0.01, 0.015, 0.015],
    )
    assert limiter.num_requeues("vega/a") == 4
    assert limiter.when("vega/b") == pytest.approx(0.005)

    limiter.forget("vega/a")
    assert limiter.num_requeues("vega/a") == 0
    assert limiter.when("vega/a") == pytest.approx(0.005)


def test_queue_stores_a_waiting_key_once() -> None:
    queue = RateLimitingQueue()
    queue.add("vega/a")
    queue.add("vega/a")
    queue.add("vega/b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == "vega/a"
    assert queue.get(timeout=0) == "vega/b"
    assert queue.get(timeout=0) is None


def test_key_added_while_processing_is_handed_out_after_done() -> None:
    queue = RateLimitingQueue()
    queue.add("vega/a")
    key = queue.get(timeout=0)

    queue.add("vega/a")
    assert len(queue) == 0
    assert queue.get(timeout=0) is None

    queue.done(key)
    assert queue.get(timeout=0) == "vega/a"


def test_add_after_waits_for_the_clock() -> None:
    clock = _Clock()
    queue = RateLimitingQueue(clock=clock)
    queue.add_after("vega/a", 5.0)
    queue.add_after("vega/a", 10.0)

    assert queue.get(timeout=0) is None
    clock.now += 5.0
    assert queue.get(timeout=0) == "vega/a"


def test_shutdown_hands_out_queued_keys_then_stops() -> None:
    queue = RateLimitingQueue()
    queue.add("vega/a")
    queue.add_after("vega/b", 60.0)
    queue.shut_down()
    queue.add("vega/c")

    assert queue.shutting_down
    assert queue.get() == "vega/a"
    assert queue.get() is None


def test_task_queue_forgets_missing_objects() -> None:
    def _sync(key: str) -> None:
        namespace, name = split_key(key)
        raise NotFoundError("Calculation", namespace, name)

    tasks = TaskQueue("calculations", _sync)
    tasks.enqueue_key("vega/a")

    assert tasks.process_next_item(timeout=0) is True
    assert tasks.queue.num_requeues("vega/a") == 0
    assert len(tasks.queue) == 0


def test_task_queue_requeues_failures_with_backoff() -> None:
    calls: list[str] = []

    def _sync(key: str) -> None:
        calls.append(key)
        if len(calls) == 1:
            raise RuntimeError("transient")

    tasks = TaskQueue(
        "calculations",
        _sync,
        rate_limiter=ExponentialRateLimiter(base_delay_seconds=0.01, max_delay_seconds=0.01),
    )
    tasks.enqueue_key("vega/a")

    assert tasks.process_next_item(timeout=0) is True
    assert tasks.queue.num_requeues("vega/a") == 1

    assert tasks.process_next_item(timeout=2.0) is True
    assert calls == ["vega/a", "vega/a"]
    assert tasks.queue.num_requeues("vega/a") == 0


def test_task_queue_worker_exits_on_shutdown() -> None:
    tasks = TaskQueue("calculations", lambda _: None)
    tasks.shutdown()

    assert tasks.process_next_item() is False


@pytest.mark.parametrize("key", ["", "vega", "vega/", "/calc"])
def test_split_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(ValueError, match="Malformed object key"):
        split_key(key)
