import pytest
from builders import FakeClock

from spread_controller.workqueue import TokenBucket, WorkQueue


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return WorkQueue(base_delay=0.5, max_delay=4.0, qps=1000, burst=1000, clock=clock)


def test_enqueue_coalesces_duplicates(queue):
    queue.enqueue("default/web")
    queue.enqueue("default/web")

    assert len(queue) == 1
    assert queue.dequeue(timeout=0) == "default/web"
    assert queue.dequeue(timeout=0) is None


def test_key_is_never_dispatched_twice_concurrently(queue):
    queue.enqueue("default/web")
    assert queue.dequeue(timeout=0) == "default/web"

    queue.enqueue("default/web")
    queue.enqueue("default/web")

    assert queue.is_processing("default/web")
    assert queue.is_pending("default/web")
    assert queue.dequeue(timeout=0) is None


def test_dirty_key_is_requeued_exactly_once(queue):
    queue.enqueue("default/web")
    queue.dequeue(timeout=0)
    queue.enqueue("default/web")
    queue.enqueue("default/web")

    queue.mark_done("default/web")

    assert len(queue) == 1
    assert queue.dequeue(timeout=0) == "default/web"
    queue.mark_done("default/web")
    assert len(queue) == 0
    assert not queue.is_pending("default/web")


def test_mark_failed_backs_off_exponentially(queue, clock):
    delays = []
    for _ in range(5):
        queue.enqueue("default/web")
        clock.advance(10)
        assert queue.dequeue(timeout=0) == "default/web"
        delays.append(queue.mark_failed("default/web"))

    assert delays == [0.5, 1.0, 2.0, 4.0, 4.0]
    assert queue.failures("default/web") == 5

    queue.forget("default/web")
    assert queue.failures("default/web") == 0


def test_failed_key_waits_out_its_delay(queue, clock):
    queue.enqueue("default/web")
    queue.dequeue(timeout=0)
    queue.mark_failed("default/web")

    assert queue.is_pending("default/web")
    assert queue.dequeue(timeout=0) is None

    clock.advance(0.5)
    assert queue.dequeue(timeout=0) == "default/web"


def test_direct_enqueue_overrides_delay(queue):
    queue.enqueue_after("default/web", 10)
    queue.enqueue("default/web")

    assert queue.dequeue(timeout=0) == "default/web"
    queue.mark_done("default/web")
    assert queue.dequeue(timeout=0) is None


def test_earlier_delay_wins(queue, clock):
    queue.enqueue_after("default/web", 10)
    queue.enqueue_after("default/web", 2)

    clock.advance(2)
    assert queue.dequeue(timeout=0) == "default/web"


def test_shutdown_drops_pending_keys(queue):
    queue.enqueue("default/a")
    queue.enqueue("default/b")
    queue.enqueue_after("default/c", 5)

    assert queue.shutdown() == 3
    assert queue.shutting_down
    assert queue.dequeue(timeout=0) is None

    queue.enqueue("default/d")
    assert len(queue) == 0


def test_dispatch_is_rate_limited(clock):
    queue = WorkQueue(qps=1, burst=1, clock=clock)
    queue.enqueue("default/a")
    queue.enqueue("default/b")

    assert queue.dequeue(timeout=0) == "default/a"
    assert queue.dequeue(timeout=0) is None

    clock.advance(1)
    assert queue.dequeue(timeout=0) == "default/b"


def test_token_bucket(clock):
    bucket = TokenBucket(rate=2, burst=2, clock=clock)

    assert bucket.try_acquire() == (True, 0.0)
    assert bucket.try_acquire() == (True, 0.0)
    acquired, wait = bucket.try_acquire()
    assert not acquired
    assert wait == pytest.approx(0.5)

    clock.advance(0.5)
    assert bucket.try_acquire()[0]
