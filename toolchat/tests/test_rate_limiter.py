import threading

import pytest

from toolchat.tools.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_five_per_minute_window():
    clock = FakeClock()
    limiter = RateLimiter.per_minute(5, clock=clock)
    assert limiter.refill_interval == 12.0

    assert [limiter.allow() for _ in range(5)] == [True] * 5
    clock.now += 11.9
    assert limiter.allow() is False

    clock.now += 0.1
    assert limiter.allow() is True
    assert limiter.allow() is False


def test_refill_is_capped_at_capacity():
    clock = FakeClock()
    limiter = RateLimiter(capacity=3, refill_interval=1.0, clock=clock)
    for _ in range(3):
        limiter.allow()
    clock.now += 100
    assert [limiter.allow() for _ in range(4)] == [True, True, True, False]


def test_partial_interval_is_kept_for_next_refill():
    clock = FakeClock()
    limiter = RateLimiter(capacity=2, refill_interval=10.0, clock=clock)
    limiter.allow()
    limiter.allow()
    clock.now += 15
    assert limiter.allow() is True
    assert limiter.allow() is False
    clock.now += 5
    assert limiter.allow() is True


def test_invalid_arguments():
    with pytest.raises(ValueError):
        RateLimiter(capacity=0, refill_interval=1.0)
    with pytest.raises(ValueError):
        RateLimiter(capacity=1, refill_interval=0)


def test_concurrent_callers_never_exceed_capacity():
    limiter = RateLimiter(capacity=5, refill_interval=3600.0)
    admitted = []
    lock = threading.Lock()

    def worker():
        ok = limiter.allow()
        with lock:
            admitted.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert admitted.count(True) == 5
