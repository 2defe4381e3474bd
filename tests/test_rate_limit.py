from rate_limit import InMemoryRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_the_limit_within_a_window():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(3, 60, clock=clock)
    assert [limiter.try_acquire("ip:user") for _ in range(4)] == [True, True, True, False]


def test_window_slides():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(2, 60, clock=clock)
    assert limiter.try_acquire("k")
    clock.now += 30
    assert limiter.try_acquire("k")
    assert not limiter.try_acquire("k")
    clock.now += 31
    # first hit has left the window
    assert limiter.try_acquire("k")
    assert not limiter.try_acquire("k")


def test_keys_are_independent():
    limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())
    assert limiter.try_acquire("a")
    assert limiter.try_acquire("b")
    assert not limiter.try_acquire("a")


def test_reset_clears_all_keys():
    limiter = InMemoryRateLimiter(1, 60, clock=FakeClock())
    limiter.try_acquire("a")
    limiter.reset()
    assert limiter.try_acquire("a")


def test_keys_are_evicted_once_their_window_has_passed():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(5, 60, clock=clock)
    for i in range(1000):
        limiter.try_acquire(f"10.0.0.{i}:")
    assert limiter.tracked_keys == 1000
    clock.now += 61
    assert limiter.try_acquire("10.0.1.1:")
    assert limiter.tracked_keys == 1


def test_keys_with_recent_hits_are_kept():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(1, 60, clock=clock)
    limiter.try_acquire("old")
    clock.now += 30
    limiter.try_acquire("recent")
    clock.now += 31
    limiter.try_acquire("new")
    assert limiter.tracked_keys == 2
    assert not limiter.try_acquire("recent")
