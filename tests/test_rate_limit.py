from utils.rate_limit import LoginRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_locks_after_max_failures_for_window():
    clock = FakeClock()
    limiter = LoginRateLimiter(window_seconds=900, max_attempts=5, clock=clock)
    key = limiter.build_key("10.0.0.1", " Max@Example.com ")
    assert key == "10.0.0.1|max@example.com"

    for attempt in range(1, 5):
        assert limiter.record_failure(key) == attempt
        assert not limiter.is_limited(key)
    assert limiter.record_failure(key) == 5
    assert limiter.is_limited(key)

    clock.now += 899
    assert limiter.is_limited(key)
    clock.now += 2
    assert not limiter.is_limited(key)
    assert limiter.record_failure(key) == 1


def test_failures_outside_window_do_not_add_up():
    clock = FakeClock()
    limiter = LoginRateLimiter(window_seconds=60, max_attempts=3, clock=clock)
    key = limiter.build_key("10.0.0.1", "a@example.com")
    limiter.record_failure(key)
    limiter.record_failure(key)
    clock.now += 61
    assert limiter.record_failure(key) == 1
    assert not limiter.is_limited(key)


def test_keys_are_independent_and_reset_clears():
    limiter = LoginRateLimiter(max_attempts=1, clock=FakeClock())
    a = limiter.build_key("10.0.0.1", "a@example.com")
    b = limiter.build_key("10.0.0.2", "a@example.com")
    limiter.record_failure(a)
    assert limiter.is_limited(a)
    assert not limiter.is_limited(b)
    limiter.reset(a)
    assert not limiter.is_limited(a)
    limiter.record_failure(b)
    limiter.clear()
    assert not limiter.is_limited(b)


def test_expired_keys_are_swept_on_later_failures():
    clock = FakeClock()
    limiter = LoginRateLimiter(
        window_seconds=60, max_attempts=5, clock=clock, sweep_interval=30
    )
    for n in range(50):
        limiter.record_failure(limiter.build_key("10.0.0.1", f"user{n}@example.com"))
    assert len(limiter) == 50

    clock.now += 61
    limiter.record_failure(limiter.build_key("10.0.0.1", "fresh@example.com"))
    assert len(limiter) == 1


def test_locked_keys_survive_a_sweep_until_unlocked():
    clock = FakeClock()
    limiter = LoginRateLimiter(
        window_seconds=60, max_attempts=1, clock=clock, sweep_interval=0
    )
    locked = limiter.build_key("10.0.0.1", "a@example.com")
    limiter.record_failure(locked)
    clock.now += 59
    limiter.record_failure(limiter.build_key("10.0.0.1", "b@example.com"))
    assert limiter.is_limited(locked)
    clock.now += 2
    limiter.record_failure(limiter.build_key("10.0.0.1", "c@example.com"))
    assert len(limiter) == 2
    assert not limiter.is_limited(locked)
