"""
Sliding-window limiter tests with an injected clock.
"""

from types import SimpleNamespace

from shopfront.services.rate_limit_service import SlidingWindowRateLimiter, client_address


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_budget_then_refusal():
    limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())
    assert [limiter.hit("a") for _ in range(4)] == [True, True, True, False]


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.hit("a")
    clock.now += 30
    limiter.hit("a")
    assert limiter.hit("a") is False

    clock.now += 30  # first hit is now exactly one window old
    assert limiter.hit("a") is True
    assert limiter.hit("a") is False


def test_refusals_are_not_recorded():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
    limiter.hit("a")
    for _ in range(5):
        clock.now += 1
        limiter.hit("a")
    clock.now = 1010.0
    assert limiter.hit("a") is True


def test_keys_are_independent_and_resettable():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
    assert limiter.hit("a") is True
    assert limiter.hit("b") is True
    assert limiter.hit("a") is False

    limiter.reset("a")
    assert limiter.hit("a") is True
    assert limiter.hit("b") is False


def _request(headers=None, remote_addr="10.0.0.1"):
    return SimpleNamespace(headers=headers or {}, remote_addr=remote_addr)


def test_client_address_precedence():
    assert client_address(_request({"X-Forwarded-For": "203.0.113.7, 10.0.0.2"})) == "203.0.113.7"
    assert client_address(_request({"X-Real-IP": " 198.51.100.4 "})) == "198.51.100.4"
    assert client_address(_request()) == "10.0.0.1"
    assert client_address(_request(remote_addr=None)) == "unknown"


def test_idle_keys_are_dropped():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60, clock=clock)
    for n in range(1000):
        limiter.hit(f"10.0.{n // 256}.{n % 256}")
    assert len(limiter) == 1000

    clock.now += 3600
    assert limiter.hit("203.0.113.7") is True
    assert len(limiter) == 1


def test_sweep_keeps_keys_inside_their_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
    limiter.hit("idle")
    clock.now += 30
    limiter.hit("busy")

    clock.now += 30
    assert limiter.hit("busy") is False
    assert len(limiter) == 1
