from pdftools_backend.ratelimit import MemoryCounterStore, RateLimiter


class Tick:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit_within_window():
    clock = Tick()
    limiter = RateLimiter(max_requests=3, window_seconds=60, clock=clock)
    assert [limiter.hit("1.2.3.4") for _ in range(4)] == [True, True, True, False]


def test_clients_are_counted_separately():
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=Tick())
    assert limiter.hit("a") is True
    assert limiter.hit("b") is True
    assert limiter.hit("a") is False


def test_window_resets_after_it_ends():
    clock = Tick()
    limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
    assert limiter.hit("a") is True
    assert limiter.hit("a") is False
    clock.now = 60.0
    assert limiter.hit("a") is False
    clock.now = 60.5
    assert limiter.hit("a") is True


def test_store_is_swappable_and_prunes_old_windows():
    clock = Tick()
    store = MemoryCounterStore()
    limiter = RateLimiter(max_requests=5, window_seconds=10, store=store, clock=clock)
    limiter.hit("a")
    limiter.hit("b")
    assert len(store) == 2
    store.prune(11.0)
    assert len(store) == 0
