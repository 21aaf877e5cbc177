from fieldrelay.core.rate_limit import RateLimiter


def test_allows_up_to_limit_per_key() -> None:
    limiter = RateLimiter(max_calls=2, window_seconds=60)
    assert limiter.allow("a")
    assert limiter.allow("a")
    assert not limiter.allow("a")
    assert limiter.allow("b")

def test_window_expiry(monkeypatch) -> None:
    clock = [1000.0]
    monkeypatch.setattr("fieldrelay.core.rate_limit.time.time", lambda: clock[0])
    limiter = RateLimiter(max_calls=1, window_seconds=10)
    assert limiter.allow("a")
    assert not limiter.allow("a")
    clock[0] += 11
    assert limiter.allow("a")

def test_prune_evicts_expired_keys(monkeypatch) -> None:
    clock = [1000.0]
    monkeypatch.setattr("fieldrelay.core.rate_limit.time.time", lambda: clock[0])
    limiter = RateLimiter(max_calls=5, window_seconds=10)
    limiter.allow("old")
    clock[0] += 5
    limiter.allow("fresh")
    clock[0] += 6
    assert limiter.prune() == 1
    assert limiter.tracked_keys() == 1
    limiter.reset()
    assert limiter.tracked_keys() == 0

def test_allow_evicts_stale_keys_past_threshold(monkeypatch) -> None:
    clock = [1000.0]
    monkeypatch.setattr("fieldrelay.core.rate_limit.time.time", lambda: clock[0])
    limiter = RateLimiter(max_calls=5, window_seconds=10, prune_threshold=3)
    for key in ("a", "b", "c", "d"):
        limiter.allow(key)
    clock[0] += 20
    limiter.allow("e")
    assert limiter.tracked_keys() == 1
