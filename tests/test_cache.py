import pytest

from cache import TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)
    cache.set(1, "Save 10% of every payday.")

    clock.now += 299
    assert cache.get(1) == "Save 10% of every payday."

    clock.now += 1
    assert cache.get(1) is None
    assert len(cache) == 0


def test_keys_are_independent() -> None:
    cache = TTLCache(60, clock=FakeClock())
    cache.set(1, "a")
    cache.set(2, "b")

    assert cache.get(1) == "a"
    assert cache.get(2) == "b"
    assert cache.get(3) is None


def test_last_write_wins_and_refreshes_expiry() -> None:
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("k", "old")
    clock.now += 8
    cache.set("k", "new")
    clock.now += 8

    assert cache.get("k") == "new"


def test_ttl_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TTLCache(0)
