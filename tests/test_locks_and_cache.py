from __future__ import annotations

import threading
import time

from apex_achievements.cache import PointsTotalCache
from apex_achievements.locks import KeyedLocks


def test_keyed_locks_serialize_same_key_and_release_slots() -> None:
    locks = KeyedLocks()
    active = 0
    peak = 0
    guard = threading.Lock()

    def worker() -> None:
        nonlocal active, peak
        with locks.hold(("u1", "first_lesson")):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert len(locks) == 0


def test_distinct_keys_do_not_block() -> None:
    locks = KeyedLocks()
    with locks.hold(("global", "all_time")):
        acquired = threading.Event()

        def other() -> None:
            with locks.hold(("global", "2026-W42")):
                acquired.set()

        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(timeout=2)
        thread.join()


def test_stale_total_is_not_cached_after_invalidation() -> None:
    cache = PointsTotalCache()
    generation = cache.generation("u1")
    cache.invalidate("u1")

    assert cache.set("u1", 10, generation=generation) is False
    assert "u1" not in cache

    assert cache.set("u1", 25, generation=cache.generation("u1")) is True
    assert cache.get("u1") == 25
    cache.clear()
    assert cache.get("u1") is None


def test_clear_forgets_counters_and_rejects_older_readers() -> None:
    cache = PointsTotalCache()
    for user in ("u1", "u2", "u3"):
        cache.invalidate(user)
    assert len(cache) == 3

    generation = cache.generation("u1")
    cache.clear()
    assert len(cache) == 0

    assert cache.set("u1", 40, generation=generation) is False
    assert cache.set("u1", 45, generation=cache.generation("u1")) is True
    assert cache.get("u1") == 45
