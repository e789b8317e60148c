"""Tests for the in-process session cache.

The cache is read by every authenticated request and written by login,
logout and read-through population, so its operations must be safe under
concurrent readers and writers.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from discussionboard.service.session_cache import ReadWriteLock, SessionCache


def _in(seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TestSessionCacheBasics:
    def test_set_then_get(self):
        cache = SessionCache()
        cache.set("tok", 7, _in(3600))
        assert cache.get("tok") == 7

    def test_get_missing_returns_none(self):
        assert SessionCache().get("nope") is None

    def test_delete_removes_entry(self):
        cache = SessionCache()
        cache.set("tok", 7, _in(3600))
        cache.delete("tok")
        assert cache.get("tok") is None
        assert "tok" not in cache

    def test_delete_missing_is_noop(self):
        cache = SessionCache()
        cache.delete("missing")
        assert len(cache) == 0

    def test_expired_entry_reads_as_miss_and_is_dropped(self):
        cache = SessionCache()
        cache.set("tok", 7, _in(-1))
        assert cache.get("tok") is None
        assert len(cache) == 0

    def test_get_honours_supplied_clock(self):
        cache = SessionCache()
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        cache.set("tok", 7, expires)
        assert cache.get("tok", now=expires - timedelta(seconds=1)) == 7
        assert cache.get("tok", now=expires) is None

    def test_purge_expired(self):
        cache = SessionCache()
        cache.set("old", 1, _in(-10))
        cache.set("fresh", 2, _in(3600))
        assert cache.purge_expired() == 1
        assert "old" not in cache
        assert cache.get("fresh") == 2

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            SessionCache(max_entries=0)


class TestGenerationGuard:
    def test_delete_advances_generation(self):
        cache = SessionCache()
        before = cache.generation
        cache.delete("anything")
        assert cache.generation == before + 1

    def test_set_if_generation_succeeds_without_intervening_delete(self):
        cache = SessionCache()
        generation = cache.generation
        assert cache.set_if_generation("tok", 3, _in(60), generation)
        assert cache.get("tok") == 3

    def test_set_if_generation_refuses_after_delete(self):
        """A population that raced a revoke must not resurrect the token."""
        cache = SessionCache()
        generation = cache.generation
        cache.delete("tok")
        assert not cache.set_if_generation("tok", 3, _in(60), generation)
        assert cache.get("tok") is None

    def test_delete_of_other_token_does_not_block_population(self):
        cache = SessionCache()
        generation = cache.generation
        cache.delete("someone-else")
        assert cache.set_if_generation("tok", 3, _in(60), generation)
        assert cache.get("tok") == 3

    def test_population_after_delete_is_allowed(self):
        cache = SessionCache()
        cache.delete("tok")
        generation = cache.generation
        assert cache.set_if_generation("tok", 3, _in(60), generation)

    def test_forgotten_deletion_refuses_older_populations(self):
        cache = SessionCache(max_entries=2)
        generation = cache.generation
        cache.delete("tok")
        cache.delete("b")
        cache.delete("c")
        # "tok" has fallen out of the deletion log
        assert not cache.set_if_generation("tok", 3, _in(60), generation)
        assert not cache.set_if_generation("other", 4, _in(60), generation)
        assert cache.set_if_generation("other", 4, _in(60), cache.generation)


class TestSessionCacheEviction:
    def test_eviction_at_capacity_keeps_new_entry(self):
        cache = SessionCache(max_entries=100)
        for i in range(100):
            cache.set(f"tok-{i}", i, _in(i + 1))
        cache.set("newest", 999, _in(10_000))
        assert len(cache) <= 100
        assert cache.get("newest") == 999

    def test_eviction_removes_soonest_expiring(self):
        cache = SessionCache(max_entries=20)
        cache.set("soon", 1, _in(5))
        cache.set("late", 2, _in(100_000))
        for i in range(18):
            cache.set(f"mid-{i}", i, _in(5000))
        cache.set("trigger", 3, _in(5000))
        assert "soon" not in cache
        assert "late" in cache

    def test_overwrite_at_capacity_does_not_evict(self):
        cache = SessionCache(max_entries=10)
        for i in range(10):
            cache.set(f"tok-{i}", i, _in(100 + i))
        cache.set("tok-0", 42, _in(100))
        assert len(cache) == 10
        assert cache.get("tok-0") == 42


class TestReadWriteLock:
    def test_readers_do_not_block_each_other(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(3, timeout=5)
        errors: List[Exception] = []

        def reader():
            try:
                with lock.read():
                    # all three readers must be inside at once to pass the barrier
                    inside.wait()
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events: List[str] = []
        writer_in = threading.Event()

        def writer():
            with lock.write():
                writer_in.set()
                time.sleep(0.05)
                events.append("writer_done")

        def reader():
            writer_in.wait()
            with lock.read():
                events.append("reader")

        tw = threading.Thread(target=writer)
        tr = threading.Thread(target=reader)
        tw.start()
        tr.start()
        tw.join()
        tr.join()
        assert events == ["writer_done", "reader"]


class TestSessionCacheThreadSafety:
    def test_concurrent_set_get_delete(self):
        cache = SessionCache(max_entries=500)
        errors: List[Exception] = []
        iterations = 300

        def writer(prefix: str):
            try:
                for i in range(iterations):
                    cache.set(f"{prefix}-{i}", i, _in(3600))
            except Exception as e:
                errors.append(e)

        def reader(prefix: str):
            try:
                for i in range(iterations):
                    value = cache.get(f"{prefix}-{i}")
                    assert value in (None, i)
            except Exception as e:
                errors.append(e)

        def deleter(prefix: str):
            try:
                for i in range(iterations):
                    cache.delete(f"{prefix}-{i}")
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=writer, args=("a",)),
            threading.Thread(target=writer, args=("b",)),
            threading.Thread(target=reader, args=("a",)),
            threading.Thread(target=reader, args=("b",)),
            threading.Thread(target=deleter, args=("a",)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == [], f"Thread errors: {errors}"
        assert len(cache) <= 500

    def test_delete_is_visible_to_every_later_reader(self):
        """Once delete() returns, no reader thread sees the entry."""
        cache = SessionCache()
        cache.set("tok", 5, _in(3600))
        deleted = threading.Event()
        stale_reads: List[int] = []

        def reader():
            while not deleted.is_set():
                cache.get("tok")
            for _ in range(200):
                value = cache.get("tok")
                if value is not None:
                    stale_reads.append(value)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        time.sleep(0.01)
        cache.delete("tok")
        deleted.set()
        for t in threads:
            t.join()

        assert stale_reads == []
