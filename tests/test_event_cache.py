"""Unit tests for EventCache."""
import threading
import time
from datetime import date
from unittest.mock import Mock

import pytest

from processor.errors import InvalidArgumentError, NetworkError
from processor.models import PickupEvent
from storage.event_cache import EventCache

HOUR = 60 * 60


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return EventCache(clock=clock)


@pytest.fixture
def sample_events():
    return [
        PickupEvent(
            date=date(2025, 10, 9),
            category='matavfall',
            title='matavfall - Torsdag',
            description='Henting av matavfall'
        ),
        PickupEvent(
            date=date(2025, 10, 15),
            category='restavfall',
            title='restavfall - Onsdag',
            description='Henting av restavfall'
        ),
    ]


class TestEventCache:
    """Test cases for EventCache class."""

    def test_second_call_is_served_from_cache(self, cache, sample_events):
        """Test two quick calls on an empty cache fetch only once."""
        fetch_fn = Mock(return_value=sample_events)

        first = cache.get_or_fetch('123', fetch_fn)
        second = cache.get_or_fetch('123', fetch_fn)

        assert first == sample_events
        assert second == sample_events
        fetch_fn.assert_called_once_with('123')

    def test_stale_copy_served_when_fetch_fails(self, cache, clock, sample_events):
        """Test a failed refresh falls back to the last good result."""
        fetch_fn = Mock(return_value=sample_events)
        cache.get_or_fetch('123', fetch_fn)
        cache.get_or_fetch('123', fetch_fn)

        clock.advance(25 * HOUR)
        fetch_fn.side_effect = NetworkError('upstream down')

        result = cache.get_or_fetch('123', fetch_fn)

        assert result == sample_events
        assert fetch_fn.call_count == 2

    def test_failure_without_stale_copy_propagates(self, cache):
        fetch_fn = Mock(side_effect=NetworkError('upstream down', status_code=502))

        with pytest.raises(NetworkError) as exc_info:
            cache.get_or_fetch('123', fetch_fn)

        assert exc_info.value.status_code == 502

    def test_failed_fetch_is_retried_on_next_call(self, cache, sample_events):
        fetch_fn = Mock(side_effect=[NetworkError('upstream down'), sample_events])

        with pytest.raises(NetworkError):
            cache.get_or_fetch('123', fetch_fn)

        assert cache.get_or_fetch('123', fetch_fn) == sample_events
        assert fetch_fn.call_count == 2

    def test_absolute_ttl_expires_entry(self, cache, clock, sample_events):
        """Test an entry read regularly still expires after 24 hours."""
        fetch_fn = Mock(return_value=sample_events)
        cache.get_or_fetch('123', fetch_fn)

        for _ in range(4):
            clock.advance(5 * HOUR)
            cache.get_or_fetch('123', fetch_fn)
        assert fetch_fn.call_count == 1

        clock.advance(5 * HOUR)
        cache.get_or_fetch('123', fetch_fn)
        assert fetch_fn.call_count == 2

    def test_sliding_ttl_expires_idle_entry(self, cache, clock, sample_events):
        """Test an entry not read for 12 hours is refetched."""
        fetch_fn = Mock(return_value=sample_events)
        cache.get_or_fetch('123', fetch_fn)

        clock.advance(11 * HOUR)
        cache.get_or_fetch('123', fetch_fn)
        assert fetch_fn.call_count == 1

        clock.advance(12 * HOUR)
        cache.get_or_fetch('123', fetch_fn)
        assert fetch_fn.call_count == 2

    def test_successful_refresh_replaces_stale_copy(self, cache, clock, sample_events):
        fetch_fn = Mock(return_value=sample_events[:1])
        cache.get_or_fetch('123', fetch_fn)

        clock.advance(25 * HOUR)
        fetch_fn.return_value = sample_events
        cache.get_or_fetch('123', fetch_fn)

        clock.advance(25 * HOUR)
        fetch_fn.side_effect = NetworkError('upstream down')
        assert cache.get_or_fetch('123', fetch_fn) == sample_events

    def test_keys_are_independent(self, cache, sample_events):
        fetch_fn = Mock(side_effect=lambda identifier: sample_events if identifier == 'a' else [])

        assert cache.get_or_fetch('a', fetch_fn) == sample_events
        assert cache.get_or_fetch('b', fetch_fn) == []
        assert fetch_fn.call_count == 2
        assert len(cache) == 2

    def test_clear_all_drops_primary_and_stale(self, cache, sample_events):
        """Test that clearing removes the stale fallback too."""
        fetch_fn = Mock(return_value=sample_events)
        cache.get_or_fetch('123', fetch_fn)

        cache.clear_all()
        assert len(cache) == 0

        fetch_fn.side_effect = NetworkError('upstream down')
        with pytest.raises(NetworkError):
            cache.get_or_fetch('123', fetch_fn)

    def test_returned_list_is_a_copy(self, cache, sample_events):
        fetch_fn = Mock(return_value=sample_events)

        result = cache.get_or_fetch('123', fetch_fn)
        result.clear()

        assert cache.get_or_fetch('123', fetch_fn) == sample_events

    def test_missing_fetch_function(self, cache):
        with pytest.raises(InvalidArgumentError):
            cache.get_or_fetch('123', None)


class TestEventCacheConcurrency:
    """Test cases for concurrent access to EventCache."""

    def _run_concurrently(self, target, count):
        results = [None] * count
        errors = [None] * count

        def worker(index):
            try:
                results[index] = target()
            except Exception as e:
                errors[index] = e

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)
        assert not any(thread.is_alive() for thread in threads)
        return results, errors

    def test_concurrent_misses_share_one_fetch(self, sample_events):
        """Test a burst of cold requests triggers a single upstream fetch."""
        cache = EventCache()
        calls = []
        release = threading.Event()

        def slow_fetch(identifier):
            calls.append(identifier)
            release.wait(timeout=5)
            return sample_events

        timer = threading.Timer(0.2, release.set)
        timer.start()
        results, errors = self._run_concurrently(lambda: cache.get_or_fetch('123', slow_fetch), 10)
        timer.cancel()

        assert calls == ['123']
        assert errors == [None] * 10
        assert all(result == sample_events for result in results)

    def test_concurrent_waiters_share_failure(self):
        """Test waiters receive the error of the shared fetch."""
        cache = EventCache()
        calls = []

        def failing_fetch(identifier):
            calls.append(identifier)
            time.sleep(0.2)
            raise NetworkError('upstream down')

        results, errors = self._run_concurrently(lambda: cache.get_or_fetch('123', failing_fetch), 5)

        assert all(isinstance(error, NetworkError) for error in errors)
        assert results == [None] * 5
        # Late arrivals may start a new fetch after the first one failed
        assert 1 <= len(calls) <= 5

    def test_different_keys_fetch_in_parallel(self, sample_events):
        cache = EventCache()
        started = threading.Barrier(2, timeout=5)

        def fetch(identifier):
            # Both fetches must be in progress at the same time to pass the barrier
            started.wait()
            return sample_events

        results = {}

        def worker(identifier):
            results[identifier] = cache.get_or_fetch(identifier, fetch)

        threads = [threading.Thread(target=worker, args=(key,)) for key in ('a', 'b')]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert results == {'a': sample_events, 'b': sample_events}
