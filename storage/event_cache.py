"""In-memory cache for parsed pickup events with stale fallback."""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from processor.errors import InvalidArgumentError
from processor.models import PickupEvent

logger = logging.getLogger(__name__)

FetchFunction = Callable[[str], Sequence[PickupEvent]]


@dataclass
class CacheEntry:
    """Cached events for one identifier."""
    events: Tuple[PickupEvent, ...]
    stored_at: float
    last_access: float

    def is_fresh(self, now: float, ttl: float, sliding_ttl: float) -> bool:
        """Fresh until the absolute TTL or the sliding TTL elapses, whichever is first."""
        return now - self.stored_at < ttl and now - self.last_access < sliding_ttl


class _Flight:
    """Outcome of an in-progress fetch, shared with callers waiting on it."""

    def __init__(self):
        self.done = threading.Event()
        self.events: Optional[Tuple[PickupEvent, ...]] = None
        self.error: Optional[BaseException] = None

    def wait(self) -> List[PickupEvent]:
        self.done.wait()
        if self.error is not None:
            raise self.error
        return list(self.events)


class EventCache:
    """
    Thread-safe memo of pickup events per identifier.

    Entries expire after ``ttl_seconds`` or ``sliding_ttl_seconds`` without a
    read. Every successful fetch also refreshes a stale copy that never
    expires and is served when a later fetch fails. Concurrent misses for
    the same identifier share a single fetch.
    """

    DEFAULT_TTL_SECONDS = 24 * 60 * 60
    DEFAULT_SLIDING_TTL_SECONDS = 12 * 60 * 60

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sliding_ttl_seconds: float = DEFAULT_SLIDING_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize an empty cache.

        Args:
            ttl_seconds: Absolute lifetime of an entry
            sliding_ttl_seconds: Lifetime of an entry since its last read
            clock: Monotonic time source in seconds
        """
        self.ttl_seconds = ttl_seconds
        self.sliding_ttl_seconds = sliding_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._stale: Dict[str, Tuple[PickupEvent, ...]] = {}
        self._in_flight: Dict[str, _Flight] = {}

    def get_or_fetch(self, identifier: str, fetch_fn: FetchFunction) -> List[PickupEvent]:
        """
        Return cached events for an identifier, fetching them on a miss.

        Args:
            identifier: Source identifier used as cache key
            fetch_fn: Callable returning the ordered events for an identifier

        Returns:
            List of PickupEvent objects ordered by date

        Raises:
            InvalidArgumentError: If fetch_fn is None
            Exception: Whatever fetch_fn raised, when no stale copy exists
        """
        if fetch_fn is None:
            raise InvalidArgumentError("fetch_fn is required")

        with self._lock:
            now = self._clock()
            entry = self._entries.get(identifier)
            if entry is not None and entry.is_fresh(now, self.ttl_seconds, self.sliding_ttl_seconds):
                entry.last_access = now
                logger.info(f"Returning cached calendar events for ID: {identifier}")
                return list(entry.events)

            flight = self._in_flight.get(identifier)
            if flight is not None:
                leader = False
            else:
                leader = True
                flight = _Flight()
                self._in_flight[identifier] = flight

        if not leader:
            logger.info(f"Waiting for in-flight fetch for ID: {identifier}")
            return flight.wait()

        logger.info(f"Cache miss for ID: {identifier}, fetching fresh data")
        try:
            flight.events = self._fetch(identifier, fetch_fn)
        except BaseException as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                self._in_flight.pop(identifier, None)
            flight.done.set()

        return list(flight.events)

    def _fetch(self, identifier: str, fetch_fn: FetchFunction) -> Tuple[PickupEvent, ...]:
        try:
            events = tuple(fetch_fn(identifier))
        except Exception as e:
            logger.error(f"Error fetching calendar events for ID: {identifier}: {e}")
            with self._lock:
                stale = self._stale.get(identifier)
            if stale is None:
                raise
            logger.warning(f"Returning stale cache data for ID: {identifier}")
            return stale

        with self._lock:
            now = self._clock()
            self._entries[identifier] = CacheEntry(events=events, stored_at=now, last_access=now)
            self._stale[identifier] = events

        logger.info(f"Cached {len(events)} calendar events for ID: {identifier}")
        return events

    def clear_all(self) -> None:
        """Remove every cached and stale entry."""
        with self._lock:
            self._entries.clear()
            self._stale.clear()
        logger.info("Cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
