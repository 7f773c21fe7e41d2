"""Feed service composing scraper, cache and iCalendar generation."""
import logging
from typing import Dict

from processor.errors import InvalidArgumentError, NetworkError, UpstreamUnavailableError
from processor.ics_generator import IcsGenerator
from scraper.bir_calendar import BirCalendarScraper
from storage.event_cache import EventCache

logger = logging.getLogger(__name__)


class FeedService:
    """Builds the subscribable calendar feed for a BIR route id."""

    DISPLAY_NAME_PREFIX = "Tømmekalender"

    def __init__(
        self,
        scraper: BirCalendarScraper,
        cache: EventCache,
        generator: IcsGenerator
    ):
        self.scraper = scraper
        self.cache = cache
        self.generator = generator

    def render_feed(self, identifier: str) -> str:
        """
        Render the iCalendar feed for a route id.

        Args:
            identifier: BIR route/address identifier

        Returns:
            iCalendar text

        Raises:
            InvalidArgumentError: If identifier is blank
            UpstreamUnavailableError: If the calendar page could not be fetched
                and no stale copy exists
        """
        if not identifier or not identifier.strip():
            raise InvalidArgumentError("ID parameter is required")

        try:
            events = self.cache.get_or_fetch(identifier, self.scraper.fetch_events)
        except NetworkError as e:
            raise UpstreamUnavailableError(
                f"Unable to fetch calendar data for ID {identifier}"
            ) from e

        return self.generator.generate(events, self.display_name(identifier))

    def display_name(self, identifier: str) -> str:
        return f"{self.DISPLAY_NAME_PREFIX} - {identifier}"

    def clear_cache(self) -> Dict[str, str]:
        """Drop all cached calendars."""
        self.cache.clear_all()
        return {'message': 'Cache cleared successfully'}
