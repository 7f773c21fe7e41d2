"""Calendar scraper for the BIR waste collection calendar (bir.no)."""
import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

import requests
from bs4 import BeautifulSoup

from processor.errors import NetworkError
from processor.models import PickupEvent

logger = logging.getLogger(__name__)


MONTH_NAMES: Dict[str, int] = {
    'januar': 1,
    'februar': 2,
    'mars': 3,
    'april': 4,
    'mai': 5,
    'juni': 6,
    'juli': 7,
    'august': 8,
    'september': 9,
    'oktober': 10,
    'november': 11,
    'desember': 12,
}

# Matched in order against the icon src, first hit wins
WASTE_TYPE_ICONS: Tuple[Tuple[str, str], ...] = (
    ('glassOgMetall.svg', 'glass og metall'),
    ('matavfall.svg', 'matavfall'),
    ('papirOgPlast.svg', 'papir og plastemballasje'),
    ('restavfall.svg', 'restavfall'),
    ('plastemballasje.svg', 'plastemballasje'),
)

UNKNOWN_WASTE_TYPE = 'ukjent avfallstype'


class BirCalendarScraper:
    """Scraper for the BIR pickup calendar of a single address."""

    BASE_URL = "https://bir.no/adressesoek/toemmekalender/"
    USER_AGENT = "BIR-Calendar-API/1.0"

    def __init__(
        self,
        timeout: int = 30,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None
    ):
        """
        Initialize the calendar scraper.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
            base_url: Calendar page address, the route id is appended as ``rId``
            user_agent: Value of the User-Agent header sent upstream
        """
        self.timeout = timeout
        self.base_url = base_url or self.BASE_URL
        self.user_agent = user_agent or self.USER_AGENT

    def fetch_events(self, route_id: str) -> List[PickupEvent]:
        """
        Fetch and parse the pickup calendar for a route id.

        Args:
            route_id: BIR route/address identifier

        Returns:
            List of PickupEvent objects ordered by date

        Raises:
            NetworkError: If the calendar page could not be fetched
        """
        html_content = self.fetch_html(route_id)
        events = parse_calendar_html(html_content)
        logger.info(f"Parsed {len(events)} pickup events for route {route_id}")
        return events

    def fetch_html(self, route_id: str) -> str:
        """
        Fetch calendar HTML for a route id. No retries are attempted.

        Args:
            route_id: BIR route/address identifier

        Returns:
            HTML content as string

        Raises:
            NetworkError: On transport errors, timeouts or non-2xx responses
        """
        logger.info(f"Fetching calendar data from {self.base_url} (rId={route_id})")

        try:
            response = requests.get(
                self.base_url,
                params={'rId': route_id},
                headers={'User-Agent': self.user_agent},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            logger.error(f"Calendar request for route {route_id} failed with status {status_code}")
            raise NetworkError(
                f"Calendar request failed with status {status_code}",
                status_code=status_code
            ) from e
        except requests.RequestException as e:
            logger.error(f"Calendar request for route {route_id} failed: {e}")
            raise NetworkError(f"Calendar request failed: {e}") from e

        return response.text


def parse_calendar_html(html_content: str) -> List[PickupEvent]:
    """
    Parse pickup events from calendar HTML.

    Blocks, rows and date items that are missing expected elements are
    skipped. A page without any month blocks yields an empty list.

    Args:
        html_content: HTML content from the calendar page

    Returns:
        List of PickupEvent objects sorted by date
    """
    soup = BeautifulSoup(html_content, 'html.parser')

    month_containers = soup.find_all('div', class_='month-container')
    if not month_containers:
        logger.warning("No month containers found in calendar HTML")
        return []

    events: List[PickupEvent] = []
    seen = set()

    for container in month_containers:
        for event in _parse_month_container(container):
            if event.key in seen:
                continue
            seen.add(event.key)
            events.append(event)

    events.sort(key=lambda event: event.date)
    return events


def _parse_month_container(container) -> List[PickupEvent]:
    title_elem = container.find('h2', class_='month-title')
    if title_elem is None:
        return []

    month_year = parse_month_and_year(title_elem.get_text(strip=True))
    if month_year is None:
        return []
    month, year = month_year

    events = []
    for row in container.find_all('div', class_='category-row'):
        icon = row.find('img')
        if icon is None:
            continue

        waste_type = waste_type_from_icon(icon.get('src', ''))

        for item in row.find_all('div', class_='date-item'):
            event = _parse_date_item(item, waste_type, month, year)
            if event:
                events.append(event)

    return events


def _parse_date_item(item, waste_type: str, month: int, year: int) -> Optional[PickupEvent]:
    day_elem = item.find('div', class_='date-item-day')
    date_elem = item.find('div', class_='date-item-date')
    if day_elem is None or date_elem is None:
        return None

    weekday = day_elem.get_text(strip=True)
    date_text = date_elem.get_text(strip=True)
    if not weekday or not date_text:
        return None

    pickup_date = parse_day_label(date_text, month, year)
    if pickup_date is None:
        return None

    return PickupEvent(
        date=pickup_date,
        category=waste_type,
        title=f"{waste_type} - {weekday}",
        description=f"Henting av {waste_type.lower()}"
    )


def parse_month_and_year(month_title: str) -> Optional[Tuple[int, int]]:
    """
    Parse a month header such as "Oktober 2025".

    Returns:
        (month, year) tuple, or None if the header is not recognised
    """
    parts = month_title.split()
    if len(parts) != 2:
        return None

    month = MONTH_NAMES.get(parts[0].lower())
    if month is None:
        return None

    try:
        year = int(parts[1])
    except ValueError:
        return None

    return month, year


def parse_day_label(date_text: str, month: int, year: int) -> Optional[date]:
    """
    Build a date from a label such as "23. okt".

    Only the day number is read; month and year come from the month header.
    Invalid calendar dates are logged and rejected.
    """
    parts = date_text.split()
    if len(parts) != 2:
        return None

    try:
        day = int(parts[0].rstrip('.'))
    except ValueError:
        return None

    try:
        return date(year, month, day)
    except ValueError:
        logger.warning(f"Invalid date: {day}/{month}/{year}")
        return None


def waste_type_from_icon(icon_src: str) -> str:
    """Map an icon filename to its waste category label."""
    for fragment, waste_type in WASTE_TYPE_ICONS:
        if fragment in icon_src:
            return waste_type
    return UNKNOWN_WASTE_TYPE
