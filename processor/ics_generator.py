"""iCalendar feed generation for pickup events."""
import hashlib
import logging
import re
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from icalendar import Alarm, Calendar, Event, Todo
from icalendar.prop import vInline

from processor.errors import InvalidArgumentError
from processor.models import PickupEvent

logger = logging.getLogger(__name__)


def clean_text(value: Optional[str]) -> str:
    """Drop carriage returns and trim surrounding whitespace."""
    if not value:
        return ''
    return value.replace('\r', '').strip()


def escape_text(value: Optional[str]) -> str:
    """
    Escape free text for an iCalendar TEXT value.

    Backslashes are escaped first, then commas, semicolons and newlines.
    The result is added to components as a ``vInline`` so icalendar
    writes it unchanged.
    """
    return (
        clean_text(value)
        .replace('\\', '\\\\')
        .replace(',', '\\,')
        .replace(';', '\\;')
        .replace('\n', '\\n')
    )


def add_text(component, name: str, value: Optional[str]) -> None:
    component.add(name, vInline(escape_text(value)))


class IcsGenerator:
    """Renders pickup events as VEVENT entries paired with VTODO reminders."""

    PRODID = "-//BIR Calendar//BIR Tømmekalender//EN"
    CALENDAR_DESCRIPTION = "Tømmekalender fra BIR"
    UID_VERSION = "2"
    REMINDER_TIME = time(16, 0)
    REMINDER_PRIORITY = 5
    DEFAULT_TIMEZONE = "Europe/Oslo"

    def __init__(
        self,
        tz_name: str = DEFAULT_TIMEZONE,
        now: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the generator.

        Args:
            tz_name: IANA timezone in which reminders fire at 16:00
            now: Returns the generation instant, defaults to the current UTC time
        """
        self.tz = ZoneInfo(tz_name)
        self._now = now or (lambda: datetime.now(timezone.utc))

    def generate(self, events: Sequence[PickupEvent], display_name: str) -> str:
        """
        Generate an iCalendar document for the given events.

        Args:
            events: Pickup events, already ordered
            display_name: Calendar name shown by subscribing clients

        Returns:
            iCalendar text with CRLF line endings

        Raises:
            InvalidArgumentError: If events is None or display_name is blank
        """
        if events is None:
            raise InvalidArgumentError("events is required")
        if not display_name or not display_name.strip():
            raise InvalidArgumentError("display_name must not be empty")

        stamp = self._now().astimezone(timezone.utc).replace(microsecond=0)

        cal = Calendar()
        cal.add('version', '2.0')
        cal.add('prodid', self.PRODID)
        add_text(cal, 'x-wr-calname', display_name)
        add_text(cal, 'x-wr-caldesc', self.CALENDAR_DESCRIPTION)
        cal.add('calscale', 'GREGORIAN')
        cal.add('method', 'PUBLISH')

        for pickup in events:
            cal.add_component(self._build_event(pickup, stamp))
            cal.add_component(self._build_reminder(pickup, stamp))

        logger.debug(f"Generated calendar with {len(events)} events and reminders")
        return cal.to_ical().decode('utf-8')

    def _build_event(self, pickup: PickupEvent, stamp: datetime) -> Event:
        summary = f"Henting av {clean_text(pickup.category)}"

        event = Event()
        event.add('uid', self.generate_uid(pickup, 'event'))
        event.add('dtstart', pickup.date)
        event.add('dtend', pickup.date + timedelta(days=1))
        add_text(event, 'summary', summary)
        if clean_text(pickup.description):
            add_text(event, 'description', pickup.description)
        if clean_text(pickup.location):
            add_text(event, 'location', pickup.location)
        self._add_timestamps(event, stamp)
        event.add('status', 'CONFIRMED')
        event.add('class', 'PUBLIC')
        event.add('transp', 'TRANSPARENT')

        alarm = Alarm()
        alarm.add('action', 'DISPLAY')
        add_text(alarm, 'description', f"Påminnelse: {summary} i morgen")
        alarm.add('trigger', self.reminder_time(pickup), parameters={'VALUE': 'DATE-TIME'})
        event.add_component(alarm)

        return event

    def _build_reminder(self, pickup: PickupEvent, stamp: datetime) -> Todo:
        todo = Todo()
        todo.add('uid', self.generate_uid(pickup, 'reminder'))
        todo.add('due', self.reminder_time(pickup))
        add_text(todo, 'summary', f"Henting av {clean_text(pickup.category)} i morgen")
        if clean_text(pickup.description):
            add_text(todo, 'description', pickup.description)
        todo.add('priority', self.REMINDER_PRIORITY)
        todo.add('status', 'NEEDS-ACTION')
        todo.add('class', 'PUBLIC')
        self._add_timestamps(todo, stamp)
        return todo

    @staticmethod
    def _add_timestamps(component, stamp: datetime) -> None:
        component.add('dtstamp', stamp)
        component.add('created', stamp)
        component.add('last-modified', stamp)

    def reminder_time(self, pickup: PickupEvent) -> datetime:
        """16:00 local time on the day before the pickup, in UTC."""
        day_before = pickup.date - timedelta(days=1)
        local = datetime.combine(day_before, self.REMINDER_TIME, tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    @classmethod
    def generate_uid(cls, pickup: PickupEvent, kind: str) -> str:
        """
        Build a stable UID from the pickup date and category.

        ``kind`` separates the VEVENT and VTODO namespaces so an event and
        its reminder never share a UID. A category that does not survive
        slugging unchanged (capitals, spaces, punctuation) gets a short
        SHA-256 suffix, so ``a,b`` and ``a b`` map to different UIDs.

        Args:
            pickup: The pickup event
            kind: "event" or "reminder"

        Returns:
            UID string such as ``20251023-matavfall@bir.event.v2``
        """
        category = clean_text(pickup.category)
        slug = re.sub(r'[^\w]+', '-', category.lower()).strip('-')
        if slug != category:
            digest = hashlib.sha256(category.encode('utf-8')).hexdigest()[:8]
            slug = f"{slug}-{digest}" if slug else digest
        return f"{pickup.date:%Y%m%d}-{slug}@bir.{kind}.v{cls.UID_VERSION}"
