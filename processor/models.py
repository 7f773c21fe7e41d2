"""Data models for waste pickup events."""
from dataclasses import dataclass
from datetime import date
from typing import Optional, Tuple


@dataclass(frozen=True)
class PickupEvent:
    """A single whole-day waste collection parsed from the calendar page."""
    date: date
    category: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None

    @property
    def key(self) -> Tuple[date, str]:
        """Identity of the event: one pickup per category per day."""
        return (self.date, self.category)
