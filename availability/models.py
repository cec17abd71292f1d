"""Data models for availability search."""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import List, Optional


class ConfigurationError(ValueError):
    """Raised when a search window or its inputs are malformed."""


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware: {value!r}")


@dataclass(frozen=True)
class Event:
    """Busy interval normalized from a provider response."""
    id: str
    name: Optional[str]
    start: datetime
    end: datetime

    def __post_init__(self):
        _require_aware(self.start, 'start')
        _require_aware(self.end, 'end')
        if self.end < self.start:
            raise ValueError(
                f"Event '{self.id}' ends before it starts: "
                f"{self.start.isoformat()} > {self.end.isoformat()}"
            )


@dataclass(frozen=True, order=True)
class Availability:
    """Free interval produced by the finder or the window utilities."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(
                f"Availability ends before it starts: "
                f"{self.start.isoformat()} > {self.end.isoformat()}"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: 'Availability') -> bool:
        """Touching endpoints count as overlap."""
        return self.start <= other.end and other.start <= self.end

    def merged_with(self, other: 'Availability') -> 'Availability':
        return Availability(
            start=min(self.start, other.start),
            end=max(self.end, other.end)
        )

    def to_dict(self) -> dict:
        return {'start': self.start.isoformat(), 'end': self.end.isoformat()}

    def __str__(self) -> str:
        minutes = int(self.duration.total_seconds() // 60)
        hours, rem = divmod(minutes, 60)
        if hours >= 1:
            length = f"{hours}h{rem}m" if rem else f"{hours}h"
        elif minutes >= 1:
            length = f"{minutes}m"
        else:
            length = ""
        return (
            f"{self.start.strftime('%a %b %d')} - "
            f"{self.start.strftime('%I:%M %p')} to "
            f"{self.end.strftime('%I:%M %p')} ({length})"
        )


@dataclass
class DayAvailability:
    """Free windows found on one calendar day."""
    day: date
    windows: List[Availability] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'date': self.day.isoformat(),
            'windows': [window.to_dict() for window in self.windows]
        }


@dataclass(frozen=True)
class SearchConfig:
    """Search window, business-hour band and minimum slot length."""
    start: datetime
    end: datetime
    min_time: time
    max_time: time
    duration: timedelta
    include_weekends: bool
    tz: tzinfo

    def __post_init__(self):
        for name in ('start', 'end'):
            value = getattr(self, name)
            if value.tzinfo is None:
                raise ConfigurationError(f"Search {name} must be timezone-aware")
            # frozen dataclass: normalize into the search zone in place
            object.__setattr__(self, name, value.astimezone(self.tz))

        if self.end < self.start:
            raise ConfigurationError(
                f"Search end {self.end.isoformat()} is before start "
                f"{self.start.isoformat()}"
            )
        if self.max_time < self.min_time:
            raise ConfigurationError(
                f"Maximum time {self.max_time} is before minimum time "
                f"{self.min_time}"
            )
        if self.duration <= timedelta(0):
            raise ConfigurationError("Duration must be positive")

    def at(self, day: date, moment: time) -> datetime:
        """Combine a date and a time of day in the search zone."""
        return datetime.combine(day, moment, tzinfo=self.tz)


@dataclass(frozen=True)
class Account:
    """Linked calendar account."""
    account_id: str
    email: str
    platform: str
    refresh_token: str


@dataclass
class Calendar:
    """Calendar belonging to a linked account."""
    account_id: str
    calendar_id: str
    name: str
    query_selected: bool = True
    edit_selected: bool = False
    can_edit: bool = False

    def to_dict(self) -> dict:
        return {
            'calendar_id': self.calendar_id,
            'name': self.name,
            'query_selected': self.query_selected,
            'edit_selected': self.edit_selected,
            'can_edit': self.can_edit
        }


@dataclass
class CalendarFailure:
    """A calendar whose events could not be retrieved."""
    account: str
    calendar_id: str
    error: str

    def to_dict(self) -> dict:
        return {
            'account': self.account,
            'calendar_id': self.calendar_id,
            'error': self.error
        }


@dataclass
class RetrievalResult:
    """Aggregate of every calendar fetch in one search."""
    events: List[Event]
    failures: List[CalendarFailure]


@dataclass
class HoldResult:
    """Result of a hold event creation run."""
    created: int
    errors: List[str]
