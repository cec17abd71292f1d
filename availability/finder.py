"""Availability finder: turns busy events into per-day free windows."""
import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from availability.models import Availability, DayAvailability, Event, SearchConfig
from availability.rounding import ceil_half_hour, floor_half_hour

logger = logging.getLogger(__name__)

SATURDAY = 5


def is_weekend(day: date) -> bool:
    return day.weekday() >= SATURDAY


def group_events_by_day(events: Iterable[Event], config: SearchConfig) -> Dict[date, List[Event]]:
    """
    Sort events by start and group them by calendar date in the search zone.

    Args:
        events: Busy events in any order and any zone
        config: Search configuration providing the zone

    Returns:
        Ordered mapping of date to that day's events, sorted by start
    """
    normalized = sorted(
        (
            Event(
                id=event.id,
                name=event.name,
                start=event.start.astimezone(config.tz),
                end=event.end.astimezone(config.tz)
            )
            for event in events
        ),
        key=lambda event: event.start
    )

    days: Dict[date, List[Event]] = OrderedDict()
    for event in normalized:
        days.setdefault(event.start.date(), []).append(event)
    return days


class AvailabilityFinder:
    """Day-by-day sweep that subtracts busy events from the business-hour band."""

    def __init__(self, config: SearchConfig):
        """
        Initialize the finder.

        Args:
            config: Search window, band, duration and weekend policy
        """
        self.config = config

    def find(self, events: Iterable[Event]) -> List[DayAvailability]:
        """
        Find free windows between busy events.

        Args:
            events: Busy events from every queried calendar, unordered

        Returns:
            One DayAvailability per day touched by the search window, in date
            order. Days skipped by the weekend filter are left out, as are
            event-free days too short to hold a single window.
        """
        config = self.config
        result: List[DayAvailability] = []

        curr = ceil_half_hour(
            max(config.start, config.at(config.start.date(), config.min_time))
        )
        # rounding a late start can roll past midnight into the next day
        curr = max(curr, config.at(curr.date(), config.min_time))

        groups = group_events_by_day(events, config)

        # Events from days before the search still block time after midnight
        busy_until: Optional[datetime] = None
        pending = []
        for day, day_events in groups.items():
            if day < curr.date():
                busy_until = self._latest_end(busy_until, day_events)
            else:
                pending.append((day, day_events))
        pending.reverse()

        while curr < config.end:
            if pending:
                day, day_events = pending.pop()

                # Days with no events before this group are entirely free
                while curr.date() < day and curr < config.end:
                    self._append_free_day(result, curr, busy_until)
                    curr = self._next_day(curr)

                if curr >= config.end:
                    break

                if not config.include_weekends and is_weekend(day):
                    busy_until = self._latest_end(busy_until, day_events)
                    curr = self._next_day(curr)
                    continue

                windows = self._day_windows(curr, day_events, busy_until)
                result.append(DayAvailability(day=day, windows=windows))
                busy_until = self._latest_end(busy_until, day_events)
                curr = self._next_day(curr)
            else:
                while curr < config.end:
                    self._append_free_day(result, curr, busy_until)
                    curr = self._next_day(curr)

        logger.debug(
            f"Found {sum(len(d.windows) for d in result)} windows "
            f"across {len(result)} days"
        )
        return result

    def _day_windows(
        self,
        curr: datetime,
        day_events: List[Event],
        busy_until: Optional[datetime]
    ) -> List[Availability]:
        """
        Collect the gaps between one day's events.

        Args:
            curr: Earliest moment on the day that may be offered
            day_events: The day's events, sorted by start
            busy_until: End of the latest event seen on earlier days

        Returns:
            Windows for the day, ordered and non-overlapping
        """
        config = self.config
        day_end = self._day_end(curr.date())
        windows = []

        # monotonic: never moves backwards on nested or overlapping events
        cursor = curr if busy_until is None else max(curr, busy_until)

        for event in day_events:
            if cursor < event.start:
                window_start = ceil_half_hour(cursor)
                window_end = floor_half_hour(min(event.start, day_end))
                if (window_start < day_end
                        and window_end - window_start >= config.duration):
                    windows.append(Availability(start=window_start, end=window_end))
            cursor = max(cursor, event.end)

        if cursor < day_end:
            window_start = ceil_half_hour(cursor)
            if day_end - window_start >= config.duration:
                windows.append(Availability(start=window_start, end=day_end))

        return windows

    def _append_free_day(
        self,
        result: List[DayAvailability],
        curr: datetime,
        busy_until: Optional[datetime]
    ) -> None:
        """Emit a single band-long window for a day without events."""
        config = self.config
        day = curr.date()
        if not config.include_weekends and is_weekend(day):
            return

        start = curr if busy_until is None else max(curr, busy_until)
        start = ceil_half_hour(start)
        end = self._day_end(day)

        if start <= end and end - start >= config.duration:
            result.append(
                DayAvailability(day=day, windows=[Availability(start=start, end=end)])
            )

    def _day_end(self, day: date) -> datetime:
        return min(self.config.at(day, self.config.max_time), self.config.end)

    def _next_day(self, curr: datetime) -> datetime:
        """Minimum time on the following date."""
        return self.config.at(curr.date() + timedelta(days=1), self.config.min_time)

    @staticmethod
    def _latest_end(busy_until: Optional[datetime], day_events: List[Event]) -> datetime:
        latest = max(event.end for event in day_events)
        if busy_until is None:
            return latest
        return max(busy_until, latest)
